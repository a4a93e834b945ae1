"""File-backed storage for plan documents.

``PlanStore`` scans a tasks directory for plan files, caches the parsed
documents, and writes changes back atomically. The cache is owned by the
store instance: callers that mutate files behind its back call
:meth:`PlanStore.invalidate` or :meth:`PlanStore.reload`.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from ..config import tasks_dir as configured_tasks_dir
from ..utils.slug import plan_filename
from .schema import (
    Plan,
    PlanNotFoundError,
    PlanValidationError,
    Priority,
    Task,
    new_plan_uuid,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

PLAN_SUFFIXES: Tuple[str, ...] = (".plan.md", ".yml", ".yaml")
FRONT_MATTER_DELIMITER = "---"


def is_plan_file(path: Path) -> bool:
    """Return ``True`` for files the store treats as plan documents."""
    name = path.name
    if name.startswith("."):
        return False
    return any(name.endswith(suffix) for suffix in PLAN_SUFFIXES)


def parse_plan_text(text: str) -> Any:
    """Decode plan text, merging a markdown body into ``details``."""
    body = ""
    payload = text
    if text.startswith(FRONT_MATTER_DELIMITER + "\n"):
        end = text.find("\n" + FRONT_MATTER_DELIMITER + "\n", len(FRONT_MATTER_DELIMITER))
        if end != -1:
            payload = text[len(FRONT_MATTER_DELIMITER) + 1 : end]
            body = text[end + len(FRONT_MATTER_DELIMITER) + 2 :].strip()
        elif text.rstrip().endswith("\n" + FRONT_MATTER_DELIMITER):
            payload = text.rstrip()[len(FRONT_MATTER_DELIMITER) + 1 : -len(FRONT_MATTER_DELIMITER)]

    data = yaml.safe_load(payload) if payload.strip() else {}
    if body and isinstance(data, dict):
        existing = data.get("details")
        data["details"] = f"{existing}\n\n{body}" if existing else body
    return data


def load_plan_document(path: Path | str) -> Dict[str, Any]:
    """Read the raw mapping stored in ``path``."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as error:
        raise PlanValidationError(f"Unable to read plan file {file_path}: {error}") from error
    try:
        data = parse_plan_text(text)
    except yaml.YAMLError as error:
        raise PlanValidationError(f"Invalid YAML in {file_path}: {error}") from error
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise PlanValidationError(f"Plan file {file_path} must contain a mapping at the top level.")
    return data


def format_validation_error(path: Path, error: ValidationError) -> str:
    """Summarise pydantic errors as ``field: message`` lines."""
    lines = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue.get("loc", ())) or "root"
        lines.append(f"{location}: {issue.get('msg', 'invalid value')}")
    return f"Invalid plan file {path}: " + "; ".join(lines)


def read_plan_file(path: Path | str) -> Plan:
    """Load and validate a single plan document."""
    file_path = Path(path)
    data = load_plan_document(file_path)
    try:
        return Plan.model_validate(data)
    except ValidationError as error:
        raise PlanValidationError(format_validation_error(file_path, error)) from error


def render_plan(plan: Plan, path: Path) -> str:
    """Serialise ``plan`` in the format implied by ``path``."""
    document = plan.to_document()
    if path.name.endswith(".plan.md"):
        details = document.pop("details", "")
        front = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
        text = f"{FRONT_MATTER_DELIMITER}\n{front}{FRONT_MATTER_DELIMITER}\n"
        if details:
            text += f"\n{details.rstrip()}\n"
        return text
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)


def stage_plan_file(path: Path, plan: Plan) -> Path:
    """Write ``plan`` to a temporary sibling of ``path`` and return its location.

    The caller promotes the staged file with :func:`os.replace` or removes it.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    staged = Path(handle.name)
    try:
        with handle:
            handle.write(render_plan(plan, path))
    except OSError:
        staged.unlink(missing_ok=True)
        raise
    return staged


def write_plan_file(path: Path | str, plan: Plan) -> None:
    """Atomically replace ``path`` with the serialised ``plan``."""
    target = Path(path)
    staged = stage_plan_file(target, plan)
    try:
        os.replace(staged, target)
    except OSError:
        staged.unlink(missing_ok=True)
        raise


class PlanStore:
    """Directory of plan documents with an explicit, invalidatable cache."""

    def __init__(self, tasks_dir: Path | str) -> None:
        self.tasks_dir = Path(tasks_dir).resolve()
        self._entries: Optional[Dict[Path, Plan]] = None
        self._errors: Dict[Path, str] = {}

    @classmethod
    def from_config(cls, config: Mapping[str, Any], repo_root: Path | str) -> "PlanStore":
        return cls(configured_tasks_dir(config, Path(repo_root)))

    # ----------------------------------------------------------------- cache
    @property
    def exists(self) -> bool:
        return self.tasks_dir.is_dir()

    def load(self) -> "PlanStore":
        if self._entries is None:
            self._scan()
        return self

    def invalidate(self) -> None:
        """Drop cached documents; the next access rescans the directory."""
        self._entries = None
        self._errors = {}

    def reload(self) -> "PlanStore":
        self.invalidate()
        return self.load()

    def _scan(self) -> None:
        entries: Dict[Path, Plan] = {}
        errors: Dict[Path, str] = {}
        for path in self.iter_plan_files():
            try:
                entries[path] = read_plan_file(path)
            except PlanValidationError as error:
                LOGGER.warning("Skipping unreadable plan file %s: %s", path, error)
                errors[path] = str(error)
        LOGGER.debug("Loaded %d plan file(s) from %s", len(entries), self.tasks_dir)
        self._entries = entries
        self._errors = errors

    def iter_plan_files(self) -> List[Path]:
        """Return every plan file below the tasks directory in path order."""
        if not self.exists:
            return []
        return sorted(
            (path.resolve() for path in self.tasks_dir.rglob("*") if path.is_file() and is_plan_file(path)),
            key=lambda item: item.as_posix(),
        )

    # ---------------------------------------------------------------- lookup
    @property
    def entries(self) -> Dict[Path, Plan]:
        """All parsed plans keyed by file path, duplicates and stubs included."""
        self.load()
        assert self._entries is not None
        return self._entries

    @property
    def errors(self) -> Dict[Path, str]:
        self.load()
        return dict(self._errors)

    @property
    def plans(self) -> Dict[int, Plan]:
        """Plans keyed by numeric id; the first file in path order wins on duplicates."""
        result: Dict[int, Plan] = {}
        for plan in self.entries.values():
            if plan.id is not None and plan.id not in result:
                result[plan.id] = plan
        return result

    def get(self, plan_id: int) -> Optional[Plan]:
        return self.plans.get(plan_id)

    def require(self, plan_id: int) -> Plan:
        plan = self.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")
        return plan

    def get_by_path(self, path: Path | str) -> Optional[Plan]:
        return self.entries.get(Path(path).resolve())

    def path_of(self, plan: Plan) -> Path:
        for path, candidate in self.entries.items():
            if candidate is plan:
                return path
        if plan.id is not None:
            for path, candidate in self.entries.items():
                if candidate.id == plan.id:
                    return path
        raise PlanNotFoundError(f"Plan {plan.label} is not part of {self.tasks_dir}")

    def find_by_uuid(self, plan_uuid: str) -> Optional[Plan]:
        for plan in self.entries.values():
            if plan.uuid == plan_uuid:
                return plan
        return None

    def resolve(self, plan_arg: str | int) -> Tuple[Path, Plan]:
        """Resolve a numeric id or a file path to ``(path, plan)``."""
        text = str(plan_arg).strip()
        if text.isdigit():
            plan = self.require(int(text))
            return self.path_of(plan), plan

        candidate = Path(text)
        for option in (candidate, self.tasks_dir / candidate):
            if option.is_file():
                resolved = option.resolve()
                plan = self.get_by_path(resolved)
                if plan is None:
                    plan = read_plan_file(resolved)
                return resolved, plan
        raise PlanNotFoundError(f"No plan found with ID or file path: {text}")

    def duplicate_ids(self) -> Dict[int, List[Path]]:
        groups: Dict[int, List[Path]] = {}
        for path, plan in self.entries.items():
            if plan.id is not None:
                groups.setdefault(plan.id, []).append(path)
        return {plan_id: paths for plan_id, paths in groups.items() if len(paths) > 1}

    def max_id(self) -> int:
        return max((plan.id for plan in self.entries.values() if plan.id is not None), default=0)

    def next_id(self) -> int:
        return self.max_id() + 1

    def children_of(self, plan_id: int) -> List[Plan]:
        return [plan for plan in self.entries.values() if plan.parent == plan_id]

    # ---------------------------------------------------------------- writes
    def save(self, plan: Plan, path: Path | str | None = None) -> Path:
        """Persist ``plan`` and refresh its cache entry."""
        target = Path(path).resolve() if path is not None else self.path_of(plan)
        write_plan_file(target, plan)
        if self._entries is not None:
            self._entries[target] = plan
        return target

    def create_plan(
        self,
        title: str,
        *,
        goal: str = "",
        details: str = "",
        parent: Optional[int] = None,
        dependencies: Sequence[int] = (),
        priority: Optional[Priority] = None,
        tasks: Sequence[Task] = (),
        extension: str = ".plan.md",
    ) -> Tuple[Path, Plan]:
        """Create a new plan with a fresh id and uuid.

        When ``parent`` is given the parent gains the new id in its
        ``dependencies`` so the hierarchy stays bidirectional.
        """
        parent_plan = self.require(parent) if parent is not None else None
        now = utc_now()
        plan = Plan(
            id=self.next_id(),
            uuid=new_plan_uuid(),
            title=title,
            goal=goal,
            details=details,
            parent=parent,
            dependencies=list(dependencies),
            priority=priority,
            tasks=list(tasks),
            created_at=now,
            updated_at=now,
        )
        assert plan.id is not None
        path = self.tasks_dir / plan_filename(plan.id, title, extension=extension)
        self.save(plan, path)
        if parent_plan is not None and plan.id not in parent_plan.dependencies:
            parent_plan.dependencies.append(plan.id)
            if parent_plan.uuid:
                parent_plan.references[plan.id] = plan.uuid or ""
            parent_plan.touch()
            self.save(parent_plan)
        LOGGER.info("Created plan %s at %s", plan.id, path)
        return path.resolve(), plan

"""Consistency checks and repairs across the plan store."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Set

from pydantic import ValidationError

from .schema import Plan, PlanValidationError, new_plan_uuid
from .store import PlanStore, load_plan_document

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationReport:
    """Outcome of :func:`validate_plans`."""

    total_files: int = 0
    invalid_files: Dict[Path, List[str]] = field(default_factory=dict)
    unknown_keys: Dict[Path, List[str]] = field(default_factory=dict)
    fixed_relationships: int = 0
    relationship_fixes: List[str] = field(default_factory=list)
    skipped_fixes: List[str] = field(default_factory=list)
    generated_uuids: List[Path] = field(default_factory=list)
    refreshed_references: List[Path] = field(default_factory=list)
    duplicate_ids: Dict[int, List[Path]] = field(default_factory=dict)
    fixed: bool = True

    @property
    def ok(self) -> bool:
        return not self.invalid_files and not self.unknown_keys


def check_plan_file(path: Path) -> tuple[List[str], List[str]]:
    """Return ``(errors, unknown keys)`` for a single plan file."""
    try:
        data = load_plan_document(path)
    except PlanValidationError as error:
        return [str(error)], []
    try:
        Plan.model_validate(data)
    except ValidationError as error:
        errors: List[str] = []
        unknown: List[str] = []
        for issue in error.errors():
            location = ".".join(str(part) for part in issue.get("loc", ())) or "root"
            if issue.get("type") == "extra_forbidden":
                unknown.append(location)
            else:
                errors.append(f"{location}: {issue.get('msg', 'invalid value')}")
        return errors, unknown
    return [], []


def depends_on(start: Plan, target_id: int, plans: Dict[int, Plan]) -> bool:
    """Return ``True`` if ``start`` transitively depends on ``target_id``."""
    queue = deque(start.dependencies)
    seen: Set[int] = set()
    while queue:
        current = queue.popleft()
        if current == target_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        plan = plans.get(current)
        if plan is not None:
            queue.extend(plan.dependencies)
    return False


def validate_plans(store: PlanStore, *, fix: bool = True) -> ValidationReport:
    """Check every plan file and, when ``fix`` is set, repair what can be repaired.

    Repairs cover missing parent back-references, missing uuids and stale
    ``references`` maps. A back-reference that would close a dependency
    cycle is reported instead of written.
    """
    report = ValidationReport(fixed=fix)
    files = store.iter_plan_files()
    report.total_files = len(files)
    for path in files:
        errors, unknown = check_plan_file(path)
        if errors:
            report.invalid_files[path] = errors
        if unknown:
            report.unknown_keys[path] = unknown

    store.reload()
    entries = store.entries
    plans = store.plans
    report.duplicate_ids = store.duplicate_ids()
    dirty: Set[Path] = set()

    fixed_parents: Set[int] = set()
    for path, child in entries.items():
        if child.id is None or child.parent is None:
            continue
        parent = plans.get(child.parent)
        if parent is None or parent is child or child.id in parent.dependencies:
            continue
        if depends_on(child, child.parent, plans):
            message = (
                f"Plan {parent.id} does not list child {child.id}; "
                "adding it would create a circular dependency"
            )
            LOGGER.warning(message)
            report.skipped_fixes.append(message)
            continue
        report.relationship_fixes.append(f"Plan {parent.id} now depends on child {child.id}")
        fixed_parents.add(parent.id or 0)
        parent.dependencies.append(child.id)
        dirty.add(store.path_of(parent))
    report.fixed_relationships = len(fixed_parents)

    for path, plan in entries.items():
        if not plan.uuid:
            plan.uuid = new_plan_uuid()
            report.generated_uuids.append(path)
            dirty.add(path)

    ambiguous = set(report.duplicate_ids)
    for path, plan in entries.items():
        refreshed: Dict[int, str] = {}
        for ref_id in plan.referenced_ids():
            target = plans.get(ref_id)
            if ref_id in ambiguous:
                if ref_id in plan.references:
                    refreshed[ref_id] = plan.references[ref_id]
            elif target is not None and target.uuid:
                refreshed[ref_id] = target.uuid
        if refreshed != plan.references:
            plan.references = refreshed
            report.refreshed_references.append(path)
            dirty.add(path)

    if fix:
        for path in sorted(dirty, key=lambda item: item.as_posix()):
            plan = entries[path]
            plan.touch()
            store.save(plan, path)
        if dirty:
            LOGGER.info("Updated %d plan file(s) during validation", len(dirty))
    else:
        store.invalidate()
    return report

"""Shared plan claims for every workspace of one repository.

Claims live in a single JSON document per repository under the user's config
home. Each mutation re-reads the document, applies an idempotent merge, and
replaces the file only if nobody bumped ``version`` in the meantime; on a
conflict the merge is re-applied to the fresh copy.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import config_home
from ..plans.schema import utc_now
from .identity import storage_key

LOGGER = logging.getLogger(__name__)

ASSIGNMENTS_FILENAME = "assignments.json"
MAX_WRITE_ATTEMPTS = 5

T = TypeVar("T")


class ClaimPersistenceError(RuntimeError):
    """Raised when the claims document cannot be read or written."""


class _Document(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AssignmentEntry(_Document):
    plan_id: Optional[int] = Field(default=None, alias="planId")
    workspace_paths: List[str] = Field(default_factory=list, alias="workspacePaths")
    workspace_owners: Dict[str, str] = Field(default_factory=dict, alias="workspaceOwners")
    users: List[str] = Field(default_factory=list)
    status: Optional[str] = None
    assigned_at: datetime = Field(default_factory=utc_now, alias="assignedAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")


class AssignmentsFile(_Document):
    repository_id: str = Field(alias="repositoryId")
    repository_remote_url: Optional[str] = Field(default=None, alias="repositoryRemoteUrl")
    version: int = 0
    assignments: Dict[str, AssignmentEntry] = Field(default_factory=dict)


@dataclass(slots=True)
class ClaimRequest:
    uuid: str
    repository_id: str
    workspace_path: Path
    user: Optional[str] = None
    repository_remote_url: Optional[str] = None
    status: Optional[str] = None


@dataclass(slots=True)
class ClaimResult:
    created: bool = False
    added_workspace: bool = False
    added_user: bool = False
    updated: bool = False
    persisted: bool = False
    warnings: List[str] = field(default_factory=list)
    entry: Optional[AssignmentEntry] = None

    @property
    def changed(self) -> bool:
        return self.created or self.added_workspace or self.added_user or self.updated


@dataclass(slots=True)
class ReleaseResult:
    removed_workspace: bool = False
    removed_user: bool = False
    entry_removed: bool = False
    persisted: bool = False
    warnings: List[str] = field(default_factory=list)
    entry: Optional[AssignmentEntry] = None


def assignments_path(repository_id: str, root: Path | None = None) -> Path:
    base = root if root is not None else config_home()
    return base / "shared" / storage_key(repository_id) / ASSIGNMENTS_FILENAME


class ClaimStore:
    """Read-merge-write access to one repository's claims document."""

    def __init__(
        self,
        repository_id: str,
        *,
        remote_url: Optional[str] = None,
        root: Path | None = None,
    ) -> None:
        self.repository_id = repository_id
        self.remote_url = remote_url
        self.path = assignments_path(repository_id, root)

    # ------------------------------------------------------------------- IO
    def read(self) -> AssignmentsFile:
        if not self.path.exists():
            return AssignmentsFile(repository_id=self.repository_id, repository_remote_url=self.remote_url)
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            return AssignmentsFile.model_validate(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as error:
            raise ClaimPersistenceError(f"Unable to read assignments from {self.path}: {error}") from error

    def _current_version(self) -> int:
        if not self.path.exists():
            return 0
        return self.read().version

    def _replace_if_current(self, document: AssignmentsFile, expected_version: int) -> bool:
        if self._current_version() != expected_version:
            return False
        document.version = expected_version + 1
        if self.remote_url and not document.repository_remote_url:
            document.repository_remote_url = self.remote_url
        payload = json.dumps(document.model_dump(mode="json", by_alias=True), indent=2, sort_keys=False)
        temp_path: Optional[Path] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{ASSIGNMENTS_FILENAME}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                handle.write(payload + "\n")
            os.replace(temp_path, self.path)
        except OSError as error:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise ClaimPersistenceError(f"Unable to write assignments to {self.path}: {error}") from error
        return True

    def update(self, mutate: Callable[[AssignmentsFile], Tuple[T, bool]]) -> Tuple[T, bool]:
        """Apply ``mutate`` and persist when it reports a change.

        ``mutate`` returns ``(result, changed)`` and must be safe to run more
        than once. Returns ``(result, persisted)``.
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            document = self.read()
            expected = document.version
            result, changed = mutate(document)
            if not changed:
                return result, False
            if self._replace_if_current(document, expected):
                return result, True
            LOGGER.debug("Assignments changed concurrently (attempt %d); retrying", attempt)
        raise ClaimPersistenceError(
            f"Unable to update {self.path} after {MAX_WRITE_ATTEMPTS} attempts due to concurrent changes"
        )

    # -------------------------------------------------------------- claims
    def claim_plan(self, plan_id: Optional[int], request: ClaimRequest) -> ClaimResult:
        """Record ``request.workspace_path`` (and the user) as working on the plan."""
        workspace = Path(request.workspace_path).resolve().as_posix()

        def mutate(document: AssignmentsFile) -> Tuple[ClaimResult, bool]:
            result = ClaimResult()
            entry = document.assignments.get(request.uuid)
            if entry is None:
                entry = AssignmentEntry(plan_id=plan_id, status=request.status)
                document.assignments[request.uuid] = entry
                result.created = True
            others = [path for path in entry.workspace_paths if path != workspace]
            if others:
                result.warnings.append(
                    f"Plan {plan_id if plan_id is not None else request.uuid} is already claimed in "
                    f"other workspace(s): {', '.join(others)}"
                )
            if workspace not in entry.workspace_paths:
                entry.workspace_paths.append(workspace)
                result.added_workspace = True
            if request.user:
                if entry.workspace_owners.get(workspace) != request.user:
                    entry.workspace_owners[workspace] = request.user
                    result.updated = True
                if request.user not in entry.users:
                    entry.users.append(request.user)
                    result.added_user = True
            if plan_id is not None and entry.plan_id != plan_id:
                entry.plan_id = plan_id
                result.updated = True
            if result.changed:
                entry.updated_at = utc_now()
            result.entry = entry
            return result, result.changed

        result, persisted = self.update(mutate)
        result.persisted = persisted
        for warning in result.warnings:
            LOGGER.warning(warning)
        return result

    def release_plan(
        self,
        plan_uuid: str,
        *,
        workspace_path: Path | None = None,
        user: Optional[str] = None,
    ) -> ReleaseResult:
        """Remove a workspace and/or user from a claim; drop it when no workspace remains."""
        workspace = Path(workspace_path).resolve().as_posix() if workspace_path is not None else None

        def mutate(document: AssignmentsFile) -> Tuple[ReleaseResult, bool]:
            result = ReleaseResult()
            entry = document.assignments.get(plan_uuid)
            if entry is None:
                result.warnings.append(f"Plan {plan_uuid} is not claimed")
                return result, False
            if workspace is not None and workspace in entry.workspace_paths:
                entry.workspace_paths.remove(workspace)
                entry.workspace_owners.pop(workspace, None)
                result.removed_workspace = True
            elif workspace is not None:
                result.warnings.append(f"Workspace {workspace} does not hold a claim on this plan")
            if user is not None and user in entry.users:
                entry.users.remove(user)
                result.removed_user = True
            if not entry.workspace_paths:
                del document.assignments[plan_uuid]
                result.entry_removed = True
            else:
                entry.updated_at = utc_now()
            result.entry = entry
            return result, result.removed_workspace or result.removed_user or result.entry_removed

        result, persisted = self.update(mutate)
        result.persisted = persisted
        return result

    def remove_plan_assignment(self, plan_uuid: str) -> bool:
        """Drop every claim on ``plan_uuid``; returns ``True`` if one existed."""

        def mutate(document: AssignmentsFile) -> Tuple[bool, bool]:
            removed = document.assignments.pop(plan_uuid, None) is not None
            return removed, removed

        removed, _ = self.update(mutate)
        if removed:
            LOGGER.info("Removed assignment for plan %s", plan_uuid)
        return removed

    # ------------------------------------------------------------ queries
    def list_assignments(self) -> Dict[str, AssignmentEntry]:
        return dict(self.read().assignments)

    def get(self, plan_uuid: str) -> Optional[AssignmentEntry]:
        return self.read().assignments.get(plan_uuid)

    def stale_assignments(self, timeout_days: float = 7, *, now: datetime | None = None) -> Dict[str, AssignmentEntry]:
        cutoff = (now or utc_now()) - timedelta(days=timeout_days)
        return {
            plan_uuid: entry
            for plan_uuid, entry in self.read().assignments.items()
            if _aware(entry.updated_at) < cutoff
        }

    def clean_stale(self, timeout_days: float = 7, *, now: datetime | None = None) -> List[str]:
        """Remove assignments untouched for ``timeout_days``; return their uuids."""
        cutoff = (now or utc_now()) - timedelta(days=timeout_days)

        def mutate(document: AssignmentsFile) -> Tuple[List[str], bool]:
            stale = sorted(
                plan_uuid
                for plan_uuid, entry in document.assignments.items()
                if _aware(entry.updated_at) < cutoff
            )
            for plan_uuid in stale:
                del document.assignments[plan_uuid]
            return stale, bool(stale)

        removed, _ = self.update(mutate)
        return removed


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=utc_now().tzinfo)
    return value

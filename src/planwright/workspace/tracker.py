"""Registry of workspaces known to this user, stored as ``workspaces.json``."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import config_home
from ..plans.schema import utc_now

LOGGER = logging.getLogger(__name__)

TRACKING_FILENAME = "workspaces.json"


class WorkspaceInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    workspace_path: str = Field(alias="workspacePath")
    repository_id: str = Field(alias="repositoryId")
    task_id: str = Field(default="", alias="taskId")
    branch: Optional[str] = None
    plan_id: Optional[int] = Field(default=None, alias="planId")
    plan_title: Optional[str] = Field(default=None, alias="planTitle")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")

    @property
    def path(self) -> Path:
        return Path(self.workspace_path)


class WorkspaceTracker:
    """Read and update the workspace registry file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path if path is not None else config_home() / TRACKING_FILENAME

    def read(self) -> Dict[str, WorkspaceInfo]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Ignoring unreadable workspace tracking file %s: %s", self.path, error)
            return {}
        entries: Dict[str, WorkspaceInfo] = {}
        for key, value in (payload or {}).items():
            try:
                entries[key] = WorkspaceInfo.model_validate(value)
            except ValidationError as error:
                LOGGER.warning("Skipping invalid workspace entry %s: %s", key, error)
        return entries

    def write(self, entries: Dict[str, WorkspaceInfo]) -> None:
        data: Dict[str, Any] = {
            key: info.model_dump(mode="json", by_alias=True, exclude_none=True)
            for key, info in sorted(entries.items())
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{TRACKING_FILENAME}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                json.dump(data, handle, indent=2)
                handle.write("\n")
            os.replace(temp_path, self.path)
        except OSError:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise

    def record(self, info: WorkspaceInfo) -> WorkspaceInfo:
        """Insert or update ``info``, keeping the original creation time."""
        key = Path(info.workspace_path).resolve().as_posix()
        entries = self.read()
        existing = entries.get(key)
        info.workspace_path = key
        if existing is not None:
            info.created_at = existing.created_at
        info.updated_at = utc_now()
        entries[key] = info
        self.write(entries)
        return info

    def update(self, workspace_path: Path | str, **changes: Any) -> Optional[WorkspaceInfo]:
        key = Path(workspace_path).resolve().as_posix()
        entries = self.read()
        existing = entries.get(key)
        if existing is None:
            return None
        updated = existing.model_copy(update={**changes, "updated_at": utc_now()})
        entries[key] = updated
        self.write(entries)
        return updated

    def get(self, workspace_path: Path | str) -> Optional[WorkspaceInfo]:
        return self.read().get(Path(workspace_path).resolve().as_posix())

    def find_by_repository(self, repository_id: str) -> List[WorkspaceInfo]:
        """Workspaces of ``repository_id``, most recently created first."""
        matches = [info for info in self.read().values() if info.repository_id == repository_id]
        return sorted(matches, key=lambda info: info.created_at, reverse=True)

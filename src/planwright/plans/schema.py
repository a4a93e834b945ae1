"""Typed records describing plan documents on disk."""

from __future__ import annotations

import uuid as uuid_module
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlanValidationError(ValueError):
    """Raised when a plan document is malformed or an operation input is invalid."""


class PlanNotFoundError(LookupError):
    """Raised when a plan id or path cannot be resolved."""


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_plan_uuid() -> str:
    """Generate the durable identifier assigned to a plan at creation."""
    return str(uuid_module.uuid4())


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling and camelCase aliases."""

    model_config = ConfigDict(extra="forbid", frozen=False, populate_by_name=True)


class PlanStatus(str, Enum):
    """Lifecycle states for a plan."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"

    @property
    def is_terminal(self) -> bool:
        return self in (PlanStatus.DONE, PlanStatus.CANCELLED)


class Priority(str, Enum):
    """Scheduling priority; ``maybe`` plans are never picked automatically."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    MAYBE = "maybe"


PRIORITY_RANK: Dict[Priority, int] = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


def priority_rank(priority: Optional[Priority]) -> int:
    """Return the sort rank for ``priority`` (untagged and ``maybe`` rank 0)."""
    if priority is None:
        return 0
    return PRIORITY_RANK.get(priority, 0)


class Step(RecordModel):
    """Single prompt-sized unit of work inside a complex task."""

    prompt: str = ""
    done: bool = False


class TaskKind(str, Enum):
    """Structural variant of a task.

    ``SIMPLE`` tasks carry their own ``done`` flag; ``COMPLEX`` tasks are
    complete once every step is done.
    """

    SIMPLE = "simple"
    COMPLEX = "complex"


class Task(RecordModel):
    """Task within a plan."""

    title: str
    description: str = ""
    done: Optional[bool] = None
    files: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)

    @property
    def kind(self) -> TaskKind:
        return task_kind(self)


def task_kind(task: Task) -> TaskKind:
    """Classify ``task`` by the presence of a non-empty step list."""
    return TaskKind.COMPLEX if task.steps else TaskKind.SIMPLE


def is_task_complete(task: Task) -> bool:
    """Return ``True`` when ``task`` is complete for its kind."""
    kind = task_kind(task)
    if kind is TaskKind.COMPLEX:
        return all(step.done for step in task.steps)
    if kind is TaskKind.SIMPLE:
        return bool(task.done)
    raise AssertionError(f"Unhandled task kind: {kind}")


class Plan(RecordModel):
    """Plan document: goal, tasks, hierarchy and dependency edges."""

    id: Optional[int] = Field(default=None, gt=0)
    uuid: Optional[str] = None
    title: Optional[str] = None
    goal: str = ""
    details: str = ""
    parent: Optional[int] = Field(default=None, gt=0)
    dependencies: List[int] = Field(default_factory=list)
    references: Dict[int, str] = Field(default_factory=dict)
    status: PlanStatus = PlanStatus.PENDING
    priority: Optional[Priority] = None
    container: bool = False
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo")
    issue: List[str] = Field(default_factory=list)
    docs: List[str] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: List[int]) -> List[int]:
        seen: set[int] = set()
        ordered: List[int] = []
        for item in value:
            if item <= 0:
                raise ValueError(f"dependency ids must be positive integers, got {item}")
            if item not in seen:
                seen.add(item)
                ordered.append(item)
        return ordered

    @property
    def label(self) -> str:
        """Human readable name used in diagnostics."""
        return (self.title or self.goal or "").strip() or f"plan {self.id}"

    def is_complete(self) -> bool:
        """Return ``True`` when every task is complete."""
        return all(is_task_complete(task) for task in self.tasks)

    def referenced_ids(self) -> List[int]:
        """Return every plan id this plan points at (parent first)."""
        ids: List[int] = []
        if self.parent is not None:
            ids.append(self.parent)
        for dep in self.dependencies:
            if dep not in ids:
                ids.append(dep)
        return ids

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_document(self) -> Dict[str, Any]:
        """Return the mapping persisted to disk, omitting empty optional fields."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        for key in ("dependencies", "issue", "docs"):
            if not data.get(key):
                data.pop(key, None)
        if not data.get("details"):
            data.pop("details", None)
        if not data.get("container"):
            data.pop("container", None)
        if self.references:
            data["references"] = {int(key): value for key, value in sorted(self.references.items())}
        else:
            data.pop("references", None)
        for task in data.get("tasks", []):
            if not task.get("steps"):
                task.pop("steps", None)
            if not task.get("files"):
                task.pop("files", None)
        return data

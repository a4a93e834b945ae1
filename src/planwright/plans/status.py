"""Status transitions and task/step completion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol

from ..workspace.claims import ClaimPersistenceError
from .schema import Plan, PlanStatus, PlanValidationError, TaskKind, is_task_complete, task_kind
from .store import PlanStore

LOGGER = logging.getLogger(__name__)


class ClaimRemover(Protocol):
    """Anything able to drop the claim recorded for a plan uuid."""

    def remove_plan_assignment(self, plan_uuid: str) -> bool: ...


@dataclass(slots=True)
class StatusChange:
    path: Path
    plan: Plan
    previous: PlanStatus
    completed_parents: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previous is not self.plan.status


def _release_claim(plan: Plan, claims: Optional[ClaimRemover], warnings: List[str]) -> None:
    if claims is None or not plan.uuid:
        return
    try:
        claims.remove_plan_assignment(plan.uuid)
    except (ClaimPersistenceError, OSError) as error:
        message = f"Failed to remove assignment for plan {plan.id}: {error}"
        LOGGER.warning(message)
        warnings.append(message)


def _complete_container_parents(
    store: PlanStore,
    plan: Plan,
    claims: Optional[ClaimRemover],
    change: StatusChange,
) -> None:
    current = plan
    seen = {plan.id}
    while current.parent is not None and current.parent not in seen:
        seen.add(current.parent)
        parent = store.get(current.parent)
        if parent is None or not parent.container or parent.status is PlanStatus.DONE:
            return
        children = store.children_of(current.parent)
        if not children or any(child.status is not PlanStatus.DONE for child in children):
            return
        parent.status = PlanStatus.DONE
        parent.touch()
        store.save(parent)
        _release_claim(parent, claims, change.warnings)
        change.completed_parents.append(current.parent)
        LOGGER.info("Marked container plan %s done", current.parent)
        current = parent


def _apply_status(
    store: PlanStore,
    path: Path,
    plan: Plan,
    status: PlanStatus,
    claims: Optional[ClaimRemover],
    change: StatusChange,
) -> None:
    plan.status = status
    plan.touch()
    store.save(plan, path)
    if status.is_terminal:
        _release_claim(plan, claims, change.warnings)
    if status is PlanStatus.DONE:
        _complete_container_parents(store, plan, claims, change)


def set_plan_status(
    store: PlanStore,
    plan_arg: str | int,
    status: PlanStatus | str,
    *,
    force: bool = False,
    claims: Optional[ClaimRemover] = None,
) -> StatusChange:
    """Set a plan's status.

    ``done`` is refused while tasks remain open unless ``force`` is set.
    Terminal statuses drop the plan's claim; failures there are reported as
    warnings on the returned change.
    """
    target = PlanStatus(status)
    path, plan = store.resolve(plan_arg)
    change = StatusChange(path=path, plan=plan, previous=plan.status)
    if target is PlanStatus.DONE and not force and not plan.is_complete():
        open_tasks = sum(1 for task in plan.tasks if not is_task_complete(task))
        raise PlanValidationError(
            f"Plan {plan.id} still has {open_tasks} incomplete task(s); use --force to mark it done"
        )
    _apply_status(store, path, plan, target, claims, change)
    return change


def mark_task_done(
    store: PlanStore,
    plan_arg: str | int,
    task_index: int,
    *,
    step_index: Optional[int] = None,
    claims: Optional[ClaimRemover] = None,
) -> StatusChange:
    """Mark a task (or one of its steps) done; indexes are zero based.

    A pending plan moves to ``in_progress``; a plan whose every task is
    complete moves to ``done``.
    """
    path, plan = store.resolve(plan_arg)
    change = StatusChange(path=path, plan=plan, previous=plan.status)
    if not 0 <= task_index < len(plan.tasks):
        raise PlanValidationError(f"Plan {plan.id} has no task #{task_index + 1}")
    task = plan.tasks[task_index]

    if step_index is None:
        if task_kind(task) is TaskKind.COMPLEX:
            for step in task.steps:
                step.done = True
        else:
            task.done = True
    else:
        if not 0 <= step_index < len(task.steps):
            raise PlanValidationError(f"Task #{task_index + 1} of plan {plan.id} has no step #{step_index + 1}")
        task.steps[step_index].done = True

    if plan.is_complete():
        _apply_status(store, path, plan, PlanStatus.DONE, claims, change)
    else:
        if plan.status is PlanStatus.PENDING:
            plan.status = PlanStatus.IN_PROGRESS
        plan.touch()
        store.save(plan, path)
    return change


def mark_step_done(
    store: PlanStore,
    plan_arg: str | int,
    task_index: int,
    step_index: int,
    *,
    claims: Optional[ClaimRemover] = None,
) -> StatusChange:
    return mark_task_done(store, plan_arg, task_index, step_index=step_index, claims=claims)

"""Pick the next actionable plan from the dependency graph."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .schema import Plan, PlanStatus, Priority, priority_rank
from .store import PlanStore

LOGGER = logging.getLogger(__name__)

ACTIVE_STATUSES = (PlanStatus.PENDING, PlanStatus.IN_PROGRESS)


class ReadyReason(str, Enum):
    PLAN_NOT_FOUND = "plan_not_found"
    DIRECTORY_NOT_FOUND = "directory_not_found"
    ROOT_COMPLETE = "root_complete"
    NO_DEPENDENCIES = "no_dependencies"
    ALL_DEPENDENCIES_COMPLETE = "all_dependencies_complete"
    FOUND_READY = "found_ready"
    FOUND_IN_PROGRESS = "found_in_progress"
    BLOCKED = "blocked"
    ALL_MAYBE = "all_maybe"
    NO_ACTIONABLE_TASKS = "no_actionable_tasks"


@dataclass(slots=True)
class ReadyDependencyResult:
    plan: Optional[Plan]
    message: str
    reason: ReadyReason

    @property
    def found(self) -> bool:
        return self.plan is not None


def readiness_key(plan: Plan) -> Tuple[int, int, int]:
    """Sort key: in-progress first, then higher priority, then lower id."""
    status_rank = 0 if plan.status is PlanStatus.IN_PROGRESS else 1
    return (status_rank, -priority_rank(plan.priority), plan.id or 0)


def dependencies_done(plan: Plan, plans: Dict[int, Plan]) -> bool:
    for dep_id in plan.dependencies:
        dependency = plans.get(dep_id)
        if dependency is None or dependency.status is not PlanStatus.DONE:
            return False
    return True


def is_ready(plan: Plan, plans: Dict[int, Plan]) -> bool:
    """Return ``True`` when ``plan`` can be worked on right now."""
    if plan.priority is Priority.MAYBE:
        return False
    if plan.status is PlanStatus.IN_PROGRESS:
        return True
    if plan.status is not PlanStatus.PENDING:
        return False
    return bool(plan.tasks) and dependencies_done(plan, plans)


def collect_dependencies(root_id: int, plans: Dict[int, Plan]) -> List[Plan]:
    """Breadth-first walk from ``root_id`` over ``dependencies`` and child plans, root excluded.

    A plan whose ``parent`` points at a visited plan counts as one of its
    dependencies even when the parent does not list it.
    """
    children: Dict[int, List[int]] = {}
    for plan in plans.values():
        if plan.parent is not None and plan.id is not None:
            children.setdefault(plan.parent, []).append(plan.id)
    visited: Set[int] = {root_id}
    queue = deque([root_id])
    found: List[Plan] = []
    while queue:
        current_id = queue.popleft()
        current = plans.get(current_id)
        if current is None:
            continue
        for dep_id in [*current.dependencies, *sorted(children.get(current_id, []))]:
            if dep_id in visited:
                continue
            visited.add(dep_id)
            dependency = plans.get(dep_id)
            if dependency is None:
                LOGGER.debug("Plan %s depends on missing plan %s", current.id, dep_id)
                continue
            found.append(dependency)
            queue.append(dep_id)
    return found


def _found(plan: Plan) -> ReadyDependencyResult:
    if plan.status is PlanStatus.IN_PROGRESS:
        return ReadyDependencyResult(
            plan,
            f"Found in-progress plan: {plan.label} (ID: {plan.id})",
            ReadyReason.FOUND_IN_PROGRESS,
        )
    return ReadyDependencyResult(plan, f"Found ready plan: {plan.label} (ID: {plan.id})", ReadyReason.FOUND_READY)


def find_next_ready_dependency(root_id: int, store: PlanStore) -> ReadyDependencyResult:
    """Return the best plan to work on next within ``root_id``'s dependency tree."""
    if not store.exists:
        return ReadyDependencyResult(
            None,
            f"Directory not found: {store.tasks_dir}\n→ Check the path is correct and that you have read permissions",
            ReadyReason.DIRECTORY_NOT_FOUND,
        )
    plans = store.plans
    root = plans.get(root_id)
    if root is None:
        return ReadyDependencyResult(
            None,
            f"Plan not found: {root_id}\n→ Check the plan ID is correct with `planwright ready`",
            ReadyReason.PLAN_NOT_FOUND,
        )
    if root.status is PlanStatus.DONE:
        return ReadyDependencyResult(None, f"Plan {root_id} is already complete", ReadyReason.ROOT_COMPLETE)

    dependencies = collect_dependencies(root_id, plans)
    if not dependencies:
        return ReadyDependencyResult(
            root,
            f"No dependencies found for this plan; work on {root.label} (ID: {root.id}) directly",
            ReadyReason.NO_DEPENDENCIES,
        )

    candidates = [plan for plan in dependencies if plan.status in ACTIVE_STATUSES]
    if not candidates:
        return ReadyDependencyResult(
            root,
            f"All dependencies are complete; ready to work on the parent plan {root.label} (ID: {root.id})",
            ReadyReason.ALL_DEPENDENCIES_COMPLETE,
        )

    actionable = [plan for plan in candidates if plan.priority is not Priority.MAYBE]
    ready = sorted((plan for plan in actionable if is_ready(plan, plans)), key=readiness_key)
    if ready:
        return _found(ready[0])

    if not actionable:
        return ReadyDependencyResult(
            None,
            f"No ready dependencies found: {len(candidates)} remaining dependencies have \"maybe\" priority\n"
            "→ Review and update priorities to make them actionable",
            ReadyReason.ALL_MAYBE,
        )
    unblocked = [plan for plan in actionable if dependencies_done(plan, plans)]
    if unblocked and all(not plan.tasks for plan in unblocked):
        ids = ", ".join(str(plan.id) for plan in unblocked)
        return ReadyDependencyResult(
            None,
            f"No ready dependencies found: dependencies have no actionable tasks ({ids})\n"
            "→ Add tasks to these plans before running them",
            ReadyReason.NO_ACTIONABLE_TASKS,
        )
    return ReadyDependencyResult(
        None,
        "No ready dependencies found: dependencies are blocked by incomplete prerequisites",
        ReadyReason.BLOCKED,
    )


def list_ready_plans(
    store: PlanStore,
    *,
    include_pending: bool = True,
    include_in_progress: bool = True,
) -> List[Plan]:
    """Every ready plan in the store, best candidate first."""
    plans = store.plans
    statuses: List[PlanStatus] = []
    if include_pending:
        statuses.append(PlanStatus.PENDING)
    if include_in_progress:
        statuses.append(PlanStatus.IN_PROGRESS)
    selected: Iterable[Plan] = (
        plan for plan in plans.values() if plan.status in statuses and is_ready(plan, plans)
    )
    return sorted(selected, key=readiness_key)


def find_next_plan(
    store: PlanStore,
    *,
    include_pending: bool = True,
    include_in_progress: bool = True,
) -> Optional[Plan]:
    ready = list_ready_plans(
        store,
        include_pending=include_pending,
        include_in_progress=include_in_progress,
    )
    return ready[0] if ready else None

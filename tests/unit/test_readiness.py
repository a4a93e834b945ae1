from __future__ import annotations

from pathlib import Path

from planwright.plans.readiness import (
    ReadyReason,
    find_next_plan,
    find_next_ready_dependency,
    list_ready_plans,
)
from planwright.plans.store import PlanStore

TASKS = [{"title": "Do the work"}]


def test_end_to_end_scenario_returns_high_priority_dependency(tasks_dir: Path, write_plan) -> None:
    write_plan("1-parent.yml", id=1, title="Parent", dependencies=[2, 3])
    write_plan("2-done.yml", id=2, title="Finished", status="done", tasks=TASKS)
    write_plan("3-next.yml", id=3, title="Next step", dependencies=[2], priority="high", tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan is not None
    assert result.plan.id == 3
    assert result.reason is ReadyReason.FOUND_READY
    assert result.message == "Found ready plan: Next step (ID: 3)"


def test_status_beats_priority(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[2, 3, 4])
    write_plan("2-urgent.yml", id=2, title="Urgent", priority="urgent", tasks=TASKS)
    write_plan("3-high.yml", id=3, title="High", priority="high", status="in_progress", tasks=TASKS)
    write_plan("4-low.yml", id=4, title="Low", priority="low", tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan.id == 3
    assert result.reason is ReadyReason.FOUND_IN_PROGRESS


def test_priority_then_id_break_ties(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[4, 3, 2])
    write_plan("2-plain.yml", id=2, title="Plain", tasks=TASKS)
    write_plan("3-medium.yml", id=3, title="Medium", priority="medium", tasks=TASKS)
    write_plan("4-medium.yml", id=4, title="Medium too", priority="medium", tasks=TASKS)

    store = PlanStore(tasks_dir)

    assert find_next_ready_dependency(1, store).plan.id == 3
    assert [plan.id for plan in list_ready_plans(store)] == [3, 4, 2]


def test_root_without_dependencies_is_returned(tasks_dir: Path, write_plan) -> None:
    write_plan("1-solo.yml", id=1, title="Solo", tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan.id == 1
    assert result.reason is ReadyReason.NO_DEPENDENCIES


def test_root_returned_when_all_dependencies_done(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[2])
    write_plan("2-dep.yml", id=2, title="Dep", status="done", dependencies=[3])
    write_plan("3-dep.yml", id=3, title="Deeper", status="cancelled")

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan.id == 1
    assert result.reason is ReadyReason.ALL_DEPENDENCIES_COMPLETE
    assert "All dependencies are complete" in result.message


def test_transitive_dependencies_are_searched(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[2])
    write_plan("2-middle.yml", id=2, title="Middle", dependencies=[3], tasks=TASKS)
    write_plan("3-leaf.yml", id=3, title="Leaf", tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan.id == 3


def test_blocked_dependencies_and_cycles_terminate(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[2])
    write_plan("2-a.yml", id=2, title="A", dependencies=[3], tasks=TASKS)
    write_plan("3-b.yml", id=3, title="B", dependencies=[2], tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan is None
    assert result.reason is ReadyReason.BLOCKED
    assert "blocked by incomplete prerequisites" in result.message


def test_maybe_dependencies_are_never_picked(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[2])
    write_plan("2-maybe.yml", id=2, title="Maybe", priority="maybe", tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan is None
    assert result.reason is ReadyReason.ALL_MAYBE


def test_dependencies_without_tasks_are_not_actionable(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", dependencies=[2])
    write_plan("2-empty.yml", id=2, title="Empty")

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan is None
    assert result.reason is ReadyReason.NO_ACTIONABLE_TASKS


def test_missing_plan_and_directory(tmp_path: Path, tasks_dir: Path) -> None:
    missing = find_next_ready_dependency(42, PlanStore(tasks_dir))
    assert missing.reason is ReadyReason.PLAN_NOT_FOUND
    assert "Plan not found: 42" in missing.message

    no_dir = find_next_ready_dependency(1, PlanStore(tmp_path / "absent"))
    assert no_dir.reason is ReadyReason.DIRECTORY_NOT_FOUND


def test_complete_root(tasks_dir: Path, write_plan) -> None:
    write_plan("1-root.yml", id=1, title="Root", status="done")

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.reason is ReadyReason.ROOT_COMPLETE


def test_find_next_plan_filters_statuses(tasks_dir: Path, write_plan) -> None:
    write_plan("1-busy.yml", id=1, title="Busy", status="in_progress", tasks=TASKS)
    write_plan("2-waiting.yml", id=2, title="Waiting", priority="urgent", tasks=TASKS)

    store = PlanStore(tasks_dir)

    assert find_next_plan(store).id == 1
    assert find_next_plan(store, include_in_progress=False).id == 2
    assert find_next_plan(store, include_pending=False, include_in_progress=False) is None


def test_child_plans_are_found_through_parent_field(tasks_dir: Path, write_plan) -> None:
    write_plan("1-parent.yml", id=1, title="Parent Plan", status="in_progress", tasks=TASKS)
    write_plan("2-child.yml", id=2, title="Child Plan", parent=1, tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan is not None
    assert result.plan.id == 2
    assert result.reason is ReadyReason.FOUND_READY


def test_dependencies_and_children_are_searched_together(tasks_dir: Path, write_plan) -> None:
    write_plan("1-main.yml", id=1, title="Main", status="in_progress", dependencies=[2], tasks=TASKS)
    write_plan("2-explicit.yml", id=2, title="Explicit", status="done", tasks=[{"title": "x", "done": True}])
    write_plan("3-child.yml", id=3, title="Child", parent=1, tasks=TASKS)
    write_plan("4-another.yml", id=4, title="Another child", parent=1, dependencies=[2], tasks=TASKS)
    write_plan("5-grandchild.yml", id=5, title="Grandchild", parent=3, priority="high", tasks=TASKS)

    result = find_next_ready_dependency(1, PlanStore(tasks_dir))

    assert result.plan.id == 5
    assert result.reason is ReadyReason.FOUND_READY

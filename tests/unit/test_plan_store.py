from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from planwright.plans.schema import Plan, PlanNotFoundError, PlanStatus, PlanValidationError, Task
from planwright.plans.store import PlanStore, read_plan_file, write_plan_file


def test_store_loads_yaml_and_front_matter_plans(tasks_dir: Path, write_plan) -> None:
    write_plan("1-setup.yml", id=1, title="Setup", tasks=[{"title": "Install"}])
    (tasks_dir / "nested").mkdir()
    (tasks_dir / "nested" / "2-docs.plan.md").write_text(
        "---\nid: 2\ntitle: Docs\nparent: 1\n---\n\n# Notes\n\nWrite the guide.\n",
        encoding="utf-8",
    )
    (tasks_dir / "README.md").write_text("not a plan\n", encoding="utf-8")

    store = PlanStore(tasks_dir)

    assert sorted(store.plans) == [1, 2]
    docs = store.get(2)
    assert docs is not None
    assert docs.parent == 1
    assert docs.details.startswith("# Notes")
    assert store.children_of(1) == [docs]
    assert store.max_id() == 2
    assert store.next_id() == 3


def test_duplicate_ids_keep_every_entry(tasks_dir: Path, write_plan) -> None:
    first = write_plan("5-alpha.yml", id=5, title="Alpha")
    second = write_plan("5-beta.yml", id=5, title="Beta")

    store = PlanStore(tasks_dir)

    assert len(store.entries) == 2
    assert store.get(5).title == "Alpha"
    assert store.duplicate_ids() == {5: [first.resolve(), second.resolve()]}


def test_invalid_files_are_reported_not_loaded(tasks_dir: Path, write_plan) -> None:
    write_plan("1-ok.yml", id=1, title="Fine")
    bad = write_plan("2-bad.yml", id=2, title="Bad", status="sleeping")
    (tasks_dir / "3-broken.yml").write_text("id: [unclosed\n", encoding="utf-8")

    store = PlanStore(tasks_dir)

    assert list(store.plans) == [1]
    errors = store.errors
    assert bad.resolve() in errors
    assert "status" in errors[bad.resolve()]
    assert (tasks_dir / "3-broken.yml").resolve() in errors


def test_read_plan_file_names_offending_field(tasks_dir: Path, write_plan) -> None:
    path = write_plan("1-typo.yml", id=1, title="Typo", dependecies=[2])

    with pytest.raises(PlanValidationError) as excinfo:
        read_plan_file(path)

    assert "dependecies" in str(excinfo.value)
    assert "1-typo.yml" in str(excinfo.value)


def test_write_plan_file_uses_camel_case_and_leaves_no_temp_files(tasks_dir: Path) -> None:
    plan = Plan(id=3, uuid="u-3", title="Write", assigned_to="sam", tasks=[Task(title="Do it")])
    target = tasks_dir / "3-write.yml"

    write_plan_file(target, plan)

    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert data["assignedTo"] == "sam"
    assert "assigned_to" not in data
    assert [item.name for item in tasks_dir.iterdir()] == ["3-write.yml"]
    assert read_plan_file(target).assigned_to == "sam"


def test_markdown_plans_keep_details_in_the_body(tasks_dir: Path) -> None:
    plan = Plan(id=4, title="Body", details="Some *markdown* text")
    target = tasks_dir / "4-body.plan.md"

    write_plan_file(target, plan)

    text = target.read_text(encoding="utf-8")
    assert text.startswith("---\n")
    assert "details:" not in text
    assert text.rstrip().endswith("Some *markdown* text")
    assert read_plan_file(target).details == "Some *markdown* text"


def test_create_plan_links_new_child_to_parent(tasks_dir: Path, write_plan) -> None:
    write_plan("1-parent.yml", id=1, uuid="parent-uuid", title="Parent")
    store = PlanStore(tasks_dir)

    path, child = store.create_plan("Child work", parent=1)

    assert child.id == 2
    assert child.uuid
    assert child.status is PlanStatus.PENDING
    assert path.name == "2-child-work.plan.md"
    store.reload()
    parent = store.require(1)
    assert parent.dependencies == [2]
    assert parent.references == {2: child.uuid}


def test_resolve_accepts_ids_and_paths(tasks_dir: Path, write_plan) -> None:
    path = write_plan("7-target.yml", id=7, title="Target")
    store = PlanStore(tasks_dir)

    assert store.resolve("7") == (path.resolve(), store.get(7))
    resolved_path, plan = store.resolve(str(path))
    assert resolved_path == path.resolve()
    assert plan.id == 7
    with pytest.raises(PlanNotFoundError):
        store.resolve("99")
    with pytest.raises(PlanNotFoundError):
        store.resolve("missing.yml")


def test_cache_is_explicit(tasks_dir: Path, write_plan) -> None:
    write_plan("1-a.yml", id=1, title="A")
    store = PlanStore(tasks_dir)
    assert list(store.plans) == [1]

    write_plan("2-b.yml", id=2, title="B")
    assert list(store.plans) == [1]

    store.invalidate()
    assert sorted(store.plans) == [1, 2]


def test_missing_directory_is_empty(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "nowhere")

    assert not store.exists
    assert store.plans == {}
    assert store.next_id() == 1


def test_store_from_config_and_uuid_lookup(tmp_path: Path, tasks_dir: Path, write_plan) -> None:
    write_plan("3-lookup.yml", id=3, uuid="lookup-uuid", title="Lookup")

    store = PlanStore.from_config({"paths": {"tasks": "tasks"}}, tmp_path / "repo")

    assert store.tasks_dir == tasks_dir.resolve()
    assert store.find_by_uuid("lookup-uuid").id == 3
    assert store.find_by_uuid("unknown") is None

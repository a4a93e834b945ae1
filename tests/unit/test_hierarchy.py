from __future__ import annotations

from pathlib import Path

import pytest

from planwright.plans.hierarchy import (
    CircularDependencyError,
    build_families,
    find_root,
    index_by_id,
    is_family_disordered,
    nodes_from_entries,
    order_violations,
    precedence_edges,
    reassign_family,
    topological_order,
)
from planwright.plans.schema import Plan


def _nodes(*plans: Plan):
    return nodes_from_entries({Path(f"/plans/{plan.id}.yml"): plan for plan in plans})


def test_find_root_stops_on_parent_cycles() -> None:
    nodes = _nodes(Plan(id=1, parent=2), Plan(id=2, parent=1), Plan(id=3, parent=3))
    by_id = index_by_id(nodes)

    assert find_root(Path("/plans/1.yml"), nodes, by_id) == Path("/plans/2.yml")
    assert find_root(Path("/plans/3.yml"), nodes, by_id) == Path("/plans/3.yml")


def test_families_ignore_dangling_parents() -> None:
    nodes = _nodes(Plan(id=1), Plan(id=2, parent=1), Plan(id=3, parent=99))

    families = build_families(nodes)

    assert [sorted(nodes[path].plan_id for path in family.members) for family in families] == [[1, 2], [3]]


def test_disorder_detection() -> None:
    ordered = _nodes(Plan(id=1, dependencies=[2]), Plan(id=2, parent=1))
    disordered = _nodes(Plan(id=5, dependencies=[2]), Plan(id=2, parent=5))

    assert not is_family_disordered(build_families(ordered)[0], ordered)
    assert is_family_disordered(build_families(disordered)[0], disordered)


def test_reassignment_is_a_valid_linearization_over_the_same_ids() -> None:
    nodes = _nodes(
        Plan(id=9, dependencies=[2, 4, 6]),
        Plan(id=2, parent=9, dependencies=[6]),
        Plan(id=4, parent=9),
        Plan(id=6, parent=9),
        Plan(id=1, parent=4),
    )
    family = build_families(nodes)[0]
    edges = precedence_edges(family, nodes)

    mapping = reassign_family(family, nodes)

    final = {path: mapping.get(path, nodes[path].plan_id) for path in family.members}
    assert sorted(final.values()) == [1, 2, 4, 6, 9]
    order = sorted(family.members, key=lambda path: final[path])
    assert order_violations(order, edges) == []
    assert final[Path("/plans/9.yml")] == 1


def test_ancestor_dependency_on_descendant_is_not_a_cycle() -> None:
    nodes = _nodes(Plan(id=3, dependencies=[1]), Plan(id=1, parent=3))
    family = build_families(nodes)[0]

    order = topological_order(family, nodes)

    assert [nodes[path].plan_id for path in order] == [3, 1]


def test_dependency_cycle_names_the_plans() -> None:
    nodes = _nodes(
        Plan(id=1, dependencies=[2, 3]),
        Plan(id=2, parent=1, dependencies=[3]),
        Plan(id=3, parent=1, dependencies=[2]),
    )
    family = build_families(nodes)[0]

    with pytest.raises(CircularDependencyError) as excinfo:
        topological_order(family, nodes)

    assert excinfo.value.plan_ids == [2, 3]

"""Parent/child families and their precedence ordering."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .schema import Plan, PlanValidationError


class CircularDependencyError(PlanValidationError):
    """Raised when a family's precedence graph contains a cycle."""

    def __init__(self, plan_ids: Sequence[int], message: str | None = None) -> None:
        self.plan_ids: List[int] = sorted(set(plan_ids))
        joined = ", ".join(str(item) for item in self.plan_ids)
        super().__init__(message or f"Circular dependency detected between plans: {joined}")


@dataclass(slots=True)
class Node:
    """A plan file participating in hierarchy computations."""

    path: Path
    plan: Plan

    @property
    def plan_id(self) -> int:
        assert self.plan.id is not None
        return self.plan.id

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.plan_id, self.path.as_posix())


@dataclass(slots=True)
class Family:
    """A root plan together with all of its transitive children."""

    root: Path
    members: List[Path] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.members)


def index_by_id(nodes: Mapping[Path, Node]) -> Dict[int, Path]:
    """Map each id to a single path; the first path in sorted order wins."""
    index: Dict[int, Path] = {}
    for path in sorted(nodes, key=lambda item: item.as_posix()):
        index.setdefault(nodes[path].plan_id, path)
    return index


def find_root(path: Path, nodes: Mapping[Path, Node], by_id: Mapping[int, Path]) -> Path:
    """Walk ``parent`` links upward and return the topmost reachable plan.

    Self references, dangling parents and cycles stop the walk at the last
    valid node.
    """
    current = path
    visited: Set[Path] = {current}
    while True:
        parent_id = nodes[current].plan.parent
        if parent_id is None:
            return current
        parent_path = by_id.get(parent_id)
        if parent_path is None or parent_path in visited:
            return current
        visited.add(parent_path)
        current = parent_path


def build_families(nodes: Mapping[Path, Node]) -> List[Family]:
    """Group ``nodes`` into families keyed by their root plan."""
    by_id = index_by_id(nodes)
    grouped: Dict[Path, Family] = {}
    for path in sorted(nodes, key=lambda item: nodes[item].sort_key):
        root = find_root(path, nodes, by_id)
        grouped.setdefault(root, Family(root=root)).members.append(path)
    return sorted(grouped.values(), key=lambda family: nodes[family.root].sort_key)


def ancestors_of(
    path: Path,
    nodes: Mapping[Path, Node],
    by_id: Mapping[int, Path],
) -> List[Path]:
    """Return the chain of ancestors of ``path`` from nearest to farthest."""
    chain: List[Path] = []
    visited: Set[Path] = {path}
    current = path
    while True:
        parent_id = nodes[current].plan.parent
        parent_path = by_id.get(parent_id) if parent_id is not None else None
        if parent_path is None or parent_path in visited:
            return chain
        chain.append(parent_path)
        visited.add(parent_path)
        current = parent_path


def is_family_disordered(family: Family, nodes: Mapping[Path, Node]) -> bool:
    """Return ``True`` when any member's id is smaller than an ancestor's id."""
    if len(family) < 2:
        return False
    by_id = index_by_id(nodes)
    member_set = set(family.members)
    for path in family.members:
        own_id = nodes[path].plan_id
        for ancestor in ancestors_of(path, nodes, by_id):
            if ancestor in member_set and nodes[ancestor].plan_id > own_id:
                return True
    return False


def precedence_edges(family: Family, nodes: Mapping[Path, Node]) -> Dict[Path, Set[Path]]:
    """Return ``before -> {after}`` edges for the family's combined graph.

    Parents precede children and dependencies precede their dependents. A
    plan listing one of its own descendants as a dependency mirrors the
    hierarchy, so that edge is not reversed.
    """
    members = set(family.members)
    by_id = index_by_id({path: nodes[path] for path in family.members})
    all_ids = index_by_id(nodes)
    edges: Dict[Path, Set[Path]] = {path: set() for path in family.members}

    for path in family.members:
        plan = nodes[path].plan
        if plan.parent is not None:
            parent_path = by_id.get(plan.parent)
            if parent_path is not None and parent_path != path:
                edges[parent_path].add(path)

    for path in family.members:
        plan = nodes[path].plan
        for dep_id in plan.dependencies:
            dep_path = by_id.get(dep_id)
            if dep_path is None or dep_path == path or dep_path not in members:
                continue
            if path in ancestors_of(dep_path, nodes, all_ids):
                continue
            edges[dep_path].add(path)
    return edges


def topological_order(family: Family, nodes: Mapping[Path, Node]) -> List[Path]:
    """Order family members so every precedence edge points forward.

    Kahn's algorithm; ties break on current id, then path. Raises
    :class:`CircularDependencyError` naming the ids left in the cycle.
    """
    edges = precedence_edges(family, nodes)
    indegree: Dict[Path, int] = {path: 0 for path in family.members}
    for targets in edges.values():
        for target in targets:
            indegree[target] += 1

    ready: List[Tuple[int, str, Path]] = []
    for path, degree in indegree.items():
        if degree == 0:
            heapq.heappush(ready, (*nodes[path].sort_key, path))

    ordered: List[Path] = []
    while ready:
        _, _, path = heapq.heappop(ready)
        ordered.append(path)
        for target in edges[path]:
            indegree[target] -= 1
            if indegree[target] == 0:
                heapq.heappush(ready, (*nodes[target].sort_key, target))

    if len(ordered) != len(family.members):
        remaining = [nodes[path].plan_id for path, degree in indegree.items() if degree > 0]
        raise CircularDependencyError(remaining)
    return ordered


def reassign_family(family: Family, nodes: Mapping[Path, Node]) -> Dict[Path, int]:
    """Return ``path -> new id`` for members whose id changes.

    The family's current ids, sorted ascending, are handed out positionally
    in topological order so the id set is preserved.
    """
    if len(family) < 2:
        return {}
    order = topological_order(family, nodes)
    ids = sorted(nodes[path].plan_id for path in family.members)
    mapping: Dict[Path, int] = {}
    for path, new_id in zip(order, ids):
        if nodes[path].plan_id != new_id:
            mapping[path] = new_id
    return mapping


def check_families(families: Iterable[Family], nodes: Mapping[Path, Node]) -> None:
    """Raise :class:`CircularDependencyError` if any multi-member family is cyclic."""
    for family in families:
        if len(family) > 1:
            topological_order(family, nodes)


def order_violations(
    order: Sequence[Path],
    edges: Mapping[Path, Iterable[Path]],
) -> List[Tuple[Path, Path]]:
    """Return edges ``(before, after)`` that point backward in ``order``."""
    position = {path: index for index, path in enumerate(order)}
    violations: List[Tuple[Path, Path]] = []
    for source, targets in edges.items():
        for target in targets:
            if position.get(source, -1) > position.get(target, -1):
                violations.append((source, target))
    return violations


def nodes_from_entries(entries: Mapping[Path, Plan], ids: Optional[Mapping[Path, int]] = None) -> Dict[Path, Node]:
    """Wrap store entries with ids as :class:`Node` objects.

    ``ids`` overrides the id of selected paths without mutating the plans.
    """
    nodes: Dict[Path, Node] = {}
    for path, plan in entries.items():
        override = ids.get(path) if ids else None
        if override is not None and override != plan.id:
            plan = plan.model_copy(update={"id": override})
        if plan.id is None:
            continue
        nodes[path] = Node(path=path, plan=plan)
    return nodes

"""Reconcile numeric plan ids after independently created plan sets merge.

Renumbering runs in two passes over an in-memory copy of the store:

1. every id shared by more than one file keeps exactly one holder and the
   others move above the current maximum, with stubs getting fresh ids;
2. families whose children carry smaller ids than their ancestors are
   reordered topologically over the ids they already own.

Nothing touches the disk until :func:`apply_renumbering` runs, and it stages
every new file before replacing any original.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from ..utils.slug import replace_leading_id
from .hierarchy import (
    build_families,
    check_families,
    is_family_disordered,
    nodes_from_entries,
    reassign_family,
)
from .schema import Plan, PlanValidationError
from .store import PlanStore, stage_plan_file

LOGGER = logging.getLogger(__name__)


class ChangeTracker(Protocol):
    """Source of the files changed on the current branch.

    ``None`` means branch information is unavailable (detached head, trunk,
    or no repository) and keeper selection falls back to creation time.
    """

    def branch_changed_files(self) -> Optional[Set[Path]]: ...


@dataclass(slots=True)
class RenumberOptions:
    dry_run: bool = False
    keep: Sequence[str] = ()
    conflicts_only: bool = False
    from_id: Optional[int] = None
    to_id: Optional[int] = None
    cwd: Optional[Path] = None
    repo_root: Optional[Path] = None


@dataclass(slots=True)
class PlanChange:
    """Pending rewrite of one plan file."""

    old_path: Path
    new_path: Path
    old_id: Optional[int]
    new_id: int
    plan: Plan

    @property
    def renamed(self) -> bool:
        return self.old_path != self.new_path

    @property
    def id_changed(self) -> bool:
        return self.old_id != self.new_id


@dataclass(slots=True)
class RenumberPlan:
    """Everything a renumbering would do, computed without touching disk."""

    tasks_dir: Path
    changes: List[PlanChange] = field(default_factory=list)
    conflicts: Dict[int, List[Path]] = field(default_factory=dict)
    keepers: Dict[int, Path] = field(default_factory=dict)
    applied: bool = False

    @property
    def id_changes(self) -> List[PlanChange]:
        return [change for change in self.changes if change.id_changed]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def mapping(self) -> Dict[Path, Tuple[Optional[int], int]]:
        """Return ``old path -> (old id, new id)`` for every id change."""
        return {change.old_path: (change.old_id, change.new_id) for change in self.id_changes}

    def describe(self) -> List[str]:
        lines: List[str] = []
        for change in sorted(self.changes, key=lambda item: (item.new_id, item.old_path.as_posix())):
            old_label = str(change.old_id) if change.old_id is not None else "(none)"
            name = _relative(change.old_path, self.tasks_dir)
            if change.id_changed:
                line = f"{old_label} -> {change.new_id}: {name}"
            else:
                line = f"{change.new_id}: {name} (references updated)"
            if change.renamed:
                line += f" => {_relative(change.new_path, self.tasks_dir)}"
            lines.append(line)
        return lines


def _relative(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return path.as_posix()


def _created_key(path: Path, plan: Plan) -> Tuple[int, float, str]:
    created: Optional[datetime] = plan.created_at
    if created is None:
        return (1, 0.0, path.as_posix())
    return (0, created.timestamp(), path.as_posix())


def resolve_keep_paths(
    keep: Iterable[str],
    entries: Mapping[Path, Plan],
    *,
    tasks_dir: Path,
    cwd: Optional[Path] = None,
    repo_root: Optional[Path] = None,
) -> Set[Path]:
    """Resolve user supplied keep paths against cwd, tasks dir and repo root."""
    bases = [base for base in (cwd or Path.cwd(), tasks_dir, repo_root) if base is not None]
    resolved: Set[Path] = set()
    for raw in keep:
        candidate = Path(raw).expanduser()
        options = [candidate] if candidate.is_absolute() else [base / candidate for base in bases]
        match = next((option.resolve() for option in options if option.resolve() in entries), None)
        if match is None:
            raise PlanValidationError(f"File to keep is not a known plan file: {raw}")
        resolved.add(match)
    return resolved


def _choose_keeper(
    plan_id: int,
    paths: Sequence[Path],
    entries: Mapping[Path, Plan],
    keep_paths: Set[Path],
    branch_changes: Optional[Set[Path]],
) -> Path:
    kept = [path for path in paths if path in keep_paths]
    if len(kept) > 1:
        names = ", ".join(path.name for path in kept)
        raise PlanValidationError(f"Only one file may keep id {plan_id}; asked to keep {names}")
    if kept:
        return kept[0]

    candidates = list(paths)
    if branch_changes is not None:
        untouched = [path for path in paths if path not in branch_changes]
        if untouched:
            candidates = untouched
    return min(candidates, key=lambda path: _created_key(path, entries[path]))


def _pick_target(
    ref_id: int,
    referrer: Path,
    plan: Plan,
    group: Sequence[Path],
    keeper: Path,
    shifted: Set[Path],
    entries: Mapping[Path, Plan],
) -> Path:
    """Decide which member of a conflicted id group ``referrer`` points at."""
    ref_uuid = plan.references.get(ref_id)
    if ref_uuid:
        for path in group:
            if entries[path].uuid == ref_uuid:
                return path
    if plan.parent == ref_id and plan.id is not None:
        listing = [path for path in group if plan.id in entries[path].dependencies]
        if listing:
            alike = [path for path in listing if (path in shifted) == (referrer in shifted)]
            listing = alike or listing
            same_dir = [path for path in listing if path.parent == referrer.parent]
            return (same_dir or listing)[0]
    if referrer in shifted:
        others = [path for path in group if path in shifted and path != referrer]
        if others:
            same_dir = [path for path in others if path.parent == referrer.parent]
            return (same_dir or others)[0]
    return keeper


def _apply_id_map(plan: Plan, id_map: Mapping[int, int]) -> None:
    if not id_map:
        return
    if plan.id is not None:
        plan.id = id_map.get(plan.id, plan.id)
    if plan.parent is not None:
        plan.parent = id_map.get(plan.parent, plan.parent)
    plan.dependencies = _dedupe(id_map.get(dep, dep) for dep in plan.dependencies)
    plan.references = {id_map.get(key, key): value for key, value in plan.references.items()}


def _dedupe(values: Iterable[int]) -> List[int]:
    ordered: List[int] = []
    for value in values:
        if value not in ordered:
            ordered.append(value)
    return ordered


def _resolve_conflicts(
    entries: Mapping[Path, Plan],
    working: Dict[Path, Plan],
    options: RenumberOptions,
    tasks_dir: Path,
    tracker: Optional[ChangeTracker],
    result: RenumberPlan,
) -> Set[Path]:
    """Give every conflicted or id-less file a unique id; return the moved paths."""
    groups: Dict[int, List[Path]] = {}
    stubs: List[Path] = []
    for path in sorted(entries, key=lambda item: item.as_posix()):
        plan = entries[path]
        if plan.id is None:
            stubs.append(path)
        else:
            groups.setdefault(plan.id, []).append(path)
    conflicts = {plan_id: paths for plan_id, paths in groups.items() if len(paths) > 1}
    result.conflicts = conflicts
    if not conflicts and not stubs:
        return set()

    keep_paths = resolve_keep_paths(
        options.keep,
        entries,
        tasks_dir=tasks_dir,
        cwd=options.cwd,
        repo_root=options.repo_root,
    )
    branch_changes = tracker.branch_changed_files() if tracker is not None and conflicts else None
    if conflicts and branch_changes is None:
        LOGGER.debug("No branch information; keepers chosen by creation time")

    shifted: Set[Path] = set()
    to_shift: List[Tuple[int, str, Path]] = []
    for plan_id, paths in sorted(conflicts.items()):
        keeper = _choose_keeper(plan_id, paths, entries, keep_paths, branch_changes)
        result.keepers[plan_id] = keeper
        LOGGER.info("Plan id %s conflict: keeping %s", plan_id, keeper.name)
        for path in paths:
            if path != keeper:
                to_shift.append((plan_id, path.as_posix(), path))
                shifted.add(path)

    next_id = max((plan.id for plan in entries.values() if plan.id is not None), default=0) + 1
    new_ids: Dict[Path, int] = {}
    for _, _, path in sorted(to_shift):
        new_ids[path] = next_id
        next_id += 1
    for path in stubs:
        new_ids[path] = next_id
        next_id += 1

    def final_id(path: Path) -> int:
        if path in new_ids:
            return new_ids[path]
        plan_id = entries[path].id
        assert plan_id is not None
        return plan_id

    for path, plan in working.items():
        original = entries[path]
        targets: Dict[int, Path] = {}
        for ref_id in original.referenced_ids():
            group = conflicts.get(ref_id)
            if group is not None:
                targets[ref_id] = _pick_target(
                    ref_id, path, original, group, result.keepers[ref_id], shifted, entries
                )
        if path in new_ids:
            plan.id = new_ids[path]
        if not targets:
            continue
        if plan.parent in targets:
            plan.parent = final_id(targets[plan.parent])
        plan.dependencies = _dedupe(
            final_id(targets[dep]) if dep in targets else dep for dep in plan.dependencies
        )
        references = {key: value for key, value in plan.references.items() if key not in targets}
        for ref_id, target in targets.items():
            target_uuid = entries[target].uuid
            if target_uuid and original.references:
                references[final_id(target)] = target_uuid
        plan.references = references

    return set(new_ids)


def _reorder_families(
    working: Dict[Path, Plan],
    *,
    conflicts_only: bool,
    moved: Set[Path],
) -> Dict[int, int]:
    nodes = nodes_from_entries(working)
    families = build_families(nodes)
    check_families(families, nodes)

    id_map: Dict[int, int] = {}
    for family in families:
        if len(family) < 2:
            continue
        if conflicts_only and not moved.intersection(family.members):
            continue
        if not is_family_disordered(family, nodes):
            continue
        LOGGER.info("Reordering family rooted at plan %s", nodes[family.root].plan_id)
        for path, new_id in reassign_family(family, nodes).items():
            id_map[nodes[path].plan_id] = new_id
    return id_map


def _explicit_move(working: Dict[Path, Plan], options: RenumberOptions) -> Dict[int, int]:
    from_id, to_id = options.from_id, options.to_id
    if from_id is None or to_id is None:
        raise PlanValidationError("Both --from and --to are required to move a plan id")
    if from_id <= 0 or to_id <= 0:
        raise PlanValidationError("Plan ids must be positive integers")
    holders = [path for path, plan in working.items() if plan.id == from_id]
    if not holders:
        raise PlanValidationError(f"Plan not found: {from_id}")
    if len(holders) > 1:
        raise PlanValidationError(f"Plan id {from_id} is shared by several files; resolve conflicts first")
    if from_id == to_id:
        return {}
    if any(plan.id == to_id for plan in working.values()):
        LOGGER.info("Plan id %s is taken; swapping with %s", to_id, from_id)
        return {from_id: to_id, to_id: from_id}
    return {from_id: to_id}


def plan_renumbering(
    store: PlanStore,
    options: Optional[RenumberOptions] = None,
    tracker: Optional[ChangeTracker] = None,
) -> RenumberPlan:
    """Compute id changes, reference rewrites and renames for ``store``.

    Raises :class:`~planwright.plans.hierarchy.CircularDependencyError` when a
    family cannot be ordered and :class:`PlanValidationError` for invalid
    options or file collisions. Nothing is written.
    """
    options = options or RenumberOptions()
    entries = dict(store.entries)
    working: Dict[Path, Plan] = {path: plan.model_copy(deep=True) for path, plan in entries.items()}
    result = RenumberPlan(tasks_dir=store.tasks_dir)

    if options.from_id is not None or options.to_id is not None:
        if store.duplicate_ids():
            raise PlanValidationError("Plan ids conflict; run renumber without --from/--to first")
        id_map = _explicit_move(working, options)
    else:
        moved = _resolve_conflicts(entries, working, options, store.tasks_dir, tracker, result)
        id_map = _reorder_families(working, conflicts_only=options.conflicts_only, moved=moved)

    for plan in working.values():
        _apply_id_map(plan, id_map)

    result.changes = _collect_changes(entries, working)
    _check_targets(result.changes, entries)
    return result


def _collect_changes(entries: Mapping[Path, Plan], working: Mapping[Path, Plan]) -> List[PlanChange]:
    changes: List[PlanChange] = []
    for path in sorted(entries, key=lambda item: item.as_posix()):
        original = entries[path]
        updated = working[path]
        if updated.to_document() == original.to_document():
            continue
        assert updated.id is not None
        new_path = path
        if original.id is not None and original.id != updated.id:
            new_path = path.with_name(replace_leading_id(path.name, original.id, updated.id))
        updated.touch()
        changes.append(
            PlanChange(old_path=path, new_path=new_path, old_id=original.id, new_id=updated.id, plan=updated)
        )
    return changes


def _check_targets(changes: Sequence[PlanChange], entries: Mapping[Path, Plan]) -> None:
    sources = {change.old_path for change in changes if change.renamed}
    seen: Dict[Path, Path] = {}
    for change in changes:
        target = change.new_path
        if target in seen:
            raise PlanValidationError(
                f"Renumbering would write both {seen[target].name} and {change.old_path.name} to {target.name}"
            )
        seen[target] = change.old_path
        if not change.renamed:
            continue
        if target.exists() and target not in sources:
            raise PlanValidationError(f"Renaming {change.old_path.name} would overwrite existing file {target}")


def apply_renumbering(result: RenumberPlan, store: Optional[PlanStore] = None) -> RenumberPlan:
    """Write a computed :class:`RenumberPlan` to disk.

    All files are staged next to their targets first; originals are only
    replaced once every staged write succeeded.
    """
    staged: List[Tuple[Path, PlanChange]] = []
    try:
        for change in result.changes:
            staged.append((stage_plan_file(change.new_path, change.plan), change))
    except OSError:
        for temp_path, _ in staged:
            temp_path.unlink(missing_ok=True)
        raise

    for temp_path, change in staged:
        os.replace(temp_path, change.new_path)
    targets = {change.new_path for change in result.changes}
    for change in result.changes:
        if change.renamed and change.old_path not in targets:
            change.old_path.unlink(missing_ok=True)
            LOGGER.debug("Renamed %s to %s", change.old_path.name, change.new_path.name)

    result.applied = True
    if store is not None:
        store.invalidate()
    LOGGER.info("Renumbering rewrote %d plan file(s)", len(result.changes))
    return result


def renumber(
    store: PlanStore,
    options: Optional[RenumberOptions] = None,
    tracker: Optional[ChangeTracker] = None,
) -> RenumberPlan:
    """Compute and, unless ``options.dry_run``, apply a renumbering."""
    options = options or RenumberOptions()
    result = plan_renumbering(store, options, tracker)
    if options.dry_run or result.is_empty:
        return result
    return apply_renumbering(result, store)

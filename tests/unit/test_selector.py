from __future__ import annotations

from pathlib import Path

import pytest

from planwright.tools.vcs import GitError, GitRepository
from planwright.workspace.lock import LOCK_FILENAME, WorkspaceLock
from planwright.workspace.selector import (
    PrepareRequest,
    WorkspaceSelector,
    WorkspaceUnavailableError,
)
from planwright.workspace.tracker import WorkspaceInfo, WorkspaceTracker

REPOSITORY_ID = "example.com/team/project"


def _registered_clone(git_repo: GitRepository, tracker: WorkspaceTracker, destination: Path) -> GitRepository:
    clone = GitRepository.clone(git_repo.root, destination)
    tracker.record(
        WorkspaceInfo(workspace_path=str(clone.root), repository_id=REPOSITORY_ID, task_id="old", branch="main")
    )
    return clone


def _selector(git_repo: GitRepository, tracker: WorkspaceTracker, tmp_path: Path, **kwargs) -> WorkspaceSelector:
    return WorkspaceSelector(git_repo.root, REPOSITORY_ID, tracker=tracker, clone_root=tmp_path / "clones", **kwargs)


def test_failed_preparation_is_rolled_back(git_repo: GitRepository, tmp_path: Path) -> None:
    tracker = WorkspaceTracker(tmp_path / "workspaces.json")
    clone = _registered_clone(git_repo, tracker, tmp_path / "ws-one")
    head = clone.head()

    def failing_preparer(repo: GitRepository, request: PrepareRequest) -> None:
        repo.create_branch(request.branch)
        raise GitError("network unreachable")

    selector = _selector(git_repo, tracker, tmp_path, preparer=failing_preparer)

    with pytest.raises(WorkspaceUnavailableError) as excinfo:
        selector.reuse("task-7", PrepareRequest(branch="plan/7-broken"))

    assert "preparation failed" in excinfo.value.reasons[0]
    assert clone.current_branch() == "main"
    assert clone.head() == head
    assert not clone.branch_exists("plan/7-broken")
    assert not (clone.root / LOCK_FILENAME).exists()


def test_unexpected_preparer_error_rolls_back_and_propagates(git_repo: GitRepository, tmp_path: Path) -> None:
    tracker = WorkspaceTracker(tmp_path / "workspaces.json")
    clone = _registered_clone(git_repo, tracker, tmp_path / "ws-one")

    def crashing_preparer(repo: GitRepository, request: PrepareRequest) -> None:
        repo.create_branch(request.branch)
        raise RuntimeError("preparer bug")

    selector = _selector(git_repo, tracker, tmp_path, preparer=crashing_preparer)

    with pytest.raises(RuntimeError, match="preparer bug"):
        selector.reuse("task-7", PrepareRequest(branch="plan/7-broken"))

    assert clone.current_branch() == "main"
    assert not clone.branch_exists("plan/7-broken")
    assert not (clone.root / LOCK_FILENAME).exists()


def test_clean_workspace_is_reused_and_locked(git_repo: GitRepository, tmp_path: Path) -> None:
    tracker = WorkspaceTracker(tmp_path / "workspaces.json")
    clone = _registered_clone(git_repo, tracker, tmp_path / "ws-one")
    selector = _selector(git_repo, tracker, tmp_path)

    selected = selector.select("task-8", PrepareRequest(branch="plan/8-work"), plan_id=8, plan_title="Work")

    assert not selected.is_new
    assert selected.path == clone.root
    assert clone.current_branch() == "plan/8-work"
    assert WorkspaceLock.is_locked(clone.root)
    info = tracker.get(clone.root)
    assert (info.task_id, info.branch, info.plan_id) == ("task-8", "plan/8-work", 8)
    WorkspaceLock.release_lock(clone.root)


def test_dirty_and_locked_workspaces_are_skipped(git_repo: GitRepository, tmp_path: Path) -> None:
    tracker = WorkspaceTracker(tmp_path / "workspaces.json")
    dirty = _registered_clone(git_repo, tracker, tmp_path / "ws-dirty")
    (dirty.root / "scratch.txt").write_text("wip\n", encoding="utf-8")
    locked = _registered_clone(git_repo, tracker, tmp_path / "ws-locked")
    WorkspaceLock.acquire_lock(locked.root, "someone else")
    selector = _selector(git_repo, tracker, tmp_path)

    with pytest.raises(WorkspaceUnavailableError) as excinfo:
        selector.reuse("task-9", PrepareRequest())
    reasons = " ".join(excinfo.value.reasons)
    assert "uncommitted changes" in reasons
    assert "locked by pid" in reasons

    selected = selector.select("task-9", PrepareRequest(branch="plan/9-new"))

    assert selected.is_new
    assert selected.path.parent == (tmp_path / "clones").resolve()
    assert GitRepository(selected.path).current_branch() == "plan/9-new"
    assert len(tracker.find_by_repository(REPOSITORY_ID)) == 3
    WorkspaceLock.release_lock(selected.path)
    WorkspaceLock.release_lock(locked.root)

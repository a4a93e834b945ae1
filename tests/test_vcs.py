from __future__ import annotations

from pathlib import Path

import pytest

from planwright.tools.vcs import GitError, GitRepository


def test_branch_changed_files_tracks_commits_and_working_tree(git_repo: GitRepository) -> None:
    assert git_repo.trunk_branch() == "main"
    assert git_repo.branch_changed_files() is None

    git_repo.create_branch("plan/1-feature")
    committed = git_repo.root / "tasks" / "1-feature.yml"
    committed.write_text("id: 1\ntitle: Feature\n", encoding="utf-8")
    git_repo.commit_all("Add feature plan")
    untracked = git_repo.root / "tasks" / "2-draft.yml"
    untracked.write_text("id: 2\ntitle: Draft\n", encoding="utf-8")

    changed = git_repo.branch_changed_files()

    assert changed == {committed.resolve(), untracked.resolve()}


def test_detached_head_has_no_branch_changes(git_repo: GitRepository) -> None:
    git_repo.checkout(git_repo.head())

    assert git_repo.current_branch() is None
    assert git_repo.branch_changed_files() is None


def test_configured_trunk_wins(git_repo: GitRepository) -> None:
    repo = GitRepository(git_repo.root, trunk="develop")

    assert repo.trunk_branch() == "develop"


def test_status_and_commit(git_repo: GitRepository) -> None:
    assert git_repo.is_clean()
    assert git_repo.commit_all("Nothing to do") is None

    (git_repo.root / "notes.txt").write_text("hello\n", encoding="utf-8")
    assert git_repo.working_tree_changes() == [Path("notes.txt")]
    assert not git_repo.is_clean()
    assert git_repo.is_clean(include_untracked=False)

    sha = git_repo.commit_all("Add notes")
    assert sha == git_repo.head()
    assert git_repo.is_clean()


def test_clone_and_branch_lifecycle(git_repo: GitRepository, tmp_path: Path) -> None:
    clone = GitRepository.clone(git_repo.root, tmp_path / "clones" / "one")

    assert clone.current_branch() == "main"
    clone.create_branch("plan/2-work", "main")
    assert clone.branch_exists("plan/2-work")
    clone.checkout("main")
    clone.delete_branch("plan/2-work")
    assert not clone.branch_exists("plan/2-work")

    with pytest.raises(GitError):
        GitRepository.clone(git_repo.root, tmp_path / "clones" / "one")


def test_non_repository_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)

"""Pick an existing workspace to reuse or clone a new one."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..tools.vcs import GitError, GitRepository
from ..utils.slug import slugify
from .lock import DEFAULT_STALE_HOURS, LOCK_FILENAME, LockInfo, WorkspaceLock, WorkspaceLockedError
from .tracker import WorkspaceInfo, WorkspaceTracker

LOGGER = logging.getLogger(__name__)


class WorkspaceUnavailableError(RuntimeError):
    """Raised when no known workspace can be reused."""

    def __init__(self, reasons: Sequence[str]) -> None:
        self.reasons = list(reasons)
        detail = "; ".join(self.reasons) if self.reasons else "no workspaces are registered for this repository"
        super().__init__(f"No reusable workspace available: {detail}")


@dataclass(slots=True)
class PrepareRequest:
    """How a selected workspace should be prepared for new work."""

    base: Optional[str] = None
    branch: Optional[str] = None
    fetch: bool = False


@dataclass(slots=True)
class WorkspaceState:
    """Branch and commit captured before a workspace is prepared."""

    branch: Optional[str]
    head: Optional[str]

    @classmethod
    def capture(cls, repo: GitRepository) -> "WorkspaceState":
        return cls(branch=repo.current_branch(), head=repo.head())

    def restore(self, repo: GitRepository, *, created_branch: Optional[str] = None) -> None:
        """Return ``repo`` to the captured state, deleting ``created_branch``."""
        if self.branch:
            repo.checkout(self.branch)
        elif self.head:
            repo.checkout(self.head)
        if self.head:
            repo.reset_hard(self.head)
        if created_branch and created_branch != self.branch and repo.branch_exists(created_branch):
            repo.delete_branch(created_branch)


@dataclass(slots=True)
class SelectedWorkspace:
    info: WorkspaceInfo
    lock: LockInfo
    is_new: bool = False
    skipped: List[str] = field(default_factory=list)

    @property
    def path(self) -> Path:
        return self.info.path


Preparer = Callable[[GitRepository, PrepareRequest], None]


def prepare_workspace(repo: GitRepository, request: PrepareRequest) -> None:
    """Default preparer: optionally fetch, check out the base, create the work branch."""
    if request.fetch:
        repo.fetch()
    if request.base:
        repo.checkout(request.base)
    if request.branch:
        if repo.branch_exists(request.branch):
            repo.checkout(request.branch)
        else:
            repo.create_branch(request.branch)


class WorkspaceSelector:
    """Reuse a clean, unlocked workspace of the repository or create one."""

    def __init__(
        self,
        main_repo_root: Path | str,
        repository_id: str,
        *,
        tracker: Optional[WorkspaceTracker] = None,
        clone_root: Path | None = None,
        stale_hours: float = DEFAULT_STALE_HOURS,
        preparer: Preparer = prepare_workspace,
    ) -> None:
        self.main_repo_root = Path(main_repo_root).resolve()
        self.repository_id = repository_id
        self.tracker = tracker or WorkspaceTracker()
        self.clone_root = (clone_root or self.main_repo_root.parent / f"{self.main_repo_root.name}-workspaces").resolve()
        self.stale_hours = stale_hours
        self.preparer = preparer

    def _unavailable_reason(self, info: WorkspaceInfo) -> Optional[str]:
        path = info.path
        if not path.is_dir():
            return f"{path}: directory is missing"
        lock = WorkspaceLock.get_lock_info(path, stale_hours=self.stale_hours)
        if lock is not None:
            return f"{path}: locked by pid {lock.pid} on {lock.hostname}"
        try:
            repo = GitRepository(path)
            dirty = [item for item in repo.working_tree_changes() if item.name != LOCK_FILENAME]
        except GitError as error:
            return f"{path}: {error}"
        if dirty:
            return f"{path}: has uncommitted changes"
        return None

    def reuse(
        self,
        task_id: str,
        request: PrepareRequest,
        *,
        command: str = "planwright workspace add",
        plan_id: Optional[int] = None,
        plan_title: Optional[str] = None,
    ) -> SelectedWorkspace:
        """Lock and prepare the first usable workspace.

        A workspace whose preparation fails is rolled back to its previous
        branch and commit and unlocked before the next one is tried.
        """
        reasons: List[str] = []
        for info in self.tracker.find_by_repository(self.repository_id):
            reason = self._unavailable_reason(info)
            if reason is not None:
                LOGGER.debug("Skipping workspace %s", reason)
                reasons.append(reason)
                continue

            path = info.path
            try:
                lock = WorkspaceLock.acquire_lock(path, command, stale_hours=self.stale_hours)
            except WorkspaceLockedError as error:
                reasons.append(f"{path}: {error}")
                continue

            repo = GitRepository(path)
            state = WorkspaceState.capture(repo)
            existed = bool(request.branch) and repo.branch_exists(request.branch or "")
            created_branch = None if existed else request.branch
            try:
                self.preparer(repo, request)
            except (GitError, OSError) as error:
                reasons.append(f"{path}: preparation failed: {error}")
                LOGGER.warning("Preparing workspace %s failed: %s", path, error)
                self._roll_back(repo, state, created_branch)
                continue
            except Exception:
                self._roll_back(repo, state, created_branch)
                raise

            updated = self.tracker.update(
                path,
                task_id=task_id,
                branch=repo.current_branch(),
                plan_id=plan_id,
                plan_title=plan_title,
            )
            LOGGER.info("Reusing workspace %s", path)
            return SelectedWorkspace(info=updated or info, lock=lock, is_new=False, skipped=reasons)
        raise WorkspaceUnavailableError(reasons)

    @staticmethod
    def _roll_back(repo: GitRepository, state: WorkspaceState, created_branch: Optional[str]) -> None:
        try:
            state.restore(repo, created_branch=created_branch)
        except GitError as error:
            LOGGER.warning("Failed to restore workspace %s: %s", repo.root, error)
        WorkspaceLock.release_lock(repo.root, force=True)

    def _new_workspace_path(self, task_id: str) -> Path:
        stem = f"{self.main_repo_root.name}-{slugify(task_id, fallback='workspace', max_length=40)}"
        candidate = self.clone_root / stem
        suffix = 2
        while candidate.exists():
            candidate = self.clone_root / f"{stem}-{suffix}"
            suffix += 1
        return candidate

    def create_workspace(
        self,
        task_id: str,
        request: PrepareRequest,
        *,
        command: str = "planwright workspace add",
        plan_id: Optional[int] = None,
        plan_title: Optional[str] = None,
    ) -> SelectedWorkspace:
        """Clone the main repository into a fresh workspace and prepare it."""
        target = self._new_workspace_path(task_id)
        repo = GitRepository.clone(self.main_repo_root, target)
        lock = WorkspaceLock.acquire_lock(repo.root, command, stale_hours=self.stale_hours)
        try:
            self.preparer(repo, request)
        except (GitError, OSError):
            WorkspaceLock.release_lock(repo.root, force=True)
            raise
        info = self.tracker.record(
            WorkspaceInfo(
                workspace_path=repo.root.as_posix(),
                repository_id=self.repository_id,
                task_id=task_id,
                branch=repo.current_branch(),
                plan_id=plan_id,
                plan_title=plan_title,
            )
        )
        LOGGER.info("Created workspace %s", repo.root)
        return SelectedWorkspace(info=info, lock=lock, is_new=True)

    def select(
        self,
        task_id: str,
        request: PrepareRequest,
        *,
        command: str = "planwright workspace add",
        plan_id: Optional[int] = None,
        plan_title: Optional[str] = None,
    ) -> SelectedWorkspace:
        """Reuse a workspace when one is available, otherwise clone a new one."""
        try:
            return self.reuse(task_id, request, command=command, plan_id=plan_id, plan_title=plan_title)
        except WorkspaceUnavailableError as error:
            LOGGER.info("%s; creating a new workspace", error)
        return self.create_workspace(task_id, request, command=command, plan_id=plan_id, plan_title=plan_title)

"""Coordination between independent working copies of one repository."""

from .claims import ClaimPersistenceError, ClaimRequest, ClaimResult, ClaimStore, ReleaseResult
from .identity import RepositoryIdentity, current_user, normalize_remote_url, repository_identity
from .lock import LockInfo, LockType, WorkspaceLock, WorkspaceLockedError, acquire_lock, release_lock
from .selector import PrepareRequest, SelectedWorkspace, WorkspaceSelector, WorkspaceUnavailableError
from .tracker import WorkspaceInfo, WorkspaceTracker

__all__ = [
    "ClaimPersistenceError",
    "ClaimRequest",
    "ClaimResult",
    "ClaimStore",
    "LockInfo",
    "LockType",
    "PrepareRequest",
    "ReleaseResult",
    "RepositoryIdentity",
    "SelectedWorkspace",
    "WorkspaceInfo",
    "WorkspaceLock",
    "WorkspaceLockedError",
    "WorkspaceSelector",
    "WorkspaceTracker",
    "WorkspaceUnavailableError",
    "acquire_lock",
    "current_user",
    "normalize_remote_url",
    "release_lock",
    "repository_identity",
]

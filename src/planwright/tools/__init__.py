"""External tool integrations."""

from .vcs import GitError, GitRepository

__all__ = ["GitError", "GitRepository"]

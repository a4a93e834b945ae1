"""Stable identifiers for the logical repository and the current user."""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from ..tools.vcs import GitRepository

USER_ENV_VARS = ("PLANWRIGHT_USER", "USER", "USERNAME", "LOGNAME")
_SCP_LIKE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")
_UNSAFE_KEY = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class RepositoryIdentity:
    repository_id: str
    remote_url: Optional[str]
    git_root: Path


def normalize_remote_url(url: str) -> str:
    """Reduce a remote URL to ``host/owner/repo``.

    Scheme, credentials, port and a trailing ``.git`` are dropped and the
    host is lower-cased, so https and ssh clones of one repository agree.
    """
    text = url.strip()
    if "://" in text:
        parts = urlsplit(text)
        host = (parts.hostname or "").lower()
        path = parts.path
    else:
        match = _SCP_LIKE.match(text)
        if match is None:
            return text.rstrip("/").removesuffix(".git")
        host = match.group("host").lower()
        path = match.group("path")
    path = path.strip("/").removesuffix(".git").rstrip("/")
    return f"{host}/{path}" if host else path


def fingerprint_path(path: Path) -> str:
    digest = hashlib.sha256(Path(path).resolve().as_posix().encode("utf-8")).hexdigest()[:16]
    return f"local-{digest}"


def repository_identity(start: Path | str | None = None) -> RepositoryIdentity:
    """Identify the repository containing ``start``.

    Raises :class:`~planwright.tools.vcs.GitError` outside a git repository.
    """
    repo = GitRepository.discover(start)
    remote = repo.remote_url()
    repository_id = normalize_remote_url(remote) if remote else fingerprint_path(repo.root)
    return RepositoryIdentity(repository_id=repository_id, remote_url=remote, git_root=repo.root)


def storage_key(repository_id: str) -> str:
    """Filesystem-safe directory name for ``repository_id``."""
    return _UNSAFE_KEY.sub("_", repository_id).strip("._") or "repository"


def current_user() -> Optional[str]:
    for name in USER_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None

"""Minimal git helpers.

Just enough of ``git`` to tell which plan files a branch touched, inspect a
workspace before reusing it, and prepare or roll back its branch.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Set

LOGGER = logging.getLogger(__name__)

TRUNK_CANDIDATES = ("main", "master")


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _run(args: Sequence[str], cwd: Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    process = subprocess.run(
        command,
        cwd=cwd,
        capture_output=True,
        text=False,
        check=False,
    )
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, trunk: str | None = None) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        self.trunk = trunk

    @classmethod
    def discover(cls, start: Path | str | None = None, *, trunk: str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""
        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate, trunk=trunk)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str, *, branch: str = "main") -> "GitRepository":
        """Initialise a repository at ``root`` with an initial commit."""
        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        _run(["init", "-b", branch], path)
        for key, value in (("user.email", "planwright@example.com"), ("user.name", "Planwright")):
            probe = _run(["config", "--get", key], path, check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value], path)
        _run(["add", "."], path)
        _run(["commit", "--allow-empty", "-m", "Initial commit"], path)
        return cls(path)

    @classmethod
    def clone(cls, source: Path | str, destination: Path | str) -> "GitRepository":
        """Clone ``source`` into ``destination`` without sharing object files."""
        target = Path(destination).resolve()
        if target.exists():
            raise GitError(f"Clone destination already exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        _run(
            ["clone", "--local", "--no-hardlinks", Path(source).resolve().as_posix(), target.as_posix()],
            target.parent,
        )
        return cls(target)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(args, self.root, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""
        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""
        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def branch_exists(self, name: str) -> bool:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def trunk_branch(self) -> str | None:
        """Return the configured trunk or the first of ``main``/``master`` present."""
        if self.trunk:
            return self.trunk
        for name in TRUNK_CANDIDATES:
            if self.branch_exists(name):
                return name
        for name in TRUNK_CANDIDATES:
            probe = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{name}"], check=False)
            if probe.returncode == 0:
                return f"origin/{name}"
        return None

    def checkout(self, ref: str) -> None:
        self._run_git(["checkout", ref], check=True)

    def create_branch(self, name: str, base: str | None = None) -> None:
        """Create ``name`` from ``base`` (or ``HEAD``) and switch to it."""
        args = ["checkout", "-b", name]
        if base:
            args.append(base)
        self._run_git(args, check=True)

    def delete_branch(self, name: str) -> None:
        self._run_git(["branch", "-D", name], check=True)

    def reset_hard(self, ref: str) -> None:
        self._run_git(["reset", "--hard", ref], check=True)

    def fetch(self, remote: str = "origin") -> None:
        self._run_git(["fetch", remote], check=True)

    def remote_url(self, remote: str = "origin") -> str | None:
        result = self._run_git(["remote", "get-url", remote], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def branch_changed_files(self) -> Optional[Set[Path]]:
        """Return absolute paths changed on the current branch since it left trunk.

        Uncommitted and untracked files count as changed. ``None`` is returned
        on trunk, on a detached ``HEAD``, or when no trunk can be found.
        """
        branch = self.current_branch()
        trunk = self.trunk_branch()
        if branch is None or trunk is None or branch == trunk or f"origin/{branch}" == trunk:
            return None
        base = self._run_git(["merge-base", trunk, "HEAD"], check=False)
        if base.returncode != 0 or not base.stdout.strip():
            LOGGER.debug("No merge base between %s and %s", trunk, branch)
            return None
        diff = self._run_git(["diff", "--name-only", base.stdout.strip(), "HEAD"], check=True)
        changed = {self.root / line.strip() for line in diff.stdout.splitlines() if line.strip()}
        changed.update(self.root / path for path in self.working_tree_changes())
        return {path.resolve() for path in changed}

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            entries.append((status.strip() or status, Path(raw_path.strip().strip('"'))))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the paths with pending modifications, relative to the root."""
        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""
        return not self.working_tree_changes(include_untracked=include_untracked)

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Stage everything and commit; return the new SHA or ``None`` if nothing changed."""
        self._run_git(["add", "--all"], check=True)

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self._run_git(commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")
        return self.head()


__all__ = ["GitError", "GitRepository", "TRUNK_CANDIDATES"]

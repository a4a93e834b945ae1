"""Filesystem lock marking a workspace as in use.

The lock is a JSON file created with ``O_CREAT | O_EXCL`` inside the
workspace. ``pid`` locks belong to a running command: they are released at
interpreter exit and become stale once the process is gone or the lock is
older than the stale threshold. ``persistent`` locks are taken by hand and
only go away through an explicit (usually forced) release.
"""

from __future__ import annotations

import atexit
import errno
import json
import logging
import os
import socket
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Optional

LOGGER = logging.getLogger(__name__)

LOCK_FILENAME = ".planwright.lock"
LOCK_VERSION = 2
DEFAULT_STALE_HOURS = 24.0


class WorkspaceLockedError(RuntimeError):
    """Raised when a workspace is locked by a live process."""

    def __init__(self, workspace: Path, info: "LockInfo") -> None:
        self.workspace = workspace
        self.info = info
        super().__init__(
            f"Workspace {workspace} is locked by pid {info.pid} on {info.hostname} "
            f"({info.command}, since {info.started_at})"
        )


class LockType(str, Enum):
    PID = "pid"
    PERSISTENT = "persistent"


@dataclass(slots=True)
class LockInfo:
    pid: int
    command: str
    started_at: str
    hostname: str
    version: int = LOCK_VERSION
    owner: Optional[str] = None
    type: str = LockType.PID.value
    reclaimed_stale: bool = False

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("reclaimed_stale")
        data["startedAt"] = data.pop("started_at")
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "LockInfo":
        return cls(
            pid=int(data.get("pid") or 0),
            command=str(data.get("command") or ""),
            started_at=str(data.get("startedAt") or ""),
            hostname=str(data.get("hostname") or ""),
            version=int(data.get("version") or LOCK_VERSION),
            owner=data.get("owner"),
            type=str(data.get("type") or LockType.PID.value),
        )

    def started(self) -> Optional[datetime]:
        try:
            value = datetime.fromisoformat(self.started_at)
        except ValueError:
            return None
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def age(self, now: datetime | None = None) -> Optional[timedelta]:
        started = self.started()
        if started is None:
            return None
        return (now or datetime.now(timezone.utc)) - started


def lock_path(workspace: Path | str) -> Path:
    return Path(workspace) / LOCK_FILENAME


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as error:
        return error.errno != errno.ESRCH
    return True


def format_duration(delta: Optional[timedelta]) -> str:
    if delta is None or delta.total_seconds() <= 0:
        return "less than a minute"
    minutes_total = int(delta.total_seconds() // 60)
    days, remainder = divmod(minutes_total, 60 * 24)
    hours, minutes = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if not parts or minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts)


class WorkspaceLock:
    """Acquire, inspect and release workspace locks."""

    pid: ClassVar[int] = os.getpid()
    _cleanup_handlers: ClassVar[Dict[Path, Callable[[], None]]] = {}

    @classmethod
    def set_test_pid(cls, pid: Optional[int]) -> None:
        """Pretend to be ``pid``; ``None`` restores the real process id."""
        cls.pid = pid if pid is not None else os.getpid()

    # ---------------------------------------------------------------- reads
    @staticmethod
    def read(workspace: Path | str) -> Optional[LockInfo]:
        path = lock_path(workspace)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Lock file %s is corrupt; treating it as stale", path)
            return LockInfo(pid=0, command="", started_at="", hostname="")
        if not isinstance(data, dict):
            return LockInfo(pid=0, command="", started_at="", hostname="")
        return LockInfo.from_json(data)

    @staticmethod
    def is_lock_stale(info: LockInfo, *, stale_hours: float = DEFAULT_STALE_HOURS) -> bool:
        if info.type == LockType.PERSISTENT.value:
            return False
        age = info.age()
        if age is None or age > timedelta(hours=stale_hours):
            return True
        if info.hostname == socket.gethostname() and not is_process_alive(info.pid):
            return True
        return False

    @classmethod
    def get_lock_info(cls, workspace: Path | str, *, stale_hours: float = DEFAULT_STALE_HOURS) -> Optional[LockInfo]:
        """Return the current lock, clearing it first if it is stale."""
        if cls.clear_stale_lock(workspace, stale_hours=stale_hours):
            return None
        return cls.read(workspace)

    @classmethod
    def is_locked(cls, workspace: Path | str, *, stale_hours: float = DEFAULT_STALE_HOURS) -> bool:
        return cls.get_lock_info(workspace, stale_hours=stale_hours) is not None

    @classmethod
    def clear_stale_lock(cls, workspace: Path | str, *, stale_hours: float = DEFAULT_STALE_HOURS) -> bool:
        """Remove a stale lock after confirming it did not change underneath us."""
        info = cls.read(workspace)
        if info is None or not cls.is_lock_stale(info, stale_hours=stale_hours):
            return False
        current = cls.read(workspace)
        if current is None or current.to_json() != info.to_json():
            return False
        lock_path(workspace).unlink(missing_ok=True)
        cls._unregister(Path(workspace).resolve())
        LOGGER.info("Cleared stale lock held by pid %s in %s", info.pid, workspace)
        return True

    # --------------------------------------------------------------- writes
    @classmethod
    def acquire_lock(
        cls,
        workspace: Path | str,
        command: str,
        *,
        owner: Optional[str] = None,
        lock_type: LockType = LockType.PID,
        stale_hours: float = DEFAULT_STALE_HOURS,
    ) -> LockInfo:
        """Create the lock file or raise :class:`WorkspaceLockedError`.

        A stale lock is reclaimed and the returned info has
        ``reclaimed_stale`` set.
        """
        root = Path(workspace).resolve()
        info = LockInfo(
            pid=cls.pid,
            command=command,
            started_at=datetime.now(timezone.utc).isoformat(),
            hostname=socket.gethostname(),
            owner=owner,
            type=LockType(lock_type).value,
        )
        reclaimed = False
        for _ in range(2):
            if cls._create(root, info):
                break
            existing = cls.read(root)
            if existing is None:
                continue
            if not cls.clear_stale_lock(root, stale_hours=stale_hours):
                current = cls.read(root) or existing
                raise WorkspaceLockedError(root, current)
            reclaimed = True
        else:
            current = cls.read(root)
            if current is not None:
                raise WorkspaceLockedError(root, current)
            raise OSError(f"Unable to create lock file in {root}")

        info.reclaimed_stale = reclaimed
        if info.type == LockType.PID.value:
            cls._register(root)
        LOGGER.debug("Acquired %s lock on %s", info.type, root)
        return info

    @staticmethod
    def _create(root: Path, info: LockInfo) -> bool:
        path = lock_path(root)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(info.to_json(), handle, indent=2)
            handle.write("\n")
        return True

    @classmethod
    def release_lock(cls, workspace: Path | str, *, force: bool = False) -> bool:
        """Remove the lock if this process holds it (or unconditionally with ``force``)."""
        root = Path(workspace).resolve()
        info = cls.read(root)
        if info is None:
            cls._unregister(root)
            return False
        if not force and info.pid != cls.pid:
            LOGGER.debug("Not releasing lock on %s held by pid %s", root, info.pid)
            return False
        lock_path(root).unlink(missing_ok=True)
        cls._unregister(root)
        return True

    # -------------------------------------------------------------- cleanup
    @classmethod
    def _register(cls, root: Path) -> None:
        if root in cls._cleanup_handlers:
            return

        def cleanup() -> None:
            cls._cleanup_handlers.pop(root, None)
            info = cls.read(root)
            if info is None or info.pid != cls.pid:
                return
            try:
                lock_path(root).unlink(missing_ok=True)
            except OSError as error:
                LOGGER.warning("Failed to release lock on %s at exit: %s", root, error)

        cls._cleanup_handlers[root] = cleanup
        atexit.register(cleanup)

    @classmethod
    def _unregister(cls, root: Path) -> None:
        cleanup = cls._cleanup_handlers.pop(root, None)
        if cleanup is not None:
            atexit.unregister(cleanup)


def acquire_lock(workspace: Path | str, command: str, owner: Optional[str] = None, **kwargs: Any) -> LockInfo:
    return WorkspaceLock.acquire_lock(workspace, command, owner=owner, **kwargs)


def release_lock(workspace: Path | str, force: bool = False) -> bool:
    return WorkspaceLock.release_lock(workspace, force=force)

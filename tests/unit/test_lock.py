from __future__ import annotations

import json
import os
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from planwright.workspace.lock import (
    LOCK_FILENAME,
    LockInfo,
    LockType,
    WorkspaceLock,
    WorkspaceLockedError,
    format_duration,
)

DEAD_PID = 99999999


def test_acquire_and_release(tmp_path: Path) -> None:
    info = WorkspaceLock.acquire_lock(tmp_path, "planwright agent", owner="tester")

    data = json.loads((tmp_path / LOCK_FILENAME).read_text(encoding="utf-8"))
    assert data["pid"] == os.getpid()
    assert data["owner"] == "tester"
    assert data["type"] == "pid"
    assert not info.reclaimed_stale
    assert WorkspaceLock.is_locked(tmp_path)

    assert WorkspaceLock.release_lock(tmp_path)
    assert not (tmp_path / LOCK_FILENAME).exists()


def test_live_lock_blocks_other_process(tmp_path: Path) -> None:
    WorkspaceLock.acquire_lock(tmp_path, "first")
    WorkspaceLock.set_test_pid(os.getpid() + 1)

    with pytest.raises(WorkspaceLockedError) as excinfo:
        WorkspaceLock.acquire_lock(tmp_path, "second")

    assert excinfo.value.info.pid == os.getpid()
    assert not WorkspaceLock.release_lock(tmp_path)
    assert WorkspaceLock.release_lock(tmp_path, force=True)


def test_lock_of_dead_process_is_reclaimed(tmp_path: Path) -> None:
    WorkspaceLock.set_test_pid(DEAD_PID)
    WorkspaceLock.acquire_lock(tmp_path, "crashed")
    WorkspaceLock.set_test_pid(None)

    info = WorkspaceLock.acquire_lock(tmp_path, "fresh")

    assert info.reclaimed_stale
    assert WorkspaceLock.read(tmp_path).pid == os.getpid()
    WorkspaceLock.release_lock(tmp_path)


def test_old_lock_is_stale_even_when_process_lives(tmp_path: Path) -> None:
    started = datetime.now(timezone.utc) - timedelta(hours=30)
    info = LockInfo(pid=os.getpid(), command="old", started_at=started.isoformat(), hostname=socket.gethostname())

    assert WorkspaceLock.is_lock_stale(info, stale_hours=24)
    assert not WorkspaceLock.is_lock_stale(info, stale_hours=48)


def test_persistent_lock_is_never_stale(tmp_path: Path) -> None:
    WorkspaceLock.set_test_pid(DEAD_PID)
    WorkspaceLock.acquire_lock(tmp_path, "manual", lock_type=LockType.PERSISTENT)
    WorkspaceLock.set_test_pid(None)

    assert WorkspaceLock.is_locked(tmp_path)
    with pytest.raises(WorkspaceLockedError):
        WorkspaceLock.acquire_lock(tmp_path, "agent")
    assert WorkspaceLock.release_lock(tmp_path, force=True)


def test_corrupt_lock_is_treated_as_stale(tmp_path: Path) -> None:
    (tmp_path / LOCK_FILENAME).write_text("{broken", encoding="utf-8")

    assert not WorkspaceLock.is_locked(tmp_path)
    assert not (tmp_path / LOCK_FILENAME).exists()


def test_format_duration() -> None:
    assert format_duration(timedelta(seconds=20)) == "0m"
    assert format_duration(timedelta(hours=26, minutes=5)) == "1d 2h 5m"
    assert format_duration(None) == "less than a minute"

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from planwright.tools.vcs import GitRepository  # noqa: E402
from planwright.workspace.lock import WorkspaceLock  # noqa: E402

PlanWriter = Callable[..., Path]


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep claims and the workspace tracker out of the real home directory."""

    home = tmp_path / "config-home"
    monkeypatch.setenv("PLANWRIGHT_CONFIG_HOME", str(home))
    monkeypatch.setenv("PLANWRIGHT_USER", "tester")
    return home


@pytest.fixture(autouse=True)
def reset_lock_pid():
    yield
    WorkspaceLock.set_test_pid(None)


@pytest.fixture()
def tasks_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "repo" / "tasks"
    directory.mkdir(parents=True, exist_ok=True)
    return directory


@pytest.fixture()
def write_plan(tasks_dir: Path) -> PlanWriter:
    """Return a helper writing a YAML plan document into ``tasks_dir``."""

    def _write(filename: str, **fields: Any) -> Path:
        path = tasks_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(fields, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepository:
    """Create a git repository on ``main`` with a committed tasks directory."""

    repo_root = tmp_path / "repo"
    (repo_root / "tasks").mkdir(parents=True, exist_ok=True)
    (repo_root / "tasks" / ".keep").write_text("", encoding="utf-8")
    return GitRepository.initialise(repo_root, branch="main")

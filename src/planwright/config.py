"""Repository configuration and per-user storage locations."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_CONFIG_NAME = "planwright.yml"
CONFIG_HOME_ENV = "PLANWRIGHT_CONFIG_HOME"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "tasks": "tasks",
    },
    "git": {
        "trunk_branch": None,
    },
    "workspace": {
        "clone_root": None,
        "branch_prefix": "plan",
        "lock_stale_hours": 24,
    },
    "assignments": {
        "stale_timeout_days": 7,
    },
}


class ConfigError(ValueError):
    """Raised when configuration cannot be read or holds invalid values."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def merge_config(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``override`` onto ``base`` without mutating either."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def read_config(config_path: Path) -> Dict[str, Any]:
    """Read ``config_path`` and merge it over the defaults."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as error:
        raise ConfigError(f"Unable to read config {config_path}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return merge_config(DEFAULT_CONFIG_TEMPLATE, data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def find_config(start: Path | None = None) -> Optional[Path]:
    """Return the nearest ``planwright.yml`` at or above ``start``."""
    path = Path(start or Path.cwd()).resolve()
    for candidate in (path, *path.parents):
        config_path = candidate / DEFAULT_CONFIG_NAME
        if config_path.is_file():
            return config_path
        if (candidate / ".git").exists():
            return None
    return None


def config_home() -> Path:
    """Per-user directory for shared claims and the workspace tracker."""
    override = os.environ.get(CONFIG_HOME_ENV)
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg).expanduser() / "planwright"
    return Path.home() / ".config" / "planwright"


def tasks_dir(config: Mapping[str, Any], repo_root: Path) -> Path:
    value = (config.get("paths") or {}).get("tasks") or "tasks"
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def clone_root(config: Mapping[str, Any], repo_root: Path) -> Path:
    """Directory new workspaces are cloned into (``<repo>/../<name>-workspaces`` by default)."""
    value = (config.get("workspace") or {}).get("clone_root")
    if value:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = repo_root / path
        return path.resolve()
    return (repo_root.parent / f"{repo_root.name}-workspaces").resolve()


def _positive_number(section: str, key: str, config: Mapping[str, Any]) -> float:
    value = (config.get(section) or {}).get(key, DEFAULT_CONFIG_TEMPLATE[section][key])
    try:
        number = float(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}") from error
    if number <= 0:
        raise ConfigError(f"{section}.{key} must be positive, got {value!r}")
    return number


def lock_stale_hours(config: Mapping[str, Any]) -> float:
    return _positive_number("workspace", "lock_stale_hours", config)


def stale_timeout_days(config: Mapping[str, Any]) -> float:
    return _positive_number("assignments", "stale_timeout_days", config)


def trunk_branch(config: Mapping[str, Any]) -> Optional[str]:
    value = (config.get("git") or {}).get("trunk_branch")
    return str(value) if value else None


def branch_prefix(config: Mapping[str, Any]) -> str:
    return str((config.get("workspace") or {}).get("branch_prefix") or "")


__all__ = [
    "CONFIG_HOME_ENV",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "branch_prefix",
    "clone_root",
    "config_home",
    "copy_config_template",
    "find_config",
    "lock_stale_hours",
    "merge_config",
    "read_config",
    "stale_timeout_days",
    "tasks_dir",
    "trunk_branch",
    "write_config",
]

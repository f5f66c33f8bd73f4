"""Shared filesystem state path helpers."""

from __future__ import annotations

import os
import sys
from pathlib import Path

APP_DIR_NAME = "teams-mcp-server"


def default_config_dir(platform: str | None = None) -> Path:
    """Return the per-user config directory.

    ``%APPDATA%\\teams-mcp-server`` on Windows, ``~/.teams-mcp-server``
    elsewhere.
    """
    if (platform or sys.platform) == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    return Path.home() / f".{APP_DIR_NAME}"


def resolve_config_dir(config_dir: str | Path | None = None) -> Path:
    """Resolve the canonical config directory."""
    if config_dir is None:
        return default_config_dir()
    return Path(config_dir).expanduser()


def config_path(config_dir: str | Path | None, *parts: str) -> Path:
    """Resolve a child path within the config directory."""
    resolved = resolve_config_dir(config_dir)
    for part in parts:
        resolved = resolved / part
    return resolved


def session_state_path(config_dir: str | Path | None) -> Path:
    return config_path(config_dir, "session-state.json")


def browser_profile_path(config_dir: str | Path | None) -> Path:
    """Return the persistent browser profile directory."""
    return config_path(config_dir, "browser-profile")


def profile_lock_path(config_dir: str | Path | None) -> Path:
    """Return the lock file guarding the browser profile."""
    return config_path(config_dir, "browser-profile.lock")

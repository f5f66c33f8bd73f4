"""Shared test fixtures for the teamsmcp test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from teamsmcp.config import Settings
from teamsmcp.core.auth.cache import SessionCache
from teamsmcp.core.auth.session_store import SessionStore
from tests.helpers import make_settings, make_store


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's TEAMS_MCP_* environment out of the tests."""
    for name in list(os.environ):
        if name.startswith("TEAMS_MCP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def store(settings: Settings) -> SessionStore:
    return make_store(settings)


@pytest.fixture
def cache() -> SessionCache:
    return SessionCache()


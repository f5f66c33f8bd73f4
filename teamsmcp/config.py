"""Runtime configuration.

Every value can be overridden from the environment with the ``TEAMS_MCP_``
prefix, e.g. ``TEAMS_MCP_CONFIG_DIR`` or ``TEAMS_MCP_REFRESH_THRESHOLD_MINUTES``.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from teamsmcp.utils.state import (
    browser_profile_path,
    default_config_dir,
    profile_lock_path,
    session_state_path,
)

DEFAULT_APP_URL = "https://teams.microsoft.com"
DEFAULT_TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
DEFAULT_AUTHSVC_ENDPOINT = "https://authsvc.teams.microsoft.com/v1.0/authz"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TEAMS_MCP_",
        extra="ignore",
    )

    config_dir: Path = Field(default_factory=default_config_dir)
    app_url: str = DEFAULT_APP_URL

    # Identity provider
    token_endpoint: str = DEFAULT_TOKEN_ENDPOINT
    authsvc_endpoint: str = DEFAULT_AUTHSVC_ENDPOINT
    # Must match a redirect origin registered for the public client.
    refresh_origin: str = DEFAULT_APP_URL
    http_timeout_s: float = 10.0

    # Freshness
    refresh_threshold_minutes: int = 10
    session_expiry_hours: int = 12

    # Browser
    browser_channel: str | None = None
    login_redirect_window_s: float = 5.0
    search_response_timeout_s: float = 15.0
    manual_login_timeout_s: float = 300.0
    manual_login_poll_s: float = 2.0

    @field_validator("config_dir", mode="before")
    @classmethod
    def expand_config_dir(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    @property
    def session_state_path(self) -> Path:
        return session_state_path(self.config_dir)

    @property
    def browser_profile_dir(self) -> Path:
        return browser_profile_path(self.config_dir)

    @property
    def profile_lock_path(self) -> Path:
        return profile_lock_path(self.config_dir)

    @property
    def refresh_threshold_ms(self) -> int:
        return self.refresh_threshold_minutes * 60 * 1000

    @property
    def resolved_browser_channel(self) -> str:
        """msedge ships with Windows; elsewhere use the installed Chrome."""
        if self.browser_channel:
            return self.browser_channel
        return "msedge" if sys.platform == "win32" else "chrome"

    def token_url(self, tenant_id: str) -> str:
        return self.token_endpoint.format(tenant_id=tenant_id)


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, applying non-None overrides."""
    return Settings(**{key: value for key, value in overrides.items() if value is not None})

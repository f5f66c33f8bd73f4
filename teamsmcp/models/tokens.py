"""Derived credential, identity and refresh-result models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TokenInfo(_PayloadModel):
    """A bearer token and its expiry."""

    token: str
    expiry: datetime


class ChatTokenInfo(TokenInfo):
    user_mri: str


class MessageAuth(_PayloadModel):
    """Cookie-based credentials for the messaging service."""

    skype_token: str
    auth_token: str
    user_mri: str


class CsaAuth(_PayloadModel):
    auth: MessageAuth
    csa_token: str


class CalendarAuth(_PayloadModel):
    skype_token: str
    spaces_token: str


class TokenStatus(_PayloadModel):
    """Diagnostic view of a token's remaining lifetime."""

    has_token: bool
    expires_at: str | None = None
    minutes_remaining: int | None = None


class RegionConfig(_PayloadModel):
    """Backend endpoints for the signed-in tenant.

    ``region`` is the bare region used by the chat and aggregation services.
    ``region_partition`` is ``<region>-<nn>`` for partitioned tenants and the
    bare middle-tier region otherwise.
    """

    region: str
    partition: str = ""
    region_partition: str
    has_partition: bool = False
    middle_tier_url: str = ""
    chat_service_url: str
    csa_service_url: str
    teams_base_url: str


class ApiConfig(_PayloadModel):
    region: str
    base_url: str


class LicenseDetails(_PayloadModel):
    is_freemium: bool = False
    is_trial: bool = False
    is_teams_enabled: bool = False
    is_copilot: bool = False
    is_transcript_enabled: bool = False
    is_frontline: bool = False


class UserDetails(_PayloadModel):
    """User details published by the app's discovery service."""

    mri: str
    region: str
    user_partition: str = ""
    tenant_partition: str = ""
    licenses: LicenseDetails = Field(default_factory=LicenseDetails)


class UserProfile(_PayloadModel):
    """Identity derived from bearer-token claims."""

    id: str
    mri: str
    email: str = ""
    display_name: str
    tenant_id: str | None = None
    given_name: str | None = None
    surname: str | None = None


class CachedToken(BaseModel):
    """In-memory cache slot for the primary search token."""

    value: str
    expiry_ms: int
    extracted_at_ms: int


class DirectRefreshResult(_PayloadModel):
    tokens_refreshed: int
    skype_token_refreshed: bool = False
    refresh_token_rotated: bool = False
    failed_scopes: list[str] = Field(default_factory=list)


class BrowserRefreshResult(_PayloadModel):
    new_expiry: datetime
    previous_expiry: datetime
    minutes_gained: int
    refresh_needed: bool


class RefreshMethod(StrEnum):
    NONE = "none"
    DIRECT = "direct"
    BROWSER = "browser"


class RefreshOutcome(_PayloadModel):
    """Which path produced a usable session, and what it did."""

    method: RefreshMethod
    direct: DirectRefreshResult | None = None
    browser: BrowserRefreshResult | None = None


class SessionStatus(_PayloadModel):
    """Point-in-time health of the saved session."""

    search: TokenStatus
    messaging: TokenStatus
    favorites_available: bool
    session_exists: bool
    session_likely_expired: bool
    session_age_hours: float | None = None

"""Pydantic data models for teamsmcp."""

from teamsmcp.models.session import (
    AccessTokenRecord,
    Cookie,
    OriginState,
    RefreshTokenRecord,
    SessionState,
    StorageEntry,
    parse_credential,
)
from teamsmcp.models.tokens import (
    ApiConfig,
    BrowserRefreshResult,
    CachedToken,
    CalendarAuth,
    ChatTokenInfo,
    CsaAuth,
    DirectRefreshResult,
    LicenseDetails,
    MessageAuth,
    RefreshMethod,
    RefreshOutcome,
    RegionConfig,
    SessionStatus,
    TokenInfo,
    TokenStatus,
    UserDetails,
    UserProfile,
)

__all__ = [
    # Session state
    "Cookie",
    "StorageEntry",
    "OriginState",
    "SessionState",
    "RefreshTokenRecord",
    "AccessTokenRecord",
    "parse_credential",
    # Tokens and identity
    "TokenInfo",
    "ChatTokenInfo",
    "MessageAuth",
    "CsaAuth",
    "CalendarAuth",
    "TokenStatus",
    "SessionStatus",
    "RegionConfig",
    "ApiConfig",
    "LicenseDetails",
    "UserDetails",
    "UserProfile",
    "CachedToken",
    # Refresh results
    "DirectRefreshResult",
    "BrowserRefreshResult",
    "RefreshMethod",
    "RefreshOutcome",
]

"""Token provider protocol consumed by API callers and the MCP server."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from teamsmcp.errors import SessionError
from teamsmcp.models.tokens import ApiConfig, MessageAuth, RefreshOutcome


@runtime_checkable
class TokenProvider(Protocol):
    """Interface for handing out usable credentials.

    Implementations own the token lifecycle:
    - Returning a token that is fresh enough to use right now
    - Refreshing stale or expired tokens on demand
    - Reacting to a downstream rejection of a token they handed out
    """

    async def get_search_token(self) -> str:
        """Get a search token with at least the refresh threshold left."""
        ...

    def require_message_auth(self) -> MessageAuth:
        """Get the messaging credentials or raise AuthRequiredError."""
        ...

    def get_api_config(self) -> ApiConfig: ...

    async def refresh(self, *, allow_browser: bool = False) -> RefreshOutcome:
        """Refresh every credential, escalating to a browser if allowed."""
        ...

    def handle_auth_failure(self, exc: SessionError) -> None:
        """Drop cached state after a downstream service rejected a token."""
        ...

"""In-memory caches for the primary search token and region configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Final

from teamsmcp.models.tokens import CachedToken, RegionConfig, TokenInfo

logger = logging.getLogger(__name__)

_UNSET: Final = object()


class SessionCache:
    """Process-wide cache shared by every caller of the orchestrator.

    Only the search token is cached; other tokens are cheap to re-derive.
    The region config and tenant id are memoised, including a "not found"
    result, until explicitly invalidated.
    """

    def __init__(self) -> None:
        self._search_token: CachedToken | None = None
        self._region: RegionConfig | None | object = _UNSET
        self._tenant_id: str | None | object = _UNSET

    def get_search_token(self, now_ms: int) -> str | None:
        """Return the cached token if it is still valid at *now_ms*."""
        cached = self._search_token
        if cached is None or cached.expiry_ms <= now_ms:
            return None
        return cached.value

    def store_search_token(self, token: TokenInfo, now_ms: int) -> None:
        self._search_token = CachedToken(
            value=token.token,
            expiry_ms=int(token.expiry.timestamp() * 1000),
            extracted_at_ms=now_ms,
        )

    def region_config(self, load: Callable[[], RegionConfig | None]) -> RegionConfig | None:
        if self._region is _UNSET:
            self._region = load()
        return self._region  # type: ignore[return-value]

    def tenant_id(self, load: Callable[[], str | None]) -> str | None:
        if self._tenant_id is _UNSET:
            self._tenant_id = load()
        return self._tenant_id  # type: ignore[return-value]

    def invalidate_tokens(self) -> None:
        self._search_token = None

    def invalidate_region(self) -> None:
        self._region = _UNSET
        self._tenant_id = _UNSET

    def invalidate_all(self) -> None:
        logger.debug("Invalidating token and region caches")
        self.invalidate_tokens()
        self.invalidate_region()

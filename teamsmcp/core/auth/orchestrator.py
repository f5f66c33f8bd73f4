"""Refresh orchestration and credential guards.

Every caller asks the orchestrator for "a usable token for purpose P now".
A token with at least the refresh threshold left is returned as is; a stale
or expired one triggers the direct engine. The browser engine is only used
when the caller explicitly allows it, which the MCP server's retry wrapper
does once per failed tool call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from teamsmcp.config import Settings
from teamsmcp.core.auth.browser_refresh import BrowserRefreshEngine
from teamsmcp.core.auth.cache import SessionCache
from teamsmcp.core.auth.direct_refresh import DirectRefreshEngine
from teamsmcp.core.auth.extractor import (
    DEFAULT_TEAMS_BASE_URL,
    extract_csa_token,
    extract_graph_token,
    extract_message_auth,
    extract_region_config,
    extract_search_token,
    extract_spaces_token,
    extract_user_details,
    get_user_display_name,
    get_user_profile,
    message_auth_status,
    search_token_status,
)
from teamsmcp.core.auth.session_store import SessionStore
from teamsmcp.errors import (
    AuthExpiredError,
    AuthRequiredError,
    ErrorCode,
    SessionError,
)
from teamsmcp.models.session import SessionState
from teamsmcp.models.tokens import (
    ApiConfig,
    CalendarAuth,
    CsaAuth,
    DirectRefreshResult,
    MessageAuth,
    RefreshMethod,
    RefreshOutcome,
    RegionConfig,
    SessionStatus,
    TokenInfo,
    UserDetails,
    UserProfile,
)

logger = logging.getLogger(__name__)

DEFAULT_REGION = "amer"

MESSAGE_AUTH_REQUIRED = (
    "ACTION REQUIRED: No valid Teams authentication. "
    "You MUST call teams_login to authenticate before retrying."
)
CSA_AUTH_REQUIRED = (
    "ACTION REQUIRED: No valid authentication for favourites. "
    "You MUST call teams_login to authenticate before retrying."
)
CALENDAR_AUTH_REQUIRED = "Calendar access requires authentication. Please run teams_login."
GRAPH_AUTH_REQUIRED = (
    "ACTION REQUIRED: No valid Microsoft Graph token. "
    "You MUST call teams_login to authenticate before retrying. "
    "The Graph token is acquired during token refresh."
)
SEARCH_TOKEN_EXPIRED = (
    "ACTION REQUIRED: Teams token expired and automatic refresh failed. "
    "You MUST call teams_login to re-authenticate before retrying."
)


class RefreshOrchestrator:
    """Single entry point for credentials of the one signed-in user."""

    def __init__(
        self,
        store: SessionStore,
        cache: SessionCache | None = None,
        settings: Settings | None = None,
        *,
        direct: DirectRefreshEngine | None = None,
        browser: BrowserRefreshEngine | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache or SessionCache()
        self.settings = settings or Settings()
        self._clock = clock
        self.direct = direct or DirectRefreshEngine(
            store, self.cache, self.settings, clock=clock
        )
        self.browser = browser or BrowserRefreshEngine(
            store, self.cache, self.settings, clock=clock
        )
        # One direct pass at a time; callers that queued behind it reuse its result.
        self._direct_lock = asyncio.Lock()
        self._direct_generation = 0
        self._last_direct: DirectRefreshResult | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> RefreshOrchestrator:
        store = SessionStore(settings.config_dir, expiry_hours=settings.session_expiry_hours)
        return cls(store, SessionCache(), settings)

    async def close(self) -> None:
        await self.direct.close()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=UTC)

    def _state(self) -> SessionState | None:
        return self.store.read()

    @property
    def threshold(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_threshold_minutes)

    def _is_fresh(self, token: TokenInfo | None, now: datetime) -> bool:
        return token is not None and token.expiry - now >= self.threshold

    # -- search token -----------------------------------------------------

    async def get_search_token(self) -> str:
        """Return a search token, refreshing it first if it is stale.

        When the refresh fails but the old token has not expired yet, the old
        token is still returned.
        """
        now = self._now()
        now_ms = int(now.timestamp() * 1000)
        cached = self.cache.get_search_token(now_ms + self.settings.refresh_threshold_ms)
        if cached is not None:
            return cached

        state = self._state()
        token = extract_search_token(state, now)
        if self._is_fresh(token, now):
            assert token is not None
            self.cache.store_search_token(token, now_ms)
            return token.token
        if state is None:
            raise AuthRequiredError(MESSAGE_AUTH_REQUIRED)

        try:
            await self.refresh(allow_browser=False)
        except SessionError as exc:
            logger.warning("Automatic token refresh failed: %s", exc.message)
        else:
            now = self._now()
            refreshed = extract_search_token(self._state(), now)
            if refreshed is not None:
                self.cache.store_search_token(refreshed, int(now.timestamp() * 1000))
                return refreshed.token

        if token is not None and token.expiry > self._now():
            return token.token
        raise AuthExpiredError(SEARCH_TOKEN_EXPIRED)

    # -- guards -----------------------------------------------------------

    def require_message_auth(self) -> MessageAuth:
        auth = extract_message_auth(self._state())
        if auth is None:
            raise AuthRequiredError(MESSAGE_AUTH_REQUIRED)
        return auth

    def require_csa_auth(self) -> CsaAuth:
        state = self._state()
        auth = extract_message_auth(state)
        csa_token = extract_csa_token(state, self._now())
        if auth is None or not csa_token:
            raise AuthRequiredError(CSA_AUTH_REQUIRED)
        return CsaAuth(auth=auth, csa_token=csa_token)

    def require_calendar_auth(self) -> CalendarAuth:
        state = self._state()
        auth = extract_message_auth(state)
        spaces = extract_spaces_token(state, self._now())
        if auth is None or spaces is None:
            raise AuthRequiredError(
                CALENDAR_AUTH_REQUIRED, suggestions=["Call teams_login to authenticate"]
            )
        return CalendarAuth(skype_token=auth.skype_token, spaces_token=spaces.token)

    def require_graph_token(self) -> str:
        token = extract_graph_token(self._state(), self._now())
        if token is None:
            raise AuthRequiredError(GRAPH_AUTH_REQUIRED)
        return token.token

    # -- region and identity ----------------------------------------------

    def get_region_config(self) -> RegionConfig | None:
        return self.cache.region_config(lambda: extract_region_config(self._state()))

    def get_api_config(self) -> ApiConfig:
        config = self.get_region_config()
        if config is None:
            return ApiConfig(region=DEFAULT_REGION, base_url=DEFAULT_TEAMS_BASE_URL)
        return ApiConfig(region=config.region, base_url=config.teams_base_url)

    def get_tenant_id(self) -> str | None:
        def load() -> str | None:
            profile = get_user_profile(self._state())
            return profile.tenant_id if profile else None

        return self.cache.tenant_id(load)

    def get_user_profile(self) -> UserProfile | None:
        return get_user_profile(self._state())

    def get_user_details(self) -> UserDetails | None:
        return extract_user_details(self._state())

    def get_display_name(self) -> str | None:
        return get_user_display_name(self._state(), self._now())

    # -- lifecycle --------------------------------------------------------

    async def refresh(self, *, allow_browser: bool = False) -> RefreshOutcome:
        """Run the direct engine, then the browser engine if allowed.

        Raises the last engine's SessionError when nothing succeeded.
        """
        try:
            direct = await self._refresh_direct()
        except SessionError as exc:
            if not allow_browser:
                raise
            logger.info("Direct refresh failed (%s), trying browser refresh", exc.code)
        else:
            return RefreshOutcome(method=RefreshMethod.DIRECT, direct=direct)

        browser = await self.browser.refresh()
        return RefreshOutcome(method=RefreshMethod.BROWSER, browser=browser)

    async def _refresh_direct(self) -> DirectRefreshResult:
        generation = self._direct_generation
        async with self._direct_lock:
            if self._direct_generation != generation and self._last_direct is not None:
                logger.debug("Reusing the direct refresh that completed while waiting")
                return self._last_direct
            result = await self.direct.refresh()
            self._last_direct = result
            self._direct_generation += 1
            return result

    async def ensure_fresh(
        self, *, allow_browser: bool = False, force: bool = False
    ) -> RefreshOutcome:
        """Refresh only when the search token is stale, unless *force* is set."""
        if not force:
            now = self._now()
            if self._is_fresh(extract_search_token(self._state(), now), now):
                return RefreshOutcome(method=RefreshMethod.NONE)
        return await self.refresh(allow_browser=allow_browser)

    def handle_auth_failure(self, exc: SessionError) -> None:
        if exc.code == ErrorCode.AUTH_EXPIRED:
            logger.debug("Token rejected downstream; clearing token cache")
            self.cache.invalidate_tokens()

    def logout(self) -> bool:
        """Forget the saved session. Returns True if one existed."""
        removed = self.store.clear()
        self.cache.invalidate_all()
        return removed

    def status(self) -> SessionStatus:
        state = self._state()
        now = self._now()
        age = self.store.age_hours(self._clock())
        return SessionStatus(
            search=search_token_status(state, now),
            messaging=message_auth_status(state, now),
            favorites_available=extract_message_auth(state) is not None
            and extract_csa_token(state, now) is not None,
            session_exists=self.store.exists(),
            session_likely_expired=self.store.is_likely_expired(self._clock()),
            session_age_hours=round(age, 2) if age is not None else None,
        )

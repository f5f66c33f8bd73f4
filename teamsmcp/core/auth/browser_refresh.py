"""Token refresh and interactive login through a real browser.

The browser runs on the user's persistent profile. Its long-lived identity
provider cookies let the app's own identity library re-authenticate silently,
after which the browser's storage is captured and persisted exactly as the
direct engine would persist it. The profile only tolerates one browser at a
time, so overlapping attempts are rejected rather than queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import ExitStack, asynccontextmanager, contextmanager
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from teamsmcp.config import Settings
from teamsmcp.core.auth.cache import SessionCache
from teamsmcp.core.auth.extractor import extract_search_token, last_search_token_expiry
from teamsmcp.core.auth.matchers import is_app_url, is_login_url, is_search_response_url
from teamsmcp.core.auth.session_store import SessionStore
from teamsmcp.core.browser.driver import (
    DriverFactory,
    HeadlessSessionDriver,
    playwright_driver_factory,
)
from teamsmcp.errors import (
    AuthExpiredError,
    AuthRequiredError,
    BrowserError,
    InteractiveLoginRequiredError,
    RefreshInProgressError,
    RefreshTimeoutError,
    SessionError,
    UnknownError,
)
from teamsmcp.models.session import SessionState
from teamsmcp.models.tokens import BrowserRefreshResult
from teamsmcp.utils.locks import ProfileLockError, profile_lock

logger = logging.getLogger(__name__)


class PageStatus(StrEnum):
    AUTHENTICATED = "authenticated"
    LOGIN_PAGE = "login_page"
    UNEXPECTED = "unexpected"


class BrowserRefreshEngine:
    """Owns the browser profile for refresh and login."""

    def __init__(
        self,
        store: SessionStore,
        cache: SessionCache,
        settings: Settings | None = None,
        *,
        driver_factory: DriverFactory | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings or Settings()
        self.driver_factory = driver_factory or playwright_driver_factory(
            self.settings.browser_profile_dir, self.settings.resolved_browser_channel
        )
        self._clock = clock
        self._guard = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=UTC)

    @contextmanager
    def _profile(self, command: str) -> Iterator[None]:
        with ExitStack() as stack:
            try:
                stack.enter_context(profile_lock(self.settings.profile_lock_path, command))
            except ProfileLockError as exc:
                raise RefreshInProgressError(
                    f"Browser profile is busy: {exc}",
                    suggestions=["Wait a moment and retry the request"],
                ) from exc
            yield

    @asynccontextmanager
    async def _exclusive(self, command: str) -> AsyncIterator[None]:
        """Reject, never wait, if this engine or another process holds the profile."""
        if self._guard.locked():
            raise RefreshInProgressError(
                "Token refresh already in progress. Please wait and try again."
            )
        async with self._guard:
            with self._profile(command):
                yield

    @asynccontextmanager
    async def _driver(self, headless: bool) -> AsyncIterator[HeadlessSessionDriver]:
        driver = await self.driver_factory(headless)
        try:
            yield driver
        finally:
            await driver.close()

    async def refresh(self) -> BrowserRefreshResult:
        """Silently re-authenticate in a headless browser and persist the result.

        Raises:
            RefreshInProgressError: another refresh or login holds the profile.
            AuthRequiredError: there is no session to refresh.
            InteractiveLoginRequiredError: the provider wants the user to log in.
            AuthExpiredError: the browser produced no usable search token.
        """
        async with self._exclusive("browser-refresh"):
            previous_expiry = last_search_token_expiry(self.store.read())
            if previous_expiry is None:
                raise AuthRequiredError(
                    "No token found in session. Please run teams_login to authenticate.",
                    suggestions=["Call teams_login to authenticate"],
                )

            try:
                async with self._driver(headless=True) as driver:
                    await self.ensure_authenticated(driver, headless=True)
            except SessionError:
                raise
            except Exception as exc:
                raise UnknownError(
                    f"Token refresh via browser failed: {exc}",
                    suggestions=["Call teams_login to re-authenticate"],
                ) from exc

        self.cache.invalidate_all()
        now = self._now()
        after = extract_search_token(self.store.read(), now)
        if after is None:
            raise AuthExpiredError(
                "Token refresh failed - no token found after refresh attempt.",
                suggestions=["Call teams_login to re-authenticate"],
            )

        threshold = timedelta(minutes=self.settings.refresh_threshold_minutes)
        refresh_needed = previous_expiry - now < threshold
        if refresh_needed and after.expiry <= previous_expiry:
            raise AuthExpiredError(
                "Token was not refreshed despite being close to expiry. "
                "Session may need re-authentication.",
                suggestions=["Call teams_login to re-authenticate"],
            )

        minutes_gained = round((after.expiry - previous_expiry).total_seconds() / 60)
        logger.info("Browser refresh complete, gained %d minute(s)", minutes_gained)
        return BrowserRefreshResult(
            new_expiry=after.expiry,
            previous_expiry=previous_expiry,
            minutes_gained=minutes_gained,
            refresh_needed=refresh_needed,
        )

    async def login(self, *, force_new: bool = False, headless: bool = False) -> None:
        """Authenticate through the browser, waiting for the user if needed.

        With ``headless=True`` the attempt fails fast with
        InteractiveLoginRequiredError instead of waiting for a user.
        """
        async with self._exclusive("login"):
            try:
                async with self._driver(headless=headless) as driver:
                    if force_new:
                        logger.info("Starting fresh login")
                        await driver.clear_cookies()
                        await self.navigate_to_app(driver)
                        await self.wait_for_manual_login(driver)
                    else:
                        await self.ensure_authenticated(driver, headless=headless)
            except SessionError:
                raise
            except Exception as exc:
                raise BrowserError(f"Browser login failed: {exc}") from exc

    async def navigate_to_app(self, driver: HeadlessSessionDriver) -> PageStatus:
        """Load the app and classify where navigation settled.

        A login redirect shows up within a few seconds when the provider
        session is gone; no redirect within the window means the session is
        valid, without waiting for the app to finish rendering.
        """
        await driver.navigate(self.settings.app_url)
        redirected = await driver.wait_for_login_redirect(self.settings.login_redirect_window_s)
        current_url = driver.current_url()
        if redirected or is_login_url(current_url):
            return PageStatus.LOGIN_PAGE
        if not is_app_url(current_url):
            return PageStatus.UNEXPECTED
        return PageStatus.AUTHENTICATED

    async def ensure_authenticated(
        self, driver: HeadlessSessionDriver, *, headless: bool
    ) -> None:
        status = await self.navigate_to_app(driver)
        if status is PageStatus.AUTHENTICATED:
            logger.info("Already authenticated, saving session state")
            await self.capture_session(driver)
            return

        if headless:
            reason = (
                "Login page detected - user credentials required"
                if status is PageStatus.LOGIN_PAGE
                else f"Unexpected page state: {driver.current_url()}"
            )
            raise InteractiveLoginRequiredError(
                f"Headless SSO failed: {reason}",
                suggestions=["Call teams_login to log in interactively"],
            )

        logger.info("Login required. Please complete authentication in the browser window.")
        await self.wait_for_manual_login(driver)

    async def page_status(self, driver: HeadlessSessionDriver) -> PageStatus:
        current_url = driver.current_url()
        if is_login_url(current_url):
            return PageStatus.LOGIN_PAGE
        if is_app_url(current_url) and await driver.has_app_content():
            return PageStatus.AUTHENTICATED
        return PageStatus.UNEXPECTED

    async def wait_for_manual_login(self, driver: HeadlessSessionDriver) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.manual_login_timeout_s
        logger.info("Waiting for manual login...")
        while loop.time() < deadline:
            if await self.page_status(driver) is PageStatus.AUTHENTICATED:
                logger.info("Authentication successful")
                await self.capture_session(driver)
                return
            await asyncio.sleep(self.settings.manual_login_poll_s)
        raise RefreshTimeoutError(
            "Authentication timeout: user did not complete login within the allowed time",
            retryable=False,
            suggestions=["Call teams_login again and complete the login in the browser window"],
        )

    async def capture_session(self, driver: HeadlessSessionDriver) -> SessionState:
        """Persist the browser's storage, probing for a search token if it is missing.

        The identity library only acquires tokens for scopes the app uses, so
        after a fresh login the search token may not exist until a search runs.
        """
        state = SessionState.from_storage_state(await driver.storage_state())
        if self._needs_search_token(state):
            waiter = asyncio.ensure_future(
                driver.wait_for_response(
                    is_search_response_url, self.settings.search_response_timeout_s
                )
            )
            await driver.trigger_search()
            if await waiter:
                state = SessionState.from_storage_state(await driver.storage_state())
            else:
                logger.warning("No search response observed; saving session without probing")

        self.store.write(state)
        self.cache.invalidate_all()
        logger.info("Session state saved")
        return state

    def _needs_search_token(self, state: SessionState) -> bool:
        now = self._now()
        token = extract_search_token(state, now)
        if token is None:
            return True
        return token.expiry - now < timedelta(minutes=self.settings.refresh_threshold_minutes)

"""Headless session driver capability and its Playwright implementation.

The browser refresh engine only talks to ``HeadlessSessionDriver``; tests
substitute a fake. ``PlaywrightSessionDriver`` runs the installed Chrome (or
Edge on Windows) against a persistent profile, so the identity provider's
long-lived session cookies survive between launches and a headless launch
can re-authenticate silently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from teamsmcp.core.auth.matchers import is_login_url
from teamsmcp.errors import BrowserError, RefreshInProgressError

logger = logging.getLogger(__name__)

PLAYWRIGHT_INSTALL_HINT = 'Install with: pip install "teamsmcp[playwright]"'
BROWSERS_INSTALL_HINT = "Install Google Chrome, or run: playwright install chrome"

# Any of these means the app shell rendered for a signed-in user.
AUTH_SUCCESS_SELECTORS = (
    '[data-tid="app-bar"]',
    '[data-tid="search-box"]',
    'input[placeholder*="Search"]',
    '[data-tid="chat-list"]',
    '[data-tid="team-list"]',
)
SEARCH_BOX_SELECTOR = '[data-tid="search-box"] input, input[placeholder*="Search"]'
SEARCH_PROBE_QUERY = "meeting"
_REDIRECT_POLL_S = 0.1


@runtime_checkable
class HeadlessSessionDriver(Protocol):
    """What the browser refresh engine needs from a browser."""

    async def navigate(self, url: str) -> None:
        """Load *url* and start watching for login redirects."""
        ...

    def current_url(self) -> str: ...

    async def wait_for_login_redirect(self, window_s: float) -> bool:
        """Return True if navigation reached a login page within *window_s*."""
        ...

    async def has_app_content(self) -> bool: ...

    async def trigger_search(self) -> None:
        """Perform an action that makes the app request a search-scope token."""
        ...

    async def wait_for_response(
        self, predicate: Callable[[str], bool], timeout_s: float
    ) -> bool:
        """Wait for a network response whose URL satisfies *predicate*."""
        ...

    async def storage_state(self) -> dict[str, Any]: ...

    async def clear_cookies(self) -> None: ...

    async def close(self) -> None: ...


DriverFactory = Callable[[bool], Awaitable[HeadlessSessionDriver]]


def classify_playwright_error(exc: BaseException) -> str:
    """Classify a Playwright failure.

    Returns one of: missing_package, missing_browsers, profile_locked, other.
    """
    if isinstance(exc, ImportError):
        return "missing_package"

    message = str(exc).lower()
    if "executable doesn't exist" in message:
        return "missing_browsers"
    if "chromium distribution" in message and "is not found" in message:
        return "missing_browsers"
    if "playwright install" in message and "browser" in message:
        return "missing_browsers"
    if "processsingleton" in message or "user data directory is already in use" in message:
        return "profile_locked"
    return "other"


def launch_error(exc: BaseException, channel: str) -> Exception:
    """Translate a launch failure into a SessionError with install guidance."""
    kind = classify_playwright_error(exc)
    if kind == "missing_package":
        return BrowserError(f"Playwright is not installed. {PLAYWRIGHT_INSTALL_HINT}")
    if kind == "profile_locked":
        return RefreshInProgressError(
            "The browser profile is in use by another browser. Please wait and try again."
        )
    browser_name = "Microsoft Edge" if channel == "msedge" else "Google Chrome"
    hint = (
        "Edge should be pre-installed on Windows. Try updating or reinstalling Edge."
        if channel == "msedge"
        else BROWSERS_INSTALL_HINT
    )
    return BrowserError(f"Could not launch {browser_name}. {hint} Original error: {exc}")


class PlaywrightSessionDriver:
    """HeadlessSessionDriver over a Playwright persistent context."""

    def __init__(self, playwright: Any, context: Any, page: Any, error_type: type[Exception]) -> None:
        self._playwright = playwright
        self.context = context
        self.page = page
        self._error_type = error_type
        self._redirect_detected = False

    @classmethod
    async def launch(
        cls,
        profile_dir: Path,
        *,
        headless: bool,
        channel: str,
        viewport: dict[str, int] | None = None,
    ) -> PlaywrightSessionDriver:
        try:
            from playwright.async_api import Error as PlaywrightError  # type: ignore[import-not-found]
            from playwright.async_api import async_playwright
        except ImportError as e:
            raise launch_error(e, channel) from e

        profile_dir.mkdir(parents=True, exist_ok=True)
        playwright = await async_playwright().start()
        try:
            context = await playwright.chromium.launch_persistent_context(
                str(profile_dir),
                headless=headless,
                channel=channel,
                viewport=viewport or {"width": 1280, "height": 800},
                accept_downloads=False,
            )
        except PlaywrightError as e:
            await playwright.stop()
            raise launch_error(e, channel) from e

        page = context.pages[0] if context.pages else await context.new_page()
        logger.debug("Launched %s (headless=%s) on %s", channel, headless, profile_dir)
        return cls(playwright, context, page, PlaywrightError)

    def _on_frame_navigated(self, frame: Any) -> None:
        if frame == self.page.main_frame and is_login_url(frame.url):
            self._redirect_detected = True

    async def navigate(self, url: str) -> None:
        self._redirect_detected = False
        self.page.on("framenavigated", self._on_frame_navigated)
        await self.page.goto(url, wait_until="domcontentloaded")

    def current_url(self) -> str:
        return str(self.page.url)

    async def wait_for_login_redirect(self, window_s: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window_s
        try:
            while loop.time() < deadline and not self._redirect_detected:
                await asyncio.sleep(_REDIRECT_POLL_S)
        finally:
            self.page.remove_listener("framenavigated", self._on_frame_navigated)
        return self._redirect_detected or is_login_url(self.current_url())

    async def has_app_content(self) -> bool:
        for selector in AUTH_SUCCESS_SELECTORS:
            try:
                if await self.page.locator(selector).count() > 0:
                    return True
            except self._error_type:
                continue
        return False

    async def trigger_search(self) -> None:
        search_box = self.page.locator(SEARCH_BOX_SELECTOR).first
        try:
            await search_box.click(timeout=10_000)
            await search_box.fill(SEARCH_PROBE_QUERY)
            await search_box.press("Enter")
        except self._error_type as exc:
            logger.debug("Search probe could not run: %s", exc)

    async def wait_for_response(
        self, predicate: Callable[[str], bool], timeout_s: float
    ) -> bool:
        try:
            await self.page.wait_for_event(
                "response",
                predicate=lambda response: predicate(response.url),
                timeout=timeout_s * 1000,
            )
        except self._error_type:
            return False
        return True

    async def storage_state(self) -> dict[str, Any]:
        return dict(await self.context.storage_state())

    async def clear_cookies(self) -> None:
        await self.context.clear_cookies()

    async def close(self) -> None:
        try:
            await self.context.close()
        finally:
            await self._playwright.stop()


def playwright_driver_factory(
    profile_dir: Path, channel: str
) -> DriverFactory:
    """Build a factory launching Playwright drivers on *profile_dir*."""

    async def factory(headless: bool) -> HeadlessSessionDriver:
        return await PlaywrightSessionDriver.launch(
            profile_dir, headless=headless, channel=channel
        )

    return factory

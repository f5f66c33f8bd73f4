"""Test helpers for building tokens and browser session states."""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import jwt

from teamsmcp.config import Settings
from teamsmcp.core.auth.matchers import access_token_key, is_login_url
from teamsmcp.core.auth.session_store import SessionStore

NOW = 1_750_000_000.0

SIGNING_KEY = "teamsmcp-test-signing-key-0123456789abcdef"
STORE_KEY = bytes(range(32))

APP_ORIGIN = "https://teams.microsoft.com"
TENANT_ID = "72f988bf-0000-0000-0000-2d7cd011db47"
CLIENT_ID = "5e3ce6c0-2b1f-4285-8d4b-75ee78787346"
OID = "11111111-2222-3333-4444-555555555555"
HOME_ACCOUNT_ID = f"{OID}.{TENANT_ID}"
ENVIRONMENT = "login.windows.net"
REFRESH_TOKEN = "0.ARefresh-original"
REFRESH_KEY = f"{HOME_ACCOUNT_ID}-{ENVIRONMENT}-refreshtoken-{CLIENT_ID}----"

SEARCH_TARGET = "https://substrate.office.com/SubstrateSearch-Internal.ReadWrite"
SPACES_TARGET = "https://api.spaces.skype.com/.default"
CHAT_TARGET = "https://chatsvcagg.teams.microsoft.com/.default"
GRAPH_TARGET = "https://graph.microsoft.com/.default"


def make_jwt(exp: float | None = None, **claims: Any) -> str:
    payload: dict[str, Any] = {"oid": OID, "tid": TENANT_ID, **claims}
    if exp is not None:
        payload["exp"] = int(exp)
    return jwt.encode(payload, SIGNING_KEY, algorithm="HS256")


def access_token_value(
    target: str,
    secret: str,
    *,
    expires_on: float | None = None,
    realm: str = TENANT_ID,
) -> str:
    record = {
        "credentialType": "AccessToken",
        "homeAccountId": HOME_ACCOUNT_ID,
        "environment": ENVIRONMENT,
        "clientId": CLIENT_ID,
        "realm": realm,
        "target": target,
        "tokenType": "Bearer",
        "secret": secret,
        "expiresOn": str(int(expires_on if expires_on is not None else NOW + 3600)),
        "extendedExpiresOn": str(int(expires_on if expires_on is not None else NOW + 3600)),
        "cachedAt": str(int(NOW - 600)),
    }
    return json.dumps(record)


def access_token_entry(target: str, secret: str, *, name: str | None = None) -> dict[str, str]:
    key = name or access_token_key(HOME_ACCOUNT_ID, ENVIRONMENT, CLIENT_ID, TENANT_ID, target)
    return {"name": key, "value": access_token_value(target, secret)}


def refresh_token_entry(secret: str = REFRESH_TOKEN) -> dict[str, str]:
    record = {
        "credentialType": "RefreshToken",
        "homeAccountId": HOME_ACCOUNT_ID,
        "environment": ENVIRONMENT,
        "clientId": CLIENT_ID,
        "secret": secret,
    }
    return {"name": REFRESH_KEY, "value": json.dumps(record)}


def region_entry(middle_tier: str, chat_service: str, **extra: str) -> dict[str, str]:
    item = {"middleTier": middle_tier, "chatServiceAfd": chat_service, **extra}
    return {
        "name": "tmp.auth.v1.GLOBAL.DISCOVER-REGION-GTM.DISCOVER-REGION-GTM",
        "value": json.dumps({"item": item}),
    }


def user_details_entry(**item: Any) -> dict[str, str]:
    payload = {"id": f"8:orgid:{OID}", "region": "amer", **item}
    return {
        "name": "tmp.auth.v1.GLOBAL.DISCOVER-USER-DETAILS.DISCOVER-USER-DETAILS",
        "value": json.dumps({"item": payload}),
    }


def message_cookies(skype_token: str, auth_token: str) -> list[dict[str, Any]]:
    return [
        {
            "name": "skypetoken_asm",
            "value": skype_token,
            "domain": ".asyncgw.teams.microsoft.com",
            "path": "/",
            "expires": NOW + 86400,
            "httpOnly": True,
            "secure": True,
            "sameSite": "None",
        },
        {
            "name": "authtoken",
            "value": f"Bearer%3D{auth_token}",
            "domain": "teams.microsoft.com",
            "path": "/",
            "expires": NOW + 3600,
            "httpOnly": False,
            "secure": True,
            "sameSite": "None",
        },
    ]


def storage_state(
    entries: list[dict[str, str]],
    *,
    cookies: list[dict[str, Any]] | None = None,
    origin: str = APP_ORIGIN,
    extra_origins: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "cookies": cookies or [],
        "origins": [{"origin": origin, "localStorage": entries}, *(extra_origins or [])],
    }


def full_session(*, search_exp: float = NOW + 3600) -> dict[str, Any]:
    """A signed-in session with every credential family present."""
    entries = [
        refresh_token_entry(),
        access_token_entry(SEARCH_TARGET, make_jwt(search_exp, name="Smith, Jane", upn="jane@contoso.com")),
        access_token_entry(SPACES_TARGET, make_jwt(NOW + 3600)),
        access_token_entry(CHAT_TARGET, make_jwt(NOW + 3600)),
        access_token_entry(GRAPH_TARGET, make_jwt(NOW + 3600)),
        region_entry(
            "https://teams.microsoft.com/api/mt/part/amer-02",
            "https://teams.microsoft.com/api/chatsvc/amer",
        ),
    ]
    cookies = message_cookies(
        make_jwt(NOW + 86400, skypeid=f"orgid:{OID}"),
        make_jwt(NOW + 3600),
    )
    return storage_state(entries, cookies=cookies)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "config_dir": tmp_path / "config",
        "login_redirect_window_s": 0.05,
        "search_response_timeout_s": 0.05,
        "manual_login_timeout_s": 0.2,
        "manual_login_poll_s": 0.01,
        **overrides,
    }
    return Settings(**values)


def make_store(settings: Settings) -> SessionStore:
    return SessionStore(settings.config_dir, key=STORE_KEY)


class FakeDriver:
    """In-memory HeadlessSessionDriver.

    ``landing_url`` is where navigation settles; ``after_search`` replaces the
    storage once a search probe runs, as the real app would after acquiring
    a search-scope token.
    """

    def __init__(
        self,
        state: dict[str, Any] | None = None,
        *,
        landing_url: str = f"{APP_ORIGIN}/v2/",
        has_content: bool = True,
        after_search: dict[str, Any] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.state = state or storage_state([])
        self.landing_url = landing_url
        self.has_content = has_content
        self.after_search = after_search
        self.delay_s = delay_s
        self.url = "about:blank"
        self.navigations: list[str] = []
        self.searches = 0
        self.cookies_cleared = False
        self.closed = False
        self._search_seen = asyncio.Event()

    async def navigate(self, url: str) -> None:
        self.navigations.append(url)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.url = self.landing_url

    def current_url(self) -> str:
        return self.url

    async def wait_for_login_redirect(self, window_s: float) -> bool:
        return is_login_url(self.url)

    async def has_app_content(self) -> bool:
        return self.has_content

    async def trigger_search(self) -> None:
        self.searches += 1
        if self.after_search is not None:
            self.state = self.after_search
            self._search_seen.set()

    async def wait_for_response(
        self, predicate: Callable[[str], bool], timeout_s: float
    ) -> bool:
        try:
            await asyncio.wait_for(self._search_seen.wait(), timeout_s)
        except TimeoutError:
            return False
        return predicate("https://substrate.office.com/search/api/v2/query")

    async def storage_state(self) -> dict[str, Any]:
        return copy.deepcopy(self.state)

    async def clear_cookies(self) -> None:
        self.cookies_cleared = True
        self.state = {**self.state, "cookies": []}

    async def close(self) -> None:
        self.closed = True


def driver_factory(driver: FakeDriver) -> tuple[Callable[[bool], Any], list[bool]]:
    """A factory always returning *driver*, plus the headless flags it was called with."""
    launches: list[bool] = []

    async def factory(headless: bool) -> FakeDriver:
        launches.append(headless)
        return driver

    return factory, launches

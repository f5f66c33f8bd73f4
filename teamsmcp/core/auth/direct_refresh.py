"""Browserless token refresh against the identity provider's token endpoint.

The session's refresh token is redeemed once per downstream scope group, in
order. Each new access token is written back into the identity cache in the
exact record shape the identity library uses, so the extractor (and the
library itself, should the browser path run later) finds it. The Skype
Spaces token is then exchanged for the messaging cookies, and the whole
session is saved in one write.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from teamsmcp.config import Settings
from teamsmcp.core.auth.cache import SessionCache
from teamsmcp.core.auth.extractor import (
    RefreshCredentials,
    extract_refresh_credentials,
    find_app_origin,
    iter_access_tokens,
)
from teamsmcp.core.auth.matchers import (
    AUTH_TOKEN_COOKIE,
    AUTH_TOKEN_COOKIE_DOMAIN,
    ENCODED_AUTH_TOKEN_PREFIX,
    REFRESH_SCOPE_GROUPS,
    SKYPE_TOKEN_COOKIE,
    SKYPE_TOKEN_COOKIE_DOMAINS,
    ScopeGroup,
    access_token_key,
)
from teamsmcp.core.auth.session_store import SessionStore
from teamsmcp.errors import (
    AuthExpiredError,
    AuthRequiredError,
    NetworkError,
    RateLimitedError,
    RefreshTimeoutError,
    SessionError,
    UnknownError,
    parse_retry_after,
)
from teamsmcp.models.session import (
    AccessTokenRecord,
    Cookie,
    OriginState,
    RefreshTokenRecord,
    SessionState,
    parse_credential,
)
from teamsmcp.models.tokens import DirectRefreshResult

logger = logging.getLogger(__name__)

DEFAULT_SKYPE_TOKEN_LIFETIME_S = 86400
DEFAULT_AUTH_TOKEN_LIFETIME_S = 3600
_ERROR_SNIPPET_CHARS = 200


@dataclass
class _CookieSource:
    access_token: str
    expires_in: int
    refreshed_at: int


class DirectRefreshEngine:
    """Refreshes every scope group with the session's refresh token."""

    def __init__(
        self,
        store: SessionStore,
        cache: SessionCache,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        scope_groups: tuple[ScopeGroup, ...] = REFRESH_SCOPE_GROUPS,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings or Settings()
        self.scope_groups = scope_groups
        self._clock = clock
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.http_timeout_s)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def refresh(self, state: SessionState | None = None) -> DirectRefreshResult:
        """Run one refresh pass.

        Raises AuthRequiredError when there is nothing to refresh with,
        AuthExpiredError when the provider rejects the refresh token (the
        remaining scopes are not attempted, but whatever was already refreshed
        is saved), and a retryable UnknownError when no scope could be
        refreshed.
        """
        if state is None:
            state = self.store.read()
        if state is None:
            raise AuthRequiredError(
                "No session state found. Browser login is required for first authentication.",
                suggestions=["Call teams_login to authenticate via browser"],
            )

        credentials = extract_refresh_credentials(state)
        origin = find_app_origin(state)
        if credentials is None or origin is None:
            raise AuthRequiredError(
                "No refresh token found in session state. Browser login is required.",
                retryable=False,
                suggestions=["Call teams_login to authenticate via browser"],
            )

        client = await self._get_http_client()
        current_refresh_token = credentials.refresh_token
        result = DirectRefreshResult(tokens_refreshed=0)
        cookie_source: _CookieSource | None = None

        for group in self.scope_groups:
            try:
                response = await self._redeem(client, credentials, current_refresh_token, group)
            except AuthExpiredError as exc:
                if result.tokens_refreshed:
                    self._persist(state, origin, credentials, current_refresh_token, result)
                raise AuthExpiredError(
                    f"HTTP token refresh failed for {group.resource}: {exc.message}. "
                    "Browser login required.",
                    suggestions=["Call teams_login to re-authenticate via browser"],
                ) from exc
            except SessionError as exc:
                logger.warning("Failed to refresh %s: %s", group.resource, exc.message)
                result.failed_scopes.append(group.resource)
                continue

            refreshed_at = int(self._clock())
            _write_access_token(origin, group, response, credentials, refreshed_at)
            result.tokens_refreshed += 1
            logger.info("Refreshed access token for %s", group.resource)

            rotated = response.get("refresh_token")
            if isinstance(rotated, str) and rotated and rotated != current_refresh_token:
                current_refresh_token = rotated
                result.refresh_token_rotated = True

            if group.derives_cookies:
                cookie_source = _CookieSource(
                    access_token=response["access_token"],
                    expires_in=_lifetime(response, "expires_in", DEFAULT_AUTH_TOKEN_LIFETIME_S),
                    refreshed_at=refreshed_at,
                )

        if result.tokens_refreshed == 0:
            raise UnknownError(
                "HTTP token refresh failed: no tokens were successfully refreshed.",
                retryable=True,
            )

        if cookie_source is not None:
            try:
                skype_token, skype_expires_in = await self._exchange_skype_token(
                    client, cookie_source.access_token
                )
            except SessionError as exc:
                logger.warning("Skype token exchange failed: %s", exc.message)
            else:
                _write_skype_token_cookies(
                    state, skype_token, cookie_source.refreshed_at + skype_expires_in
                )
                _write_auth_token_cookie(
                    state,
                    cookie_source.access_token,
                    cookie_source.refreshed_at + cookie_source.expires_in,
                )
                result.skype_token_refreshed = True

        self._persist(state, origin, credentials, current_refresh_token, result)
        logger.info(
            "Direct refresh complete: %d token(s), rotated=%s, cookies=%s",
            result.tokens_refreshed,
            result.refresh_token_rotated,
            result.skype_token_refreshed,
        )
        return result

    async def _redeem(
        self,
        client: httpx.AsyncClient,
        credentials: RefreshCredentials,
        refresh_token: str,
        group: ScopeGroup,
    ) -> dict[str, Any]:
        """Perform one refresh-token grant."""
        try:
            response = await client.post(
                self.settings.token_url(credentials.tenant_id),
                data={
                    "grant_type": "refresh_token",
                    "client_id": credentials.client_id,
                    "refresh_token": refresh_token,
                    "scope": group.scopes,
                },
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Origin": self.settings.refresh_origin,
                },
                timeout=self.settings.http_timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise RefreshTimeoutError("Token refresh request timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Token refresh network error: {exc}") from exc

        if response.status_code >= 400:
            detail = _provider_error_detail(response)
            message = f"Token refresh failed: {detail}"
            if response.status_code in (400, 401):
                raise AuthExpiredError(message, retryable=False)
            if response.status_code == 429:
                raise RateLimitedError(
                    message, retry_after_ms=parse_retry_after(response.headers.get("Retry-After"))
                )
            raise UnknownError(message, retryable=True)

        try:
            payload = response.json()
        except ValueError as exc:
            raise UnknownError("Token endpoint returned invalid JSON", retryable=True) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("access_token"), str):
            raise UnknownError("Token endpoint returned no access token", retryable=True)
        return payload

    async def _exchange_skype_token(
        self, client: httpx.AsyncClient, access_token: str
    ) -> tuple[str, int]:
        """Trade a Skype Spaces access token for the messaging session token."""
        try:
            response = await client.post(
                self.settings.authsvc_endpoint,
                content=b"{}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.settings.http_timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise RefreshTimeoutError("Skype token exchange timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Skype token exchange error: {exc}") from exc

        if response.status_code >= 400:
            raise AuthExpiredError(
                f"Skype token exchange failed: HTTP {response.status_code}: "
                f"{response.text[:_ERROR_SNIPPET_CHARS]}",
                retryable=False,
            )
        try:
            payload = response.json()
        except ValueError:
            payload = None
        tokens = payload.get("tokens") if isinstance(payload, dict) else None
        skype_token = tokens.get("skypeToken") if isinstance(tokens, dict) else None
        if not isinstance(skype_token, str) or not skype_token:
            raise UnknownError("Skype token exchange returned no token", retryable=False)
        return skype_token, _lifetime(tokens, "expiresIn", DEFAULT_SKYPE_TOKEN_LIFETIME_S)

    def _persist(
        self,
        state: SessionState,
        origin: OriginState,
        credentials: RefreshCredentials,
        refresh_token: str,
        result: DirectRefreshResult,
    ) -> None:
        """Save everything refreshed so far, including a rotated refresh token."""
        if result.refresh_token_rotated:
            self._write_refresh_token(origin, credentials, refresh_token)
        self.store.write(state)
        self.cache.invalidate_all()

    def _write_refresh_token(
        self, origin: OriginState, credentials: RefreshCredentials, new_secret: str
    ) -> None:
        entry = origin.find_entry(credentials.refresh_token_key)
        record = parse_credential(entry.value) if entry is not None else None
        if not isinstance(record, RefreshTokenRecord):
            record = RefreshTokenRecord(
                credential_type="RefreshToken",
                home_account_id=credentials.home_account_id,
                environment=credentials.environment,
                client_id=credentials.client_id,
                secret=new_secret,
            )
        record.secret = new_secret
        record.last_updated_at = str(int(self._clock() * 1000))
        origin.set_entry(credentials.refresh_token_key, record.to_json())
        logger.info("Persisted rotated refresh token")


def _lifetime(payload: dict[str, Any], field: str, default: int) -> int:
    value = payload.get(field)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return default
    return int(value)


def _provider_error_detail(response: httpx.Response) -> str:
    text = response.text
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {text[:_ERROR_SNIPPET_CHARS]}"
    if isinstance(body, dict):
        if body.get("error_description"):
            return str(body["error_description"])
        if body.get("error"):
            return str(body["error"])
    return f"HTTP {response.status_code}"


def _write_access_token(
    origin: OriginState,
    group: ScopeGroup,
    response: dict[str, Any],
    credentials: RefreshCredentials,
    refreshed_at: int,
) -> None:
    """Overwrite the resource's record in place, or add one under a library-shaped key."""
    expires_in = _lifetime(response, "expires_in", DEFAULT_AUTH_TOKEN_LIFETIME_S)
    ext_expires_in = _lifetime(response, "ext_expires_in", expires_in)
    scope = response.get("scope") if isinstance(response.get("scope"), str) else None
    if scope and not group.matches(scope):
        scope = None

    for entry, record in iter_access_tokens(origin.local_storage):
        if not group.matches(record.target):
            continue
        record.secret = response["access_token"]
        record.expires_on = str(refreshed_at + expires_in)
        record.extended_expires_on = str(refreshed_at + ext_expires_in)
        record.cached_at = str(refreshed_at)
        if scope:
            record.target = scope
        entry.value = record.to_json()
        return

    target = scope or group.record_target
    record = AccessTokenRecord(
        credential_type="AccessToken",
        home_account_id=credentials.home_account_id,
        environment=credentials.environment,
        client_id=credentials.client_id,
        realm=credentials.tenant_id,
        target=target,
        token_type=str(response.get("token_type") or "Bearer"),
        secret=response["access_token"],
        expires_on=str(refreshed_at + expires_in),
        extended_expires_on=str(refreshed_at + ext_expires_in),
        cached_at=str(refreshed_at),
    )
    key = access_token_key(
        credentials.home_account_id,
        credentials.environment,
        credentials.client_id,
        credentials.tenant_id,
        target,
    )
    origin.set_entry(key, record.to_json())


def _write_skype_token_cookies(state: SessionState, skype_token: str, expires: float) -> None:
    for domain in SKYPE_TOKEN_COOKIE_DOMAINS:
        state.upsert_cookie(
            Cookie(
                name=SKYPE_TOKEN_COOKIE,
                value=skype_token,
                domain=domain,
                path="/",
                expires=expires,
                http_only=True,
                secure=True,
                same_site="None",
            )
        )


def _write_auth_token_cookie(state: SessionState, access_token: str, expires: float) -> None:
    state.upsert_cookie(
        Cookie(
            name=AUTH_TOKEN_COOKIE,
            value=f"{ENCODED_AUTH_TOKEN_PREFIX}{quote(access_token, safe='')}",
            domain=AUTH_TOKEN_COOKIE_DOMAIN,
            path="/",
            expires=expires,
            http_only=False,
            secure=True,
            same_site="None",
        )
    )

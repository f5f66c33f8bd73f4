"""Credential extraction from a session-state snapshot.

The app's identity library keeps its token cache in local storage, next to
discovery payloads describing the tenant's backend endpoints. Everything in
this module is a pure function over a ``SessionState``: a ``None`` state or a
malformed entry means "nothing found", never an exception. Callers decide
whether "nothing found" is an authentication failure.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote, urlsplit

from teamsmcp.core.auth.jwt_utils import (
    claims_expiry,
    decode_claims,
    string_claim,
    token_expiry,
)
from teamsmcp.core.auth.matchers import (
    APP_ORIGIN_MARKERS,
    AUTH_TOKEN_COOKIE,
    AUTH_TOKEN_PREFIX,
    CHAT_AGGREGATOR_RESOURCE,
    GRAPH_RESOURCE,
    KNOWN_APP_ORIGINS,
    SKYPE_TOKEN_COOKIE,
    SPACES_RESOURCE,
    is_app_cookie_domain,
    is_csa_entry_name,
    is_region_discovery_key,
    is_search_target,
    is_user_details_key,
    looks_like_jwt,
    normalize_skype_id,
    targets_resource,
    user_mri_from_oid,
)
from teamsmcp.models.session import (
    AccessTokenRecord,
    OriginState,
    RefreshTokenRecord,
    SessionState,
    StorageEntry,
    parse_credential,
)
from teamsmcp.models.tokens import (
    ChatTokenInfo,
    LicenseDetails,
    MessageAuth,
    RegionConfig,
    TokenInfo,
    TokenStatus,
    UserDetails,
    UserProfile,
)

DEFAULT_TEAMS_BASE_URL = "https://teams.microsoft.com"

_CHAT_SERVICE_RE = re.compile(r"/api/chatsvc/([a-z]+)$")
_PARTITIONED_MT_RE = re.compile(r"/api/mt/part/([a-z]+)-(\d+)$")
_SIMPLE_MT_RE = re.compile(r"/api/mt/([a-z]+)$")


@dataclass(frozen=True)
class RefreshCredentials:
    """What the direct refresh engine needs from the identity cache."""

    refresh_token: str
    refresh_token_key: str
    client_id: str
    tenant_id: str
    home_account_id: str
    environment: str


def _resolve_now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(UTC)


# ---------------------------------------------------------------------------
# Origins and entries
# ---------------------------------------------------------------------------


def find_app_origin(state: SessionState | None) -> OriginState | None:
    """Locate the app's origin: known clouds first, then any Teams-like origin."""
    if state is None:
        return None
    by_origin = {origin.origin: origin for origin in state.origins}
    for known in KNOWN_APP_ORIGINS:
        if known in by_origin:
            return by_origin[known]
    for origin in state.origins:
        if any(marker in origin.origin for marker in APP_ORIGIN_MARKERS):
            return origin
    return None


def _app_entries(state: SessionState | None) -> list[StorageEntry]:
    origin = find_app_origin(state)
    return origin.local_storage if origin is not None else []


def iter_access_tokens(
    entries: Iterable[StorageEntry],
) -> Iterator[tuple[StorageEntry, AccessTokenRecord]]:
    """Yield every entry that decodes as an access-token record."""
    for entry in entries:
        record = parse_credential(entry.value)
        if isinstance(record, AccessTokenRecord):
            yield entry, record


def _latest_token(
    entries: Iterable[StorageEntry],
    matches: Callable[[AccessTokenRecord], bool],
    now: datetime,
) -> TokenInfo | None:
    """Pick the unexpired matching token with the greatest ``exp``."""
    best: TokenInfo | None = None
    for _, record in iter_access_tokens(entries):
        if not matches(record) or not looks_like_jwt(record.secret):
            continue
        expiry = token_expiry(record.secret)
        if expiry is None or expiry <= now:
            continue
        if best is None or expiry > best.expiry:
            best = TokenInfo(token=record.secret, expiry=expiry)
    return best


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


def extract_search_token(
    state: SessionState | None, now: datetime | None = None
) -> TokenInfo | None:
    """Search/people token (Substrate)."""
    return _latest_token(
        _app_entries(state), lambda record: is_search_target(record.target), _resolve_now(now)
    )


def last_search_token_expiry(state: SessionState | None) -> datetime | None:
    """Expiry of the newest search token, whether or not it has expired."""
    best = _latest_token(
        _app_entries(state),
        lambda record: is_search_target(record.target),
        datetime.min.replace(tzinfo=UTC),
    )
    return best.expiry if best else None


def extract_spaces_token(
    state: SessionState | None, now: datetime | None = None
) -> TokenInfo | None:
    """Skype Spaces token used by the calendar endpoints and cookie derivation."""
    return _latest_token(
        _app_entries(state),
        lambda record: targets_resource(record.target, SPACES_RESOURCE),
        _resolve_now(now),
    )


def extract_graph_token(
    state: SessionState | None, now: datetime | None = None
) -> TokenInfo | None:
    return _latest_token(
        _app_entries(state),
        lambda record: targets_resource(record.target, GRAPH_RESOURCE),
        _resolve_now(now),
    )


def extract_chat_token(
    state: SessionState | None, now: datetime | None = None
) -> ChatTokenInfo | None:
    """Chat token: the aggregator token if usable, else the Spaces token.

    The user MRI comes from the first token carrying an ``oid`` claim, falling
    back to the search token.
    """
    now = _resolve_now(now)
    entries = _app_entries(state)

    user_mri: str | None = None
    for _, record in iter_access_tokens(entries):
        claims = decode_claims(record.secret)
        if claims_expiry(claims) is None:
            continue
        oid = string_claim(claims, "oid")
        if oid:
            user_mri = user_mri_from_oid(oid)
            break
    if user_mri is None:
        user_mri = _user_mri_from_search_token(state, now)

    best = _latest_token(
        entries,
        lambda record: targets_resource(record.target, CHAT_AGGREGATOR_RESOURCE),
        now,
    ) or _latest_token(
        entries,
        lambda record: targets_resource(record.target, SPACES_RESOURCE),
        now,
    )
    if best is None or user_mri is None:
        return None
    return ChatTokenInfo(token=best.token, expiry=best.expiry, user_mri=user_mri)


def _user_mri_from_search_token(state: SessionState | None, now: datetime) -> str | None:
    search = extract_search_token(state, now)
    if search is None:
        return None
    oid = string_claim(decode_claims(search.token), "oid")
    return user_mri_from_oid(oid) if oid else None


def extract_csa_token(
    state: SessionState | None, now: datetime | None = None
) -> str | None:
    """Aggregation-service token, searched across every origin."""
    if state is None:
        return None
    entries = [
        entry
        for origin in state.origins
        for entry in origin.local_storage
        if is_csa_entry_name(entry.name)
    ]
    best = _latest_token(entries, lambda record: True, _resolve_now(now))
    return best.token if best else None


# ---------------------------------------------------------------------------
# Messaging cookies
# ---------------------------------------------------------------------------


def _app_cookie(state: SessionState, name: str) -> str | None:
    for cookie in state.cookies:
        if cookie.name == name and is_app_cookie_domain(cookie.domain) and cookie.value:
            return cookie.value
    return None


def decode_auth_token_cookie(raw: str) -> str:
    """URL-decode the ``authtoken`` cookie and strip its ``Bearer=`` prefix."""
    decoded = unquote(raw)
    if decoded.startswith(AUTH_TOKEN_PREFIX):
        decoded = decoded[len(AUTH_TOKEN_PREFIX):]
    return decoded


def extract_message_auth(state: SessionState | None) -> MessageAuth | None:
    """Messaging credentials from the ``skypetoken_asm`` and ``authtoken`` cookies."""
    if state is None:
        return None
    skype_token = _app_cookie(state, SKYPE_TOKEN_COOKIE)
    raw_auth_token = _app_cookie(state, AUTH_TOKEN_COOKIE)
    if not skype_token or not raw_auth_token:
        return None

    auth_token = decode_auth_token_cookie(raw_auth_token)

    user_mri: str | None = None
    skype_id = string_claim(decode_claims(skype_token), "skypeid")
    if skype_id:
        user_mri = normalize_skype_id(skype_id)
    else:
        oid = string_claim(decode_claims(auth_token), "oid")
        user_mri = user_mri_from_oid(oid) if oid else None
    if not user_mri:
        return None
    return MessageAuth(skype_token=skype_token, auth_token=auth_token, user_mri=user_mri)


# ---------------------------------------------------------------------------
# Discovery payloads
# ---------------------------------------------------------------------------


def _discovery_item(entry: StorageEntry) -> dict[str, Any] | None:
    payload = entry.json_value()
    if not isinstance(payload, dict):
        return None
    item = payload.get("item")
    return item if isinstance(item, dict) else None


def _base_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return DEFAULT_TEAMS_BASE_URL
    return f"{parts.scheme}://{parts.netloc}"


def extract_region_config(state: SessionState | None) -> RegionConfig | None:
    """Region and endpoint URLs from the region discovery payload.

    Partitioned tenants publish ``.../api/mt/part/amer-02`` as their middle
    tier; non-partitioned tenants publish ``.../api/mt/emea``. The bare region
    always comes from the chat-service URL.
    """
    for entry in _app_entries(state):
        if not is_region_discovery_key(entry.name):
            continue
        item = _discovery_item(entry)
        if item is None:
            continue
        chat_service_url = item.get("chatServiceAfd")
        if not isinstance(chat_service_url, str) or not chat_service_url:
            continue
        chat_match = _CHAT_SERVICE_RE.search(chat_service_url)
        if chat_match is None:
            continue
        region = chat_match.group(1)
        teams_base_url = _base_url(chat_service_url)

        middle_tier_url = item.get("middleTier")
        middle_tier_url = middle_tier_url if isinstance(middle_tier_url, str) else ""
        partition = ""
        region_partition: str | None = None
        has_partition = False
        if middle_tier_url:
            partitioned = _PARTITIONED_MT_RE.search(middle_tier_url)
            if partitioned:
                has_partition = True
                partition = partitioned.group(2)
                region_partition = f"{partitioned.group(1)}-{partition}"
            else:
                simple = _SIMPLE_MT_RE.search(middle_tier_url)
                if simple:
                    region_partition = simple.group(1)

        csa_service_url = item.get("chatSvcAggAfd")
        if not isinstance(csa_service_url, str) or not csa_service_url:
            csa_service_url = f"{teams_base_url}/api/csa/{region}"

        return RegionConfig(
            region=region,
            partition=partition,
            region_partition=region_partition or region,
            has_partition=has_partition,
            middle_tier_url=middle_tier_url,
            chat_service_url=chat_service_url,
            csa_service_url=csa_service_url,
            teams_base_url=teams_base_url,
        )
    return None


def extract_user_details(state: SessionState | None) -> UserDetails | None:
    for entry in _app_entries(state):
        if not is_user_details_key(entry.name):
            continue
        item = _discovery_item(entry)
        if item is None or not item.get("id") or not item.get("region"):
            continue
        licenses = item.get("licenseDetails")
        licenses = licenses if isinstance(licenses, dict) else {}
        return UserDetails(
            mri=str(item["id"]),
            region=str(item["region"]),
            user_partition=str(item.get("userPartition") or ""),
            tenant_partition=str(item.get("partition") or ""),
            licenses=LicenseDetails(
                is_freemium=licenses.get("isFreemium") is True,
                is_trial=licenses.get("isTrial") is True,
                is_teams_enabled=licenses.get("isTeamsEnabled") is True,
                is_copilot=licenses.get("isCopilot") is True,
                is_transcript_enabled=licenses.get("isTranscriptEnabled") is True,
                is_frontline=licenses.get("isFrontline") is True,
            ),
        )
    return None


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def profile_from_claims(claims: dict[str, Any]) -> UserProfile | None:
    """Build a profile from token claims; needs both ``oid`` and ``name``."""
    oid = string_claim(claims, "oid")
    name = string_claim(claims, "name")
    if not oid or not name:
        return None

    email = (
        string_claim(claims, "upn")
        or string_claim(claims, "preferred_username")
        or string_claim(claims, "email")
        or ""
    )
    given_name = string_claim(claims, "given_name")
    surname = string_claim(claims, "family_name")
    if not given_name:
        if "," in name:
            parts = [part.strip() for part in name.split(",")]
            if len(parts) == 2:
                surname, given_name = parts
        elif " " in name:
            first, _, rest = name.partition(" ")
            given_name, surname = first, rest

    return UserProfile(
        id=oid,
        mri=user_mri_from_oid(oid),
        email=email,
        display_name=name,
        tenant_id=string_claim(claims, "tid"),
        given_name=given_name,
        surname=surname,
    )


def get_user_profile(state: SessionState | None) -> UserProfile | None:
    for entry in _app_entries(state):
        record = parse_credential(entry.value)
        if record is None:
            continue
        claims = decode_claims(record.secret)
        if claims:
            profile = profile_from_claims(claims)
            if profile is not None:
                return profile
    return None


def get_user_display_name(
    state: SessionState | None, now: datetime | None = None
) -> str | None:
    """Display name from storage entries, else from the chat token's ``name`` claim."""
    entries = _app_entries(state)
    if not entries:
        return None
    for entry in entries:
        if "displayName" not in entry.value and "givenName" not in entry.value:
            continue
        payload = entry.json_value()
        if not isinstance(payload, dict):
            continue
        if isinstance(payload.get("displayName"), str) and payload["displayName"]:
            return payload["displayName"]
        nested = payload.get("name")
        if isinstance(nested, dict) and isinstance(nested.get("displayName"), str):
            return nested["displayName"]

    chat = extract_chat_token(state, now)
    if chat is not None:
        return string_claim(decode_claims(chat.token), "name")
    return None


def extract_refresh_credentials(state: SessionState | None) -> RefreshCredentials | None:
    """The refresh-token record plus the tenant id taken from an access token's realm."""
    refresh: tuple[StorageEntry, RefreshTokenRecord] | None = None
    tenant_id: str | None = None
    for entry in _app_entries(state):
        record = parse_credential(entry.value)
        if isinstance(record, RefreshTokenRecord):
            if refresh is None and record.secret and record.client_id:
                refresh = (entry, record)
        elif isinstance(record, AccessTokenRecord):
            if tenant_id is None and record.realm:
                tenant_id = record.realm
    if refresh is None or tenant_id is None:
        return None
    entry, record = refresh
    return RefreshCredentials(
        refresh_token=record.secret,
        refresh_token_key=entry.name,
        client_id=record.client_id,
        tenant_id=tenant_id,
        home_account_id=record.home_account_id,
        environment=record.environment,
    )


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def _status_for(expiry: datetime | None, now: datetime, *, present: bool) -> TokenStatus:
    if expiry is None:
        return TokenStatus(has_token=present)
    remaining_s = (expiry - now).total_seconds()
    return TokenStatus(
        has_token=remaining_s > 0,
        expires_at=expiry.isoformat(),
        minutes_remaining=max(0, round(remaining_s / 60)),
    )


def search_token_status(
    state: SessionState | None, now: datetime | None = None
) -> TokenStatus:
    now = _resolve_now(now)
    token = extract_search_token(state, now)
    if token is None:
        return TokenStatus(has_token=False)
    return _status_for(token.expiry, now, present=True)


def message_auth_status(
    state: SessionState | None, now: datetime | None = None
) -> TokenStatus:
    """Messaging cookie status; a cookie without a readable expiry counts as valid."""
    if state is None:
        return TokenStatus(has_token=False)
    skype_token = _app_cookie(state, SKYPE_TOKEN_COOKIE)
    if not skype_token:
        return TokenStatus(has_token=False)
    return _status_for(token_expiry(skype_token), _resolve_now(now), present=True)


def are_tokens_expired(state: SessionState | None, now: datetime | None = None) -> bool:
    return extract_search_token(state, now) is None

"""Storage-key and record matchers shared by the read and write paths.

Every naming convention the identity library and the app use in browser
storage is defined here once. The extractor reads with these predicates and
the refresh engines write with these builders, so entries written by either
refresh path are found by the other.
"""

from __future__ import annotations

from dataclasses import dataclass

# Resource hosts
SEARCH_RESOURCE = "substrate.office.com"
SEARCH_SCOPE_MARKER = "SubstrateSearch"
SEARCH_DEFAULT_TARGET = "https://substrate.office.com/SubstrateSearch-Internal.ReadWrite"
SPACES_RESOURCE = "api.spaces.skype.com"
CHAT_AGGREGATOR_RESOURCE = "chatsvcagg.teams.microsoft.com"
GRAPH_RESOURCE = "graph.microsoft.com"

# Discovery payloads (substring match on the entry name)
REGION_DISCOVERY_KEY = "DISCOVER-REGION-GTM"
USER_DETAILS_KEY = "DISCOVER-USER-DETAILS"
TEMP_ENTRY_PREFIX = "tmp."

# Cookies
SKYPE_TOKEN_COOKIE = "skypetoken_asm"
AUTH_TOKEN_COOKIE = "authtoken"
APP_COOKIE_DOMAIN_MARKER = "teams.microsoft.com"
SKYPE_TOKEN_COOKIE_DOMAINS = (".asyncgw.teams.microsoft.com", ".asm.skype.com")
AUTH_TOKEN_COOKIE_DOMAIN = "teams.microsoft.com"
AUTH_TOKEN_PREFIX = "Bearer="
ENCODED_AUTH_TOKEN_PREFIX = "Bearer%3D"

# Messaging user identifiers
MRI_TYPE_PREFIX = "8:"
ORGID_PREFIX = "orgid:"
MRI_ORGID_PREFIX = f"{MRI_TYPE_PREFIX}{ORGID_PREFIX}"

# Commercial, GCC-High, DoD, then the new app URL.
KNOWN_APP_ORIGINS = (
    "https://teams.microsoft.com",
    "https://teams.microsoft.us",
    "https://dod.teams.microsoft.us",
    "https://teams.cloud.microsoft",
)
APP_ORIGIN_MARKERS = ("teams.microsoft", "teams.cloud")
APP_URL_PATTERNS = (
    "teams.microsoft.com",
    "teams.microsoft.us",
    "dod.teams.microsoft.us",
    "teams.cloud.microsoft",
)
LOGIN_URL_PATTERNS = (
    "login.microsoftonline.com",
    "login.live.com",
    "login.microsoft.com",
)


@dataclass(frozen=True)
class ScopeGroup:
    """One downstream scope refreshed by the direct engine."""

    resource: str
    derives_cookies: bool = False
    # Required in the record target when the resource host alone is ambiguous
    target_marker: str | None = None
    default_target: str | None = None

    @property
    def scopes(self) -> str:
        return f"https://{self.resource}/.default offline_access"

    @property
    def record_target(self) -> str:
        """Target written on a new record when the grant response names none."""
        return self.default_target or f"https://{self.resource}/.default"

    def matches(self, target: str | None) -> bool:
        if not targets_resource(target, self.resource):
            return False
        return self.target_marker is None or self.target_marker in (target or "")


# Order matters: a refresh token rotated by one grant is used for the next.
REFRESH_SCOPE_GROUPS = (
    ScopeGroup(
        SEARCH_RESOURCE,
        target_marker=SEARCH_SCOPE_MARKER,
        default_target=SEARCH_DEFAULT_TARGET,
    ),
    ScopeGroup(SPACES_RESOURCE, derives_cookies=True),
    ScopeGroup(CHAT_AGGREGATOR_RESOURCE),
    ScopeGroup(GRAPH_RESOURCE),
)


def looks_like_jwt(value: object) -> bool:
    """Structural check only; no validation."""
    return isinstance(value, str) and value.startswith("ey")


def targets_resource(target: str | None, resource: str) -> bool:
    return target is not None and resource in target


def is_search_target(target: str | None) -> bool:
    # Matches both .../search/SubstrateSearch and SubstrateSearch-Internal.ReadWrite
    return targets_resource(target, SEARCH_RESOURCE) and SEARCH_SCOPE_MARKER in (target or "")


def is_region_discovery_key(name: str) -> bool:
    return REGION_DISCOVERY_KEY in name


def is_user_details_key(name: str) -> bool:
    return USER_DETAILS_KEY in name


def is_csa_entry_name(name: str) -> bool:
    return not name.startswith(TEMP_ENTRY_PREFIX) and CHAT_AGGREGATOR_RESOURCE in name


def is_app_cookie_domain(domain: str | None) -> bool:
    return APP_COOKIE_DOMAIN_MARKER in (domain or "")


def is_login_url(url: str) -> bool:
    return any(pattern in url for pattern in LOGIN_URL_PATTERNS)


def is_app_url(url: str) -> bool:
    return any(pattern in url for pattern in APP_URL_PATTERNS)


def access_token_key(
    home_account_id: str,
    environment: str,
    client_id: str,
    tenant_id: str,
    scope: str,
) -> str:
    """Build the identity library's access-token storage key."""
    return (
        f"{home_account_id}-{environment}-accesstoken-{client_id}-{tenant_id}-{scope.lower()}"
    )


def user_mri_from_oid(oid: str) -> str:
    return f"{MRI_ORGID_PREFIX}{oid}"


def normalize_skype_id(skype_id: str) -> str:
    """Turn a ``skypeid`` claim into a full ``8:orgid:<id>`` identifier."""
    if skype_id.startswith(MRI_TYPE_PREFIX):
        return skype_id
    if skype_id.startswith(ORGID_PREFIX):
        return f"{MRI_TYPE_PREFIX}{skype_id}"
    return skype_id


def is_search_response_url(url: str) -> bool:
    """A network response from the search service, seen after a search probe."""
    return SEARCH_RESOURCE in url

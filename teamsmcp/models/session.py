"""Session-state models in Playwright ``storage_state`` shape.

Field names are snake_case in Python and camelCase on disk, so a state
captured by ``BrowserContext.storage_state()`` round-trips unchanged.
Unknown keys are kept on every model; the identity library that wrote the
cache records may add fields we never read.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

_CAMEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="allow",
)


class Cookie(BaseModel):
    """A browser cookie."""

    model_config = _CAMEL_CONFIG

    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: float = -1
    http_only: bool = False
    secure: bool = False
    same_site: Literal["Strict", "Lax", "None"] = "Lax"


class StorageEntry(BaseModel):
    """One local-storage entry: opaque name/value strings."""

    model_config = ConfigDict(extra="allow")

    name: str
    value: str

    def json_value(self) -> Any | None:
        """Decode the value as JSON, or None when it is not JSON."""
        try:
            return json.loads(self.value)
        except (TypeError, ValueError):
            return None


class OriginState(BaseModel):
    """Local storage captured for a single web origin."""

    model_config = _CAMEL_CONFIG

    origin: str
    local_storage: list[StorageEntry] = Field(default_factory=list)

    def find_entry(self, name: str) -> StorageEntry | None:
        for entry in self.local_storage:
            if entry.name == name:
                return entry
        return None

    def set_entry(self, name: str, value: str) -> None:
        """Update an entry in place, or append it when the key is new."""
        existing = self.find_entry(name)
        if existing is not None:
            existing.value = value
        else:
            self.local_storage.append(StorageEntry(name=name, value=value))


class SessionState(BaseModel):
    """The durable session snapshot: cookies plus per-origin storage."""

    model_config = _CAMEL_CONFIG

    cookies: list[Cookie] = Field(default_factory=list)
    origins: list[OriginState] = Field(default_factory=list)

    @classmethod
    def from_storage_state(cls, payload: dict[str, Any]) -> SessionState:
        return cls.model_validate(payload)

    def to_storage_state(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def upsert_cookie(self, cookie: Cookie) -> None:
        """Replace the cookie with the same name and domain, or append it."""
        for index, existing in enumerate(self.cookies):
            if existing.name == cookie.name and existing.domain == cookie.domain:
                self.cookies[index] = cookie
                return
        self.cookies.append(cookie)


def _coerce_timestamp(value: Any) -> Any:
    # The identity library writes epoch timestamps as decimal strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return str(int(value))
    return value


class _CredentialRecord(BaseModel):
    model_config = _CAMEL_CONFIG

    home_account_id: str = ""
    environment: str = ""
    client_id: str = ""
    secret: str

    def to_json(self) -> str:
        return json.dumps(
            self.model_dump(mode="json", by_alias=True, exclude_unset=True),
            separators=(",", ":"),
        )


class RefreshTokenRecord(_CredentialRecord):
    """The single durable secret usable without interactive login."""

    credential_type: Literal["RefreshToken"]
    expires_on: str | None = None
    last_updated_at: str | None = None

    @field_validator("expires_on", "last_updated_at", mode="before")
    @classmethod
    def coerce_timestamps(cls, value: Any) -> Any:
        return _coerce_timestamp(value)


class AccessTokenRecord(_CredentialRecord):
    """A cached access token for one scope set."""

    credential_type: Literal["AccessToken"]
    realm: str = ""
    target: str = ""
    token_type: str = "Bearer"
    expires_on: str = ""
    extended_expires_on: str = ""
    cached_at: str = ""

    @field_validator("expires_on", "extended_expires_on", "cached_at", mode="before")
    @classmethod
    def coerce_timestamps(cls, value: Any) -> Any:
        return _coerce_timestamp(value)


CredentialRecord = Annotated[
    RefreshTokenRecord | AccessTokenRecord,
    Field(discriminator="credential_type"),
]

_CREDENTIAL_ADAPTER: TypeAdapter[RefreshTokenRecord | AccessTokenRecord] = TypeAdapter(
    CredentialRecord
)


def parse_credential(value: Any) -> RefreshTokenRecord | AccessTokenRecord | None:
    """Decode a storage value as a credential record; None when it is not one."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict):
        return None
    try:
        return _CREDENTIAL_ADAPTER.validate_python(value)
    except ValidationError:
        return None

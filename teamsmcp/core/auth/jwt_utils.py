"""Bearer-token claim helpers.

Tokens are decoded without signature verification: verifying them is the
identity provider's job. Only ``exp`` and identity claims are read here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import jwt

from teamsmcp.core.auth.matchers import looks_like_jwt


def decode_claims(token: str | None) -> dict[str, Any] | None:
    """Return the token payload, or None when it cannot be decoded."""
    if not looks_like_jwt(token):
        return None
    try:
        payload = jwt.decode(
            token,  # type: ignore[arg-type]
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.PyJWTError:
        return None
    return payload if isinstance(payload, dict) else None


def claims_expiry(claims: dict[str, Any] | None) -> datetime | None:
    """Read a numeric ``exp`` claim as an aware UTC datetime."""
    if not claims:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def token_expiry(token: str | None) -> datetime | None:
    return claims_expiry(decode_claims(token))


def string_claim(claims: dict[str, Any] | None, name: str) -> str | None:
    if not claims:
        return None
    value = claims.get(name)
    return value if isinstance(value, str) and value else None

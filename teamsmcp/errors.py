"""Error taxonomy for session and token operations.

Every failure that reaches an MCP caller carries a stable, machine-readable
code so an automated agent can tell "retry later" apart from "log in now".
"""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable error-code vocabulary."""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    API_ERROR = "API_ERROR"
    BROWSER_ERROR = "BROWSER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    REFRESH_IN_PROGRESS = "REFRESH_IN_PROGRESS"
    UNKNOWN = "UNKNOWN"


AUTH_ERROR_CODES = frozenset({ErrorCode.AUTH_REQUIRED, ErrorCode.AUTH_EXPIRED})

_RETRYABLE_BY_DEFAULT = frozenset(
    {
        ErrorCode.RATE_LIMITED,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.API_ERROR,
        ErrorCode.REFRESH_IN_PROGRESS,
    }
)

_DEFAULT_SUGGESTIONS: dict[ErrorCode, list[str]] = {
    ErrorCode.AUTH_REQUIRED: [
        "IMMEDIATELY call teams_login to authenticate",
        "Do NOT skip this step or tell the user Teams is unavailable",
        "After login succeeds, retry the original request",
    ],
    ErrorCode.AUTH_EXPIRED: [
        "IMMEDIATELY call teams_login to refresh authentication",
        "Do NOT skip this step or tell the user Teams is unavailable",
        "After login succeeds, retry the original request",
    ],
    ErrorCode.RATE_LIMITED: ["Wait before retrying", "Reduce request frequency"],
    ErrorCode.NOT_FOUND: ["Check the ID/query is correct", "Verify the resource exists"],
    ErrorCode.INVALID_INPUT: ["Check the input parameters", "Review the tool documentation"],
    ErrorCode.API_ERROR: ["Retry the request", "Check teams_status for system health"],
    ErrorCode.BROWSER_ERROR: ["Call teams_login to restart the browser session"],
    ErrorCode.NETWORK_ERROR: ["Check network connectivity", "Retry the request"],
    ErrorCode.TIMEOUT: ["Retry the request"],
    ErrorCode.REFRESH_IN_PROGRESS: ["Wait a moment and retry the request"],
    ErrorCode.UNKNOWN: ["Check teams_status", "Try teams_login if authentication issues persist"],
}


class SessionError(Exception):
    """Base error carrying a stable code and retry guidance."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        retry_after_ms: int | None = None,
        suggestions: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.retryable = retryable if retryable is not None else self.code in _RETRYABLE_BY_DEFAULT
        self.retry_after_ms = retry_after_ms
        self.suggestions = (
            list(suggestions) if suggestions is not None else list(_DEFAULT_SUGGESTIONS[self.code])
        )

    @property
    def is_auth_error(self) -> bool:
        return self.code in AUTH_ERROR_CODES

    def to_payload(self) -> dict[str, Any]:
        """Render the machine-readable error body returned to MCP callers."""
        payload: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "errorCode": self.code.value,
            "retryable": self.retryable,
            "suggestions": self.suggestions,
        }
        if self.retry_after_ms is not None:
            payload["retryAfterMs"] = self.retry_after_ms
        return payload


class AuthRequiredError(SessionError):
    """No usable credential is present."""

    code = ErrorCode.AUTH_REQUIRED


class InteractiveLoginRequiredError(AuthRequiredError):
    """Silent re-authentication is impossible; the user must log in."""


class AuthExpiredError(SessionError):
    """A credential exists but was rejected and cannot be recovered silently."""

    code = ErrorCode.AUTH_EXPIRED


class RefreshInProgressError(SessionError):
    """Another refresh already holds the browser profile."""

    code = ErrorCode.REFRESH_IN_PROGRESS


class NetworkError(SessionError):
    code = ErrorCode.NETWORK_ERROR


class RefreshTimeoutError(SessionError):
    code = ErrorCode.TIMEOUT


class RateLimitedError(SessionError):
    code = ErrorCode.RATE_LIMITED


class BrowserError(SessionError):
    code = ErrorCode.BROWSER_ERROR


class UnknownError(SessionError):
    code = ErrorCode.UNKNOWN


_ERRORS_BY_CODE: dict[ErrorCode, type[SessionError]] = {
    ErrorCode.AUTH_REQUIRED: AuthRequiredError,
    ErrorCode.AUTH_EXPIRED: AuthExpiredError,
    ErrorCode.RATE_LIMITED: RateLimitedError,
    ErrorCode.NETWORK_ERROR: NetworkError,
    ErrorCode.TIMEOUT: RefreshTimeoutError,
    ErrorCode.REFRESH_IN_PROGRESS: RefreshInProgressError,
    ErrorCode.BROWSER_ERROR: BrowserError,
}


def create_error(code: ErrorCode, message: str, **kwargs: Any) -> SessionError:
    """Build the most specific SessionError subclass for *code*."""
    error_cls = _ERRORS_BY_CODE.get(code, SessionError)
    if error_cls is SessionError:
        return SessionError(message, code=code, **kwargs)
    return error_cls(message, **kwargs)


def classify_http_status(status: int, message: str | None = None) -> ErrorCode:
    """Map an HTTP status (and optional error text) onto an error code."""
    if status == 401:
        return ErrorCode.AUTH_EXPIRED
    if status == 403:
        return ErrorCode.AUTH_REQUIRED
    if status == 404:
        return ErrorCode.NOT_FOUND
    if status == 429:
        return ErrorCode.RATE_LIMITED
    if status in (400, 422):
        return ErrorCode.INVALID_INPUT
    if status >= 500:
        return ErrorCode.API_ERROR
    lowered = (message or "").lower()
    if "timeout" in lowered:
        return ErrorCode.TIMEOUT
    if "network" in lowered or "econnreset" in lowered:
        return ErrorCode.NETWORK_ERROR
    return ErrorCode.UNKNOWN


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    """Convert a ``Retry-After`` header (seconds or HTTP date) into milliseconds."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max(0, int((when - reference).total_seconds() * 1000))

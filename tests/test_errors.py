"""Tests for the session error taxonomy."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from teamsmcp.errors import (
    AuthExpiredError,
    AuthRequiredError,
    ErrorCode,
    InteractiveLoginRequiredError,
    RateLimitedError,
    RefreshInProgressError,
    SessionError,
    UnknownError,
    classify_http_status,
    create_error,
    parse_retry_after,
)


def test_auth_errors_are_flagged() -> None:
    assert AuthRequiredError("x").is_auth_error
    assert AuthExpiredError("x").is_auth_error
    assert InteractiveLoginRequiredError("x").is_auth_error
    assert not RefreshInProgressError("x").is_auth_error
    assert not UnknownError("x").is_auth_error


def test_interactive_login_required_reports_auth_required() -> None:
    error = InteractiveLoginRequiredError("Headless SSO failed")
    assert isinstance(error, AuthRequiredError)
    assert error.code == ErrorCode.AUTH_REQUIRED


def test_retryable_defaults_follow_code() -> None:
    assert RefreshInProgressError("busy").retryable is True
    assert RateLimitedError("slow down").retryable is True
    assert AuthExpiredError("expired").retryable is False
    assert UnknownError("boom").retryable is False
    assert UnknownError("boom", retryable=True).retryable is True


def test_payload_shape() -> None:
    error = RateLimitedError("Too many requests", retry_after_ms=5000)
    payload = error.to_payload()
    assert payload["success"] is False
    assert payload["error"] == "Too many requests"
    assert payload["errorCode"] == "RATE_LIMITED"
    assert payload["retryable"] is True
    assert payload["retryAfterMs"] == 5000
    assert payload["suggestions"]


def test_payload_omits_missing_retry_after() -> None:
    assert "retryAfterMs" not in AuthRequiredError("login").to_payload()


def test_custom_suggestions_replace_defaults() -> None:
    error = AuthRequiredError("login", suggestions=["Call teams_login"])
    assert error.suggestions == ["Call teams_login"]


def test_create_error_picks_subclass() -> None:
    assert isinstance(create_error(ErrorCode.AUTH_EXPIRED, "x"), AuthExpiredError)
    generic = create_error(ErrorCode.NOT_FOUND, "missing")
    assert type(generic) is SessionError
    assert generic.code == ErrorCode.NOT_FOUND


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, ErrorCode.AUTH_EXPIRED),
        (403, ErrorCode.AUTH_REQUIRED),
        (404, ErrorCode.NOT_FOUND),
        (429, ErrorCode.RATE_LIMITED),
        (400, ErrorCode.INVALID_INPUT),
        (503, ErrorCode.API_ERROR),
    ],
)
def test_classify_http_status(status: int, expected: ErrorCode) -> None:
    assert classify_http_status(status) == expected


def test_classify_uses_message_for_unmapped_status() -> None:
    assert classify_http_status(0, "socket timeout") == ErrorCode.TIMEOUT
    assert classify_http_status(0, "ECONNRESET") == ErrorCode.NETWORK_ERROR
    assert classify_http_status(302) == ErrorCode.UNKNOWN


def test_parse_retry_after_seconds_and_date() -> None:
    assert parse_retry_after("7") == 7000
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)
    assert parse_retry_after("Wed, 01 Jan 2025 12:00:30 GMT", now=now) == 30000

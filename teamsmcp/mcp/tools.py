"""Session tools exposed over MCP.

Handlers return a plain payload dict on success and raise SessionError on
failure; the server turns both into tool results and owns the retry policy.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from teamsmcp.core.auth.orchestrator import RefreshOrchestrator
from teamsmcp.errors import AuthRequiredError, ErrorCode, RefreshInProgressError, SessionError

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Mutable server state shared by tool handlers."""

    orchestrator: RefreshOrchestrator
    initialised: bool = False


ToolHandler = Callable[[ToolContext, dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    handler: ToolHandler
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_mcp_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
        )


class LoginInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    force_new: bool = Field(default=False, alias="forceNew", strict=True)


def _parse_login_input(arguments: dict[str, Any]) -> LoginInput:
    try:
        return LoginInput.model_validate(arguments)
    except ValidationError as exc:
        raise SessionError(
            f"Invalid input: {exc.errors()[0]['msg']}", code=ErrorCode.INVALID_INPUT
        ) from exc


async def handle_login(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    params = _parse_login_input(arguments)
    orchestrator = ctx.orchestrator

    if params.force_new:
        orchestrator.logout()
    else:
        search = orchestrator.status().search
        threshold = orchestrator.settings.refresh_threshold_minutes
        if (
            search.has_token
            and search.minutes_remaining is not None
            and search.minutes_remaining >= threshold
        ):
            ctx.initialised = True
            return {
                "message": (
                    f"Already authenticated. Token valid for "
                    f"{search.minutes_remaining} more minutes."
                ),
                "tokenStatus": {
                    "expiresAt": search.expires_at,
                    "minutesRemaining": search.minutes_remaining,
                },
            }

        # The profile keeps the provider's session cookies, so SSO may succeed
        # without a window even when no session file exists.
        try:
            await orchestrator.browser.login(headless=True)
        except RefreshInProgressError:
            raise
        except SessionError as exc:
            logger.info("Headless SSO failed, falling back to visible browser: %s", exc.message)
        else:
            ctx.initialised = True
            return {"message": "Login completed silently via SSO. Session has been saved."}

    await orchestrator.browser.login(force_new=params.force_new, headless=False)
    ctx.initialised = True
    return {"message": "Login completed successfully. Session has been saved."}


async def handle_status(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    status = ctx.orchestrator.status()
    return {
        "directApi": {
            "available": status.search.has_token,
            "expiresAt": status.search.expires_at,
            "minutesRemaining": status.search.minutes_remaining,
        },
        "messaging": {
            "available": status.messaging.has_token,
            "expiresAt": status.messaging.expires_at,
            "minutesRemaining": status.messaging.minutes_remaining,
        },
        "favorites": {"available": status.favorites_available},
        "session": {
            "exists": status.session_exists,
            "likelyExpired": status.session_likely_expired,
            "ageHours": status.session_age_hours,
        },
        "browser": {
            "running": ctx.orchestrator.browser.in_progress,
            "initialised": ctx.initialised,
        },
    }


async def handle_logout(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    removed = ctx.orchestrator.logout()
    ctx.initialised = False
    message = "Logged out. Session state cleared." if removed else "No saved session to clear."
    return {"message": message, "sessionCleared": removed}


async def handle_get_me(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    orchestrator = ctx.orchestrator
    profile = orchestrator.get_user_profile()
    if profile is None:
        raise AuthRequiredError("No valid session. Please use teams_login first.")
    payload: dict[str, Any] = {"profile": profile.to_payload()}
    details = orchestrator.get_user_details()
    if details is not None:
        payload["details"] = details.to_payload()
    return payload


async def handle_get_region(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    orchestrator = ctx.orchestrator
    auth = orchestrator.require_message_auth()
    api = orchestrator.get_api_config()
    config = orchestrator.get_region_config()
    return {
        "userMri": auth.user_mri,
        "region": api.region,
        "baseUrl": api.base_url,
        "tenantId": orchestrator.get_tenant_id(),
        "regionConfig": config.to_payload() if config else None,
    }


LOGIN_TOOL = ToolSpec(
    name="teams_login",
    description=(
        "Trigger manual login flow for Microsoft Teams. Use this if the session "
        "has expired or you need to switch accounts."
    ),
    handler=handle_login,
    input_schema={
        "type": "object",
        "properties": {
            "forceNew": {
                "type": "boolean",
                "description": "Force a new login even if a session exists (default: false)",
            },
        },
    },
)

STATUS_TOOL = ToolSpec(
    name="teams_status",
    description="Check the current authentication status and session state.",
    handler=handle_status,
)

LOGOUT_TOOL = ToolSpec(
    name="teams_logout",
    description="Forget the saved Teams session. The next Teams call will require teams_login.",
    handler=handle_logout,
)

GET_ME_TOOL = ToolSpec(
    name="teams_get_me",
    description=(
        "Get the current user's profile information including email, display name, "
        "and Teams ID. Useful for identifying the current user."
    ),
    handler=handle_get_me,
)

GET_REGION_TOOL = ToolSpec(
    name="teams_get_region",
    description=(
        "Get the region, partition and service base URLs Teams uses for the current "
        "tenant, plus the signed-in user's messaging identifier."
    ),
    handler=handle_get_region,
)

DEFAULT_TOOLS: tuple[ToolSpec, ...] = (
    LOGIN_TOOL,
    STATUS_TOOL,
    LOGOUT_TOOL,
    GET_ME_TOOL,
    GET_REGION_TOOL,
)

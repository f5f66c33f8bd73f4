"""MCP server exposing the session tools, with automatic re-authentication."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import mcp.server.stdio as mcp_stdio
from mcp import types
from mcp.server import NotificationOptions, Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.models import InitializationOptions
from pydantic import AnyUrl

from teamsmcp import __version__
from teamsmcp.config import Settings
from teamsmcp.core.auth.orchestrator import RefreshOrchestrator
from teamsmcp.errors import (
    AuthRequiredError,
    ErrorCode,
    InteractiveLoginRequiredError,
    RefreshInProgressError,
    SessionError,
    UnknownError,
)
from teamsmcp.mcp.tools import DEFAULT_TOOLS, ToolContext, ToolSpec

logger = logging.getLogger(__name__)

SERVER_NAME = "teamsmcp"

# Failing auth inside these must reach the caller unchanged.
AUTH_TOOL_NAMES = frozenset({"teams_login", "teams_status"})

AUTO_LOGIN_FAILED_MESSAGE = (
    "ACTION REQUIRED: Teams session has expired and automatic re-authentication failed. "
    "You MUST call the teams_login tool now to re-authenticate before using any other "
    "Teams tools. Do NOT skip this step or tell the user Teams is unavailable."
)
AUTO_LOGIN_FAILED_SUGGESTIONS = [
    "IMMEDIATELY call teams_login to re-authenticate",
    "After login succeeds, retry the original request",
    "Do NOT tell the user that Teams is unavailable; authentication just needs refreshing",
]

PROFILE_RESOURCE_URI = "teams://me/profile"
STATUS_RESOURCE_URI = "teams://status"


def format_success(data: dict[str, Any]) -> types.CallToolResult:
    payload = {"success": True, **data}
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=json.dumps(payload, indent=2))],
        isError=False,
    )


def format_error(error: SessionError) -> types.CallToolResult:
    return types.CallToolResult(
        content=[
            types.TextContent(type="text", text=json.dumps(error.to_payload(), indent=2))
        ],
        isError=True,
    )


class TeamsMCPServer:
    """MCP server over one RefreshOrchestrator."""

    def __init__(
        self,
        orchestrator: RefreshOrchestrator,
        tools: tuple[ToolSpec, ...] = DEFAULT_TOOLS,
    ) -> None:
        self.orchestrator = orchestrator
        self.context = ToolContext(orchestrator=orchestrator)
        self.tools: dict[str, ToolSpec] = {tool.name: tool for tool in tools}
        self.server = Server(SERVER_NAME)
        self._register_handlers()
        logger.info("Initialized Teams MCP server with %s tools", len(self.tools))

    def _register_handlers(self) -> None:
        @self.server.list_tools()  # type: ignore
        async def handle_list_tools() -> list[types.Tool]:
            return [tool.to_mcp_tool() for tool in self.tools.values()]

        @self.server.call_tool()  # type: ignore
        async def handle_call_tool(
            name: str,
            arguments: dict[str, Any] | None,
        ) -> Any:
            return await self.call_tool(name, arguments or {})

        @self.server.list_resources()  # type: ignore
        async def handle_list_resources() -> list[types.Resource]:
            return [
                types.Resource(
                    uri=AnyUrl(PROFILE_RESOURCE_URI),
                    name="Current User Profile",
                    description="The authenticated user's Teams profile including email and display name",
                    mimeType="application/json",
                ),
                types.Resource(
                    uri=AnyUrl(STATUS_RESOURCE_URI),
                    name="Authentication Status",
                    description="Current authentication status for all Teams APIs",
                    mimeType="application/json",
                ),
            ]

        @self.server.read_resource()  # type: ignore
        async def handle_read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
            return [
                ReadResourceContents(
                    content=json.dumps(self.read_resource(str(uri)), indent=2),
                    mime_type="application/json",
                )
            ]

    def read_resource(self, uri: str) -> dict[str, Any]:
        if uri == PROFILE_RESOURCE_URI:
            profile = self.orchestrator.get_user_profile()
            return profile.to_payload() if profile else {"error": "No valid session"}
        if uri == STATUS_RESOURCE_URI:
            return self.orchestrator.status().to_payload()
        raise ValueError(f"Unknown resource: {uri}")

    async def _invoke(self, tool: ToolSpec, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            return await tool.handler(self.context, arguments)
        except SessionError:
            raise
        except Exception as exc:
            logger.exception("Tool %s failed unexpectedly", tool.name)
            raise UnknownError(str(exc) or type(exc).__name__, retryable=False) from exc

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        """Run a tool, re-authenticating once if it fails for lack of auth."""
        tool = self.tools.get(name)
        if tool is None:
            return format_error(
                SessionError(f"Unknown tool: {name}", code=ErrorCode.INVALID_INPUT)
            )

        try:
            return format_success(await self._invoke(tool, arguments))
        except SessionError as exc:
            if not exc.is_auth_error or name in AUTH_TOOL_NAMES:
                return format_error(exc)
            first_error = exc

        logger.warning(
            "Tool %r returned %s, attempting automatic re-authentication",
            name,
            first_error.code,
        )
        self.orchestrator.handle_auth_failure(first_error)
        if not await self._attempt_auto_login():
            return format_error(
                AuthRequiredError(
                    AUTO_LOGIN_FAILED_MESSAGE,
                    suggestions=AUTO_LOGIN_FAILED_SUGGESTIONS,
                )
            )

        try:
            return format_success(await self._invoke(tool, arguments))
        except SessionError as exc:
            return format_error(exc)

    async def _attempt_auto_login(self) -> bool:
        """Direct refresh, then browser refresh, then a headless login.

        Returns True when a usable session was produced.
        """
        try:
            outcome = await self.orchestrator.refresh(allow_browser=True)
        except (InteractiveLoginRequiredError, RefreshInProgressError) as exc:
            logger.warning("Automatic re-authentication failed: %s", exc.message)
            return False
        except SessionError as exc:
            logger.info("Token refresh failed (%s), trying full headless login", exc.code)
        else:
            logger.info("Automatic re-authentication succeeded via %s refresh", outcome.method)
            self.context.initialised = True
            return True

        # Provider cookies may still be valid even when the saved tokens are not.
        self.orchestrator.cache.invalidate_tokens()
        try:
            await self.orchestrator.browser.login(headless=True)
        except SessionError as exc:
            logger.warning("Headless login failed: %s", exc.message)
            return False
        self.context.initialised = True
        return True

    async def run_stdio(self) -> None:
        async with mcp_stdio.stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name=SERVER_NAME,
                    server_version=__version__,
                    capabilities=self.server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )

    async def close(self) -> None:
        await self.orchestrator.close()


def run_mcp_server(settings: Settings | None = None) -> None:
    """Run the Teams MCP server on stdio."""
    server = TeamsMCPServer(RefreshOrchestrator.from_settings(settings or Settings()))

    async def main() -> None:
        try:
            await server.run_stdio()
        finally:
            await server.close()

    asyncio.run(main())

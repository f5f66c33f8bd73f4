"""Tests for the MCP server and its automatic re-authentication."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import mcp.types as mcp_types
import pytest

from teamsmcp.config import Settings
from teamsmcp.core.auth.cache import SessionCache
from teamsmcp.core.auth.orchestrator import RefreshOrchestrator
from teamsmcp.core.auth.session_store import SessionStore
from teamsmcp.errors import (
    AuthExpiredError,
    AuthRequiredError,
    InteractiveLoginRequiredError,
    RateLimitedError,
    RefreshInProgressError,
)
from teamsmcp.mcp.server import (
    AUTO_LOGIN_FAILED_MESSAGE,
    PROFILE_RESOURCE_URI,
    STATUS_RESOURCE_URI,
    TeamsMCPServer,
)
from teamsmcp.mcp.tools import DEFAULT_TOOLS, ToolContext, ToolSpec
from teamsmcp.models.tokens import DirectRefreshResult
from tests.helpers import NOW, OID, TENANT_ID, full_session


@pytest.fixture
def orchestrator(
    store: SessionStore, cache: SessionCache, settings: Settings
) -> RefreshOrchestrator:
    orchestrator = RefreshOrchestrator(
        store,
        cache,
        settings,
        direct=AsyncMock(),
        browser=AsyncMock(),
        clock=lambda: NOW,
    )
    orchestrator.direct.refresh.return_value = DirectRefreshResult(tokens_refreshed=4)
    orchestrator.browser.in_progress = False
    return orchestrator


class FlakyTool:
    """Fails with *error* until ``failures`` runs out."""

    def __init__(self, error: Exception, failures: int = 1) -> None:
        self.error = error
        self.failures = failures
        self.calls = 0

    async def __call__(self, ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return {"messages": ["hello"]}


def _server(orchestrator: RefreshOrchestrator, *extra: ToolSpec) -> TeamsMCPServer:
    return TeamsMCPServer(orchestrator, tools=(*DEFAULT_TOOLS, *extra))


async def _call(
    server: TeamsMCPServer, name: str, arguments: dict[str, Any] | None = None
) -> tuple[mcp_types.CallToolResult, dict[str, Any]]:
    handler = server.server.request_handlers[mcp_types.CallToolRequest]
    req = mcp_types.CallToolRequest(
        params=mcp_types.CallToolRequestParams(name=name, arguments=arguments or {})
    )
    result = await handler(req)
    payload = result.root
    assert isinstance(payload, mcp_types.CallToolResult)
    text = payload.content[0]
    assert isinstance(text, mcp_types.TextContent)
    return payload, json.loads(text.text)


@pytest.mark.asyncio
async def test_lists_session_tools(orchestrator: RefreshOrchestrator) -> None:
    server = _server(orchestrator)
    handler = server.server.request_handlers[mcp_types.ListToolsRequest]

    result = await handler(mcp_types.ListToolsRequest(params=None))

    payload = result.root
    assert isinstance(payload, mcp_types.ListToolsResult)
    assert [tool.name for tool in payload.tools] == [
        "teams_login",
        "teams_status",
        "teams_logout",
        "teams_get_me",
        "teams_get_region",
    ]
    login = payload.tools[0]
    assert login.inputSchema["properties"]["forceNew"]["type"] == "boolean"


@pytest.mark.asyncio
async def test_auth_failure_is_retried_after_silent_refresh(
    orchestrator: RefreshOrchestrator,
) -> None:
    tool = FlakyTool(AuthExpiredError("401 from messaging"))
    server = _server(orchestrator, ToolSpec("teams_get_messages", "Get messages", tool))

    result, payload = await _call(server, "teams_get_messages")

    assert result.isError is False
    assert payload == {"success": True, "messages": ["hello"]}
    assert tool.calls == 2
    orchestrator.direct.refresh.assert_awaited_once()
    orchestrator.browser.login.assert_not_called()
    assert server.context.initialised is True


@pytest.mark.asyncio
async def test_retry_happens_at_most_once(orchestrator: RefreshOrchestrator) -> None:
    tool = FlakyTool(AuthExpiredError("401 from messaging"), failures=5)
    server = _server(orchestrator, ToolSpec("teams_get_messages", "Get messages", tool))

    result, payload = await _call(server, "teams_get_messages")

    assert result.isError is True
    assert payload["errorCode"] == "AUTH_EXPIRED"
    assert payload["error"] == "401 from messaging"
    assert tool.calls == 2


@pytest.mark.asyncio
async def test_interactive_login_needed_stops_auto_login(
    orchestrator: RefreshOrchestrator,
) -> None:
    orchestrator.direct.refresh.side_effect = AuthExpiredError("invalid_grant")
    orchestrator.browser.refresh.side_effect = InteractiveLoginRequiredError("login page")
    tool = FlakyTool(AuthRequiredError("no cookies"))
    server = _server(orchestrator, ToolSpec("teams_get_messages", "Get messages", tool))

    result, payload = await _call(server, "teams_get_messages")

    assert result.isError is True
    assert payload["errorCode"] == "AUTH_REQUIRED"
    assert payload["error"] == AUTO_LOGIN_FAILED_MESSAGE
    assert payload["suggestions"][0] == "IMMEDIATELY call teams_login to re-authenticate"
    assert tool.calls == 1
    orchestrator.browser.login.assert_not_called()


@pytest.mark.asyncio
async def test_refresh_in_progress_stops_auto_login(
    orchestrator: RefreshOrchestrator,
) -> None:
    orchestrator.direct.refresh.side_effect = AuthExpiredError("invalid_grant")
    orchestrator.browser.refresh.side_effect = RefreshInProgressError("busy")
    tool = FlakyTool(AuthExpiredError("401"))
    server = _server(orchestrator, ToolSpec("teams_get_messages", "Get messages", tool))

    result, payload = await _call(server, "teams_get_messages")

    assert result.isError is True
    assert payload["error"] == AUTO_LOGIN_FAILED_MESSAGE
    orchestrator.browser.login.assert_not_called()


@pytest.mark.asyncio
async def test_failed_refresh_falls_back_to_headless_login(
    orchestrator: RefreshOrchestrator,
) -> None:
    orchestrator.direct.refresh.side_effect = AuthExpiredError("invalid_grant")
    orchestrator.browser.refresh.side_effect = AuthExpiredError("token not refreshed")
    tool = FlakyTool(AuthExpiredError("401"))
    server = _server(orchestrator, ToolSpec("teams_get_messages", "Get messages", tool))

    result, payload = await _call(server, "teams_get_messages")

    assert result.isError is False
    assert payload["messages"] == ["hello"]
    orchestrator.browser.login.assert_awaited_once_with(headless=True)


@pytest.mark.asyncio
async def test_auth_tools_are_not_retried(orchestrator: RefreshOrchestrator) -> None:
    orchestrator.browser.login.side_effect = [
        InteractiveLoginRequiredError("login page"),
        AuthRequiredError("window closed"),
    ]
    server = _server(orchestrator)

    result, payload = await _call(server, "teams_login")

    assert result.isError is True
    assert payload["error"] == "window closed"
    orchestrator.direct.refresh.assert_not_called()
    orchestrator.browser.refresh.assert_not_called()


@pytest.mark.asyncio
async def test_non_auth_errors_pass_through(orchestrator: RefreshOrchestrator) -> None:
    tool = FlakyTool(RateLimitedError("Too many requests", retry_after_ms=3000))
    server = _server(orchestrator, ToolSpec("teams_search", "Search", tool))

    result, payload = await _call(server, "teams_search")

    assert result.isError is True
    assert payload["errorCode"] == "RATE_LIMITED"
    assert payload["retryable"] is True
    assert payload["retryAfterMs"] == 3000
    assert tool.calls == 1
    orchestrator.direct.refresh.assert_not_called()


@pytest.mark.asyncio
async def test_unexpected_exceptions_become_unknown_errors(
    orchestrator: RefreshOrchestrator,
) -> None:
    tool = FlakyTool(KeyError("items"))
    server = _server(orchestrator, ToolSpec("teams_search", "Search", tool))

    result, payload = await _call(server, "teams_search")

    assert result.isError is True
    assert payload["errorCode"] == "UNKNOWN"
    assert payload["retryable"] is False


@pytest.mark.asyncio
async def test_unknown_tool(orchestrator: RefreshOrchestrator) -> None:
    result = await _server(orchestrator).call_tool("teams_nope", {})

    assert result.isError is True
    payload = json.loads(result.content[0].text)
    assert payload["errorCode"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_login_rejects_non_boolean_force_new(orchestrator: RefreshOrchestrator) -> None:
    result = await _server(orchestrator).call_tool("teams_login", {"forceNew": "yes"})

    assert result.isError is True
    payload = json.loads(result.content[0].text)
    assert payload["errorCode"] == "INVALID_INPUT"
    orchestrator.browser.login.assert_not_called()


@pytest.mark.asyncio
async def test_login_short_circuits_with_fresh_token(
    orchestrator: RefreshOrchestrator, store: SessionStore
) -> None:
    store.write(full_session(search_exp=NOW + 3600))
    server = _server(orchestrator)

    result, payload = await _call(server, "teams_login")

    assert result.isError is False
    assert payload["message"] == "Already authenticated. Token valid for 60 more minutes."
    assert payload["tokenStatus"]["minutesRemaining"] == 60
    orchestrator.browser.login.assert_not_called()


@pytest.mark.asyncio
async def test_login_tries_silent_sso_first(
    orchestrator: RefreshOrchestrator, store: SessionStore
) -> None:
    store.write(full_session(search_exp=NOW + 120))
    server = _server(orchestrator)

    result, payload = await _call(server, "teams_login")

    assert payload["message"] == "Login completed silently via SSO. Session has been saved."
    orchestrator.browser.login.assert_awaited_once_with(headless=True)
    assert server.context.initialised is True


@pytest.mark.asyncio
async def test_login_opens_window_when_sso_fails(orchestrator: RefreshOrchestrator) -> None:
    orchestrator.browser.login.side_effect = [InteractiveLoginRequiredError("login page"), None]
    server = _server(orchestrator)

    result, payload = await _call(server, "teams_login")

    assert result.isError is False
    assert payload["message"] == "Login completed successfully. Session has been saved."
    assert orchestrator.browser.login.await_args_list[1].kwargs == {
        "force_new": False,
        "headless": False,
    }


@pytest.mark.asyncio
async def test_login_does_not_open_window_while_refresh_runs(
    orchestrator: RefreshOrchestrator,
) -> None:
    orchestrator.browser.login.side_effect = RefreshInProgressError("busy")
    server = _server(orchestrator)

    result, payload = await _call(server, "teams_login")

    assert payload["errorCode"] == "REFRESH_IN_PROGRESS"
    assert orchestrator.browser.login.await_count == 1


@pytest.mark.asyncio
async def test_force_new_login_discards_session(
    orchestrator: RefreshOrchestrator, store: SessionStore
) -> None:
    store.write(full_session())
    server = _server(orchestrator)

    result, payload = await _call(server, "teams_login", {"forceNew": True})

    assert result.isError is False
    assert not store.exists()
    orchestrator.browser.login.assert_awaited_once_with(force_new=True, headless=False)


@pytest.mark.asyncio
async def test_status_tool(orchestrator: RefreshOrchestrator, store: SessionStore) -> None:
    store.write(full_session(search_exp=NOW + 1800))

    result, payload = await _call(_server(orchestrator), "teams_status")

    assert result.isError is False
    assert payload["directApi"]["available"] is True
    assert payload["directApi"]["minutesRemaining"] == 30
    assert payload["messaging"]["available"] is True
    assert payload["favorites"]["available"] is True
    assert payload["session"]["exists"] is True
    assert payload["browser"] == {"running": False, "initialised": False}


@pytest.mark.asyncio
async def test_logout_tool(orchestrator: RefreshOrchestrator, store: SessionStore) -> None:
    store.write(full_session())

    _, payload = await _call(_server(orchestrator), "teams_logout")

    assert payload["sessionCleared"] is True
    assert not store.exists()


@pytest.mark.asyncio
async def test_get_me_and_region(orchestrator: RefreshOrchestrator, store: SessionStore) -> None:
    store.write(full_session())
    server = _server(orchestrator)

    _, me = await _call(server, "teams_get_me")
    assert me["profile"]["id"] == OID
    assert me["profile"]["displayName"] == "Smith, Jane"

    _, region = await _call(server, "teams_get_region")
    assert region["userMri"] == f"8:orgid:{OID}"
    assert region["region"] == "amer"
    assert region["tenantId"] == TENANT_ID
    assert region["regionConfig"]["regionPartition"] == "amer-02"


@pytest.mark.asyncio
async def test_read_resources(orchestrator: RefreshOrchestrator, store: SessionStore) -> None:
    server = _server(orchestrator)
    assert server.read_resource(PROFILE_RESOURCE_URI) == {"error": "No valid session"}

    store.write(full_session())
    assert server.read_resource(PROFILE_RESOURCE_URI)["email"] == "jane@contoso.com"
    assert server.read_resource(STATUS_RESOURCE_URI)["sessionExists"] is True
    with pytest.raises(ValueError):
        server.read_resource("teams://nope")

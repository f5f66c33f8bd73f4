"""MCP server module for teamsmcp."""

from teamsmcp.mcp.server import TeamsMCPServer, run_mcp_server

__all__ = ["TeamsMCPServer", "run_mcp_server"]

"""Shared Rich Console and style definitions.

All human-facing output goes to stderr via ``err_console``; stdout belongs
to the MCP stdio transport.
"""

from __future__ import annotations

from rich.console import Console
from rich.theme import Theme

TEAMS_THEME = Theme(
    {
        "info": "cyan",
        "success": "bold green",
        "warning": "bold yellow",
        "error": "bold red",
        "heading": "bold cyan",
        "muted": "dim",
        "command": "bold white on dark_blue",
    }
)

err_console = Console(stderr=True, theme=TEAMS_THEME)

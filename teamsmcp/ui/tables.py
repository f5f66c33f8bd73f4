"""Rich table formatters for session diagnostics."""

from __future__ import annotations

from rich.table import Table

from teamsmcp.models.tokens import SessionStatus, TokenStatus

_AVAILABLE = "[success]✓[/success]"
_UNAVAILABLE = "[error]✗[/error]"


def _icon(available: bool) -> str:
    return _AVAILABLE if available else _UNAVAILABLE


def _remaining(status: TokenStatus) -> str:
    if status.minutes_remaining is None:
        return "-"
    return f"{status.minutes_remaining} min"


def session_status_table(status: SessionStatus) -> Table:
    """Build a table with one row per credential family."""
    table = Table(title="Teams Session", show_lines=False, pad_edge=False)
    table.add_column("", width=3)
    table.add_column("Credential", style="bold")
    table.add_column("Expires", style="muted")
    table.add_column("Remaining")

    table.add_row(
        _icon(status.search.has_token),
        "Search (direct API)",
        status.search.expires_at or "-",
        _remaining(status.search),
    )
    table.add_row(
        _icon(status.messaging.has_token),
        "Messaging",
        status.messaging.expires_at or "-",
        _remaining(status.messaging),
    )
    table.add_row(_icon(status.favorites_available), "Favourites", "-", "-")

    if not status.session_exists:
        session_note = "[error]missing[/error]"
    elif status.session_likely_expired:
        session_note = "[warning]likely expired[/warning]"
    else:
        session_note = "[success]present[/success]"
    age = f"{status.session_age_hours:.1f} h old" if status.session_age_hours is not None else "-"
    table.add_row(_icon(status.session_exists), "Session file", session_note, age)
    return table

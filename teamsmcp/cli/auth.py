"""Session management CLI commands."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from teamsmcp.config import Settings
from teamsmcp.core.auth.orchestrator import RefreshOrchestrator
from teamsmcp.errors import SessionError
from teamsmcp.models.tokens import RefreshMethod
from teamsmcp.ui.console import err_console
from teamsmcp.ui.tables import session_status_table
from teamsmcp.utils.locks import ProfileLockError, clear_profile_lock

T = TypeVar("T")


def _orchestrator(ctx: click.Context) -> RefreshOrchestrator:
    settings: Settings = ctx.obj["settings"]
    return RefreshOrchestrator.from_settings(settings)


def _run(
    orchestrator: RefreshOrchestrator,
    operation: Callable[[RefreshOrchestrator], Awaitable[T]],
) -> T:
    async def _main() -> T:
        try:
            return await operation(orchestrator)
        finally:
            await orchestrator.close()

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        click.echo("\nCancelled.", err=True)
        sys.exit(130)
    except SessionError as exc:
        err_console.print(f"[error]Error ({exc.code}):[/error] {exc.message}")
        for suggestion in exc.suggestions:
            err_console.print(f"  [muted]- {suggestion}[/muted]")
        sys.exit(1)


@click.group("auth")
def auth_group() -> None:
    """Manage the saved Teams session."""


@auth_group.command("login")
@click.option("--force-new", is_flag=True, help="Discard the saved session and log in again")
@click.option(
    "--headless",
    is_flag=True,
    help="Fail instead of opening a window if interactive login is needed",
)
@click.pass_context
def auth_login(ctx: click.Context, force_new: bool, headless: bool) -> None:
    """Log in through the browser and save the session."""
    orchestrator = _orchestrator(ctx)
    if force_new:
        orchestrator.logout()
    if not headless:
        err_console.print("[info]Opening browser. Complete the login in the window.[/info]")

    _run(
        orchestrator,
        lambda o: o.browser.login(force_new=force_new, headless=headless),
    )
    err_console.print("[success]Login complete. Session saved.[/success]")


@auth_group.command("status")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON to stdout")
@click.pass_context
def auth_status(ctx: click.Context, as_json: bool) -> None:
    """Show token and session status."""
    status = _orchestrator(ctx).status()
    if as_json:
        click.echo(json.dumps(status.to_payload(), indent=2))
    else:
        err_console.print(session_status_table(status))
    if not status.search.has_token:
        sys.exit(1)


@auth_group.command("refresh")
@click.option("--force", is_flag=True, help="Refresh even if the tokens are still fresh")
@click.option(
    "--browser/--no-browser",
    default=True,
    show_default=True,
    help="Fall back to a headless browser if the direct refresh fails",
)
@click.pass_context
def auth_refresh(ctx: click.Context, force: bool, browser: bool) -> None:
    """Refresh tokens without interactive login."""
    outcome = _run(
        _orchestrator(ctx),
        lambda o: o.ensure_fresh(allow_browser=browser, force=force),
    )
    if outcome.method == RefreshMethod.NONE:
        err_console.print("[success]Tokens are fresh; nothing to do.[/success]")
        return

    details: dict[str, Any] = outcome.to_payload()
    err_console.print(f"[success]Refreshed via {outcome.method} path.[/success]")
    if ctx.obj.get("verbose"):
        err_console.print_json(json.dumps(details))


@auth_group.command("logout")
@click.pass_context
def auth_logout(ctx: click.Context) -> None:
    """Delete the saved session."""
    if _orchestrator(ctx).logout():
        err_console.print("[success]Session cleared.[/success]")
    else:
        err_console.print("[warning]No saved session found.[/warning]")


@auth_group.command("unlock")
@click.option("--force", is_flag=True, help="Remove the lock even if its owner is still alive")
@click.pass_context
def auth_unlock(ctx: click.Context, force: bool) -> None:
    """Remove a leftover browser profile lock."""
    settings: Settings = ctx.obj["settings"]
    try:
        removed = clear_profile_lock(settings.profile_lock_path, force=force)
    except ProfileLockError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo("Lock cleared." if removed else "No lock found.")

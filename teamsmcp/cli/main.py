"""Main CLI entry point for teamsmcp."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from teamsmcp import __version__
from teamsmcp.cli.auth import auth_group
from teamsmcp.config import load_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """Log to stderr; stdout carries the MCP stdio transport."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


@click.group()
@click.version_option(version=__version__, prog_name="teamsmcp")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="TEAMS_MCP_CONFIG_DIR",
    default=None,
    help="Directory holding the session state and browser profile",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Path | None) -> None:
    """Keep a Microsoft Teams session authenticated for MCP clients."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    try:
        ctx.obj["settings"] = load_settings(config_dir=config_dir)
    except ValidationError as exc:
        click.echo(f"Error: invalid configuration: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the MCP server on stdio."""
    from teamsmcp.mcp.server import run_mcp_server

    try:
        run_mcp_server(ctx.obj["settings"])
    except KeyboardInterrupt:
        click.echo("\nServer stopped.", err=True)


cli.add_command(auth_group)


if __name__ == "__main__":
    cli()

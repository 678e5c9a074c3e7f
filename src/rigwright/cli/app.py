"""Top-level typer application.

    rigwright vcs detect|status|conflicts
    rigwright migrate run|resume|status|abort|rollback
"""

from __future__ import annotations

import logging
import os

import typer
from rich.console import Console

from rigwright import __version__
from rigwright.cli.commands import migrate_cmd, vcs_cmd

console = Console()

app = typer.Typer(
    name="rigwright",
    help="VCS abstraction and rig migration for agent workspaces",
    add_completion=False,
    no_args_is_help=True,
)
app.add_typer(vcs_cmd.app, name="vcs")
app.add_typer(migrate_cmd.app, name="migrate")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"rigwright {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log VCS commands as they run"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Configure logging for every subcommand."""
    level = logging.DEBUG if verbose else os.environ.get("RIGWRIGHT_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, format="[%(levelname)s %(name)s] %(message)s", force=True)


def main() -> None:
    app()


if __name__ == "__main__":
    main()

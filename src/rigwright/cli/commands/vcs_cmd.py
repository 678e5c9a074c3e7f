"""VCS inspection commands.

Commands:
    vcs detect     -- Which backend a directory uses, and installed tools
    vcs status     -- Branch and uncommitted work of a directory
    vcs conflicts  -- Would merging SOURCE into TARGET conflict?
"""

from __future__ import annotations

import json as json_lib
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from rigwright.core.vcs import (
    VCSError,
    check_conflicts,
    detect_available_backends,
    detect_vcs_type,
    get_git_version,
    get_jj_version,
    new_from_config,
)

app = typer.Typer(help="Inspect working directories through the VCS abstraction")
console = Console()


def _open(path: Path, backend: Optional[str]):
    try:
        return new_from_config(path, backend)
    except (VCSError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command("detect")
def detect(
    path: Path = typer.Argument(Path("."), help="Directory to inspect"),
) -> None:
    """Show the backend of PATH and which VCS tools are installed."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    try:
        table.add_row("Backend", detect_vcs_type(path).value)
    except VCSError as e:
        table.add_row("Backend", f"[yellow]{e}[/yellow]")
    table.add_row("git", get_git_version() or "[dim]not installed[/dim]")
    table.add_row("jj", get_jj_version() or "[dim]not installed[/dim]")
    table.add_row("Available", ", ".join(b.value for b in detect_available_backends()) or "none")
    console.print(table)


@app.command("status")
def status(
    path: Path = typer.Argument(Path("."), help="Working directory"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="git or jj; detected when omitted"),
    json_output: bool = typer.Option(False, "--json", help="Machine-readable JSON output"),
) -> None:
    """Show branch and uncommitted work for PATH."""
    vcs = _open(path, backend)
    try:
        branch = vcs.current_branch()
        work = vcs.check_uncommitted_work()
    except VCSError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if json_output:
        payload = {
            "backend": vcs.backend.value,
            "branch": branch,
            "clean": work.is_clean(),
            "modified": work.modified_files,
            "untracked": work.untracked_files,
            "stashes": work.stash_count,
            "unpushed": work.unpushed_commits,
        }
        console.print_json(json_lib.dumps(payload))
        return

    console.print(f"[bold]{path}[/bold] ({vcs.backend.value})")
    console.print(f"  Branch: {branch or '[yellow]detached[/yellow]'}")
    style = "green" if work.is_clean() else "yellow"
    console.print(f"  Work:   [{style}]{work.summary()}[/{style}]")


@app.command("conflicts")
def conflicts(
    source: str = typer.Argument(..., help="Branch to merge"),
    target: str = typer.Argument(..., help="Branch to merge into"),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Working directory"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="git or jj; detected when omitted"),
) -> None:
    """Check whether SOURCE merges cleanly into TARGET without changing anything."""
    vcs = _open(path, backend)
    try:
        files = check_conflicts(vcs, source, target)
    except VCSError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not files:
        console.print(f"[green]✓[/green] {source} merges cleanly into {target}")
        return
    console.print(f"[yellow]{source} conflicts with {target} in {len(files)} file(s):[/yellow]")
    for name in files:
        console.print(f"  - {name}")
    raise typer.Exit(1)

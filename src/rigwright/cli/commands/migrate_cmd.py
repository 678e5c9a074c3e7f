"""Rig migration commands.

Usage:
    rigwright migrate run --to jj          # Convert the rig in the current directory
    rigwright migrate run --to jj --archive
    rigwright migrate resume               # Continue after a crash or partial failure
    rigwright migrate status
    rigwright migrate abort
    rigwright migrate rollback --level b   # Manual fallback after a completed migration
"""

from __future__ import annotations

import json as json_lib
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.live import Live

from rigwright.cli.ui import StepTracker
from rigwright.core.config import RigConfigError
from rigwright.core.vcs import VCSBackend, VCSError
from rigwright.migration import (
    MigrationController,
    MigrationError,
    MigrationResult,
    PhasePreconditionError,
    RollbackError,
    load_record,
    migration_status,
    rollback_discard_anchor,
    rollback_restore_archive,
    rollback_restore_store,
)

app = typer.Typer(help="Migrate a rig between VCS backends")
console = Console()

RigOption = typer.Option(Path("."), "--rig", "-r", help="Rig root directory")


def _drive(tracker: StepTracker, action) -> MigrationResult:
    with Live(tracker.render(), console=console, refresh_per_second=8, transient=False) as live:
        tracker.attach_refresh(lambda: live.update(tracker.render()))
        return action()


def _report_failure(error: Exception, rig: Path) -> None:
    if isinstance(error, PhasePreconditionError):
        console.print("[red]Pre-check failed; nothing was changed.[/red]")
        for issue in error.issues:
            console.print(f"  [yellow]{issue.worker}[/yellow]: {issue.message}")
        return
    console.print(f"[red]Migration failed:[/red] {error}")
    if load_record(rig) is not None:
        console.print("[dim]Run 'rigwright migrate resume' to retry or 'rigwright migrate abort' to roll back.[/dim]")


def _print_result(result: MigrationResult) -> None:
    console.print(
        f"[green]✓[/green] Migrated {result.source_backend.value} -> {result.target_backend.value}; "
        f"{len(result.converted)} worker(s) attached to {result.anchor}"
    )
    if result.backup:
        console.print(f"  Backup: {result.backup}")


@app.command("run")
def run(
    to: str = typer.Option(..., "--to", help="Target backend: git or jj"),
    rig: Path = RigOption,
    archive: bool = typer.Option(False, "--archive", help="Also archive the whole rig for level-c rollback"),
    attempts: int = typer.Option(3, "--attempts", min=1, help="Attempts per worker conversion"),
) -> None:
    """Start a migration and drive it through every phase."""
    try:
        target = VCSBackend(to)
    except ValueError:
        console.print(f"[red]Unknown backend '{to}'. Use git or jj.[/red]")
        raise typer.Exit(1)

    tracker = StepTracker.for_migration(f"Migrate {rig.resolve().name} to {target.value}")
    controller = MigrationController(
        rig, target, archive=archive, max_attempts=attempts, progress=tracker.on_progress
    )
    try:
        result = _drive(tracker, controller.run)
    except (MigrationError, VCSError, RigConfigError) as e:
        _report_failure(e, rig)
        raise typer.Exit(1)
    _print_result(result)


@app.command("resume")
def resume(
    rig: Path = RigOption,
    attempts: int = typer.Option(3, "--attempts", min=1, help="Attempts per worker conversion"),
) -> None:
    """Continue an interrupted migration from its recorded phase."""
    try:
        record = load_record(rig)
    except MigrationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if record is None:
        console.print("[yellow]No migration in progress.[/yellow]")
        raise typer.Exit(1)

    tracker = StepTracker.for_migration(f"Resume migration {record.migration_id}", resume_from=record.phase)
    controller = MigrationController(rig, max_attempts=attempts, progress=tracker.on_progress)
    try:
        result = _drive(tracker, controller.resume)
    except (MigrationError, VCSError, RigConfigError) as e:
        _report_failure(e, rig)
        raise typer.Exit(1)
    _print_result(result)


@app.command("status")
def status(
    rig: Path = RigOption,
    json_output: bool = typer.Option(False, "--json", help="Machine-readable JSON output"),
) -> None:
    """Show the in-flight migration, if any."""
    try:
        info = migration_status(rig)
    except MigrationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if json_output:
        console.print_json(json_lib.dumps(info))
        return
    if not info["in_progress"]:
        console.print("No migration in progress.")
        return
    console.print(f"[bold]Migration {info['migration_id']}[/bold]")
    console.print(f"  Phase:     {info['phase']}")
    console.print(f"  Frozen:    {'yes' if info['frozen'] else 'no'}")
    console.print(f"  Last:      {info['last_outcome'] or '-'}")
    console.print(f"  Converted: {', '.join(info['converted']) or '-'}")
    for worker, error in info["failed"].items():
        console.print(f"  [red]Failed:[/red]    {worker}: {error}")


@app.command("abort")
def abort(rig: Path = RigOption) -> None:
    """Abort an in-flight migration, removing everything it created."""
    try:
        report = MigrationController(rig).abort()
    except MigrationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Aborted from {report.phase.value}.[/green]")
    if report.removed:
        console.print("Removed:")
        for item in report.removed:
            console.print(f"  - {item}")
    else:
        console.print("Nothing had been created yet.")


@app.command("rollback")
def rollback(
    level: str = typer.Option(..., "--level", "-l", help="a: discard anchor, b: restore store backup, c: restore archive"),
    rig: Path = RigOption,
    backup: Optional[Path] = typer.Option(None, "--backup", help="Backup directory (default: newest)"),
    force: bool = typer.Option(False, "--force", help="Level b: discard uncommitted work in workers"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Manually roll a rig back to its pre-migration layout."""
    level = level.lower()
    if level not in ("a", "b", "c"):
        console.print(f"[red]Unknown rollback level '{level}'. Use a, b or c.[/red]")
        raise typer.Exit(1)
    if level != "a" and not yes:
        if not typer.confirm(f"Level {level} rollback replaces rig contents. Continue?"):
            raise typer.Abort()

    try:
        if level == "a":
            touched = rollback_discard_anchor(rig)
        elif level == "b":
            touched = rollback_restore_store(rig, backup=backup, force=force)
        else:
            touched = rollback_restore_archive(rig, backup=backup)
    except (RollbackError, MigrationError, VCSError) as e:
        console.print(f"[red]Rollback failed:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Level {level} rollback complete.[/green]")
    for path in touched:
        console.print(f"  - {path}")

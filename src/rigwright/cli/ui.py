"""Console helpers for rigwright commands."""

from __future__ import annotations

from typing import Callable, Optional

from rich.tree import Tree

from rigwright.migration.state import PHASE_ORDER, MigrationPhase


PHASE_LABELS = {
    MigrationPhase.PRECHECK: "Check workers and back up the store",
    MigrationPhase.FREEZE: "Freeze dispatch",
    MigrationPhase.CONVERT_REPOSITORY: "Create the shared anchor",
    MigrationPhase.CONVERT_WORKSPACES: "Attach workers as workspaces",
    MigrationPhase.UPDATE_CONFIG: "Update rig configuration",
    MigrationPhase.RESUME: "Resume dispatch",
}

_SYMBOLS = {
    "done": "[green]●[/green]",
    "pending": "[green dim]○[/green dim]",
    "running": "[cyan]○[/cyan]",
    "error": "[red]●[/red]",
    "skipped": "[yellow]○[/yellow]",
}


class StepTracker:
    """Track and render migration steps as a Rich tree."""

    def __init__(self, title: str):
        self.title = title
        self.steps: list[dict[str, str]] = []
        self._refresh_cb: Optional[Callable[[], None]] = None

    @classmethod
    def for_migration(cls, title: str, resume_from: MigrationPhase | None = None) -> "StepTracker":
        tracker = cls(title)
        for phase in PHASE_ORDER:
            tracker.add(phase.value, PHASE_LABELS[phase])
        if resume_from is not None:
            for phase in PHASE_ORDER[: PHASE_ORDER.index(resume_from)]:
                tracker.skip(phase.value, "already done")
        return tracker

    def attach_refresh(self, cb: Callable[[], None]) -> None:
        self._refresh_cb = cb

    def add(self, key: str, label: str) -> None:
        if key not in [s["key"] for s in self.steps]:
            self.steps.append({"key": key, "label": label, "status": "pending", "detail": ""})
            self._maybe_refresh()

    def start(self, key: str, detail: str = "") -> None:
        self._update(key, status="running", detail=detail)

    def complete(self, key: str, detail: str = "") -> None:
        self._update(key, status="done", detail=detail)

    def error(self, key: str, detail: str = "") -> None:
        self._update(key, status="error", detail=detail)

    def skip(self, key: str, detail: str = "") -> None:
        self._update(key, status="skipped", detail=detail)

    def on_progress(self, phase: MigrationPhase, status: str, detail: str = "") -> None:
        """Progress callback for :class:`~rigwright.migration.MigrationController`."""
        if status == "started":
            self.start(phase.value, detail)
        elif status == "done":
            self.complete(phase.value, detail)
        else:
            # Keep the first line; the command prints the full error
            self.error(phase.value, detail.splitlines()[0] if detail else "")

    def _update(self, key: str, status: str, detail: str) -> None:
        for s in self.steps:
            if s["key"] == key:
                s["status"] = status
                if detail:
                    s["detail"] = detail
                self._maybe_refresh()
                return
        self.steps.append({"key": key, "label": key, "status": status, "detail": detail})
        self._maybe_refresh()

    def _maybe_refresh(self) -> None:
        if self._refresh_cb:
            self._refresh_cb()

    def render(self) -> Tree:
        tree = Tree(f"[cyan]{self.title}[/cyan]", guide_style="grey50")
        for step in self.steps:
            label = step["label"]
            detail_text = step["detail"].strip()
            status = step["status"]
            symbol = _SYMBOLS.get(status, " ")

            if status == "pending":
                text = f"{label} ({detail_text})" if detail_text else label
                line = f"{symbol} [bright_black]{text}[/bright_black]"
            elif detail_text:
                line = f"{symbol} [white]{label}[/white] [bright_black]({detail_text})[/bright_black]"
            else:
                line = f"{symbol} [white]{label}[/white]"
            tree.add(line)
        return tree

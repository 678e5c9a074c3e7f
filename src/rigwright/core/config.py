"""Rig configuration and the dispatch gate.

The configuration is stored in ``<rig>/.rig/config.yaml``:

    name: myproject
    vcs: git
    store: .repo.git
    frozen: false
    workers:
      alice:
        path: crew/alice
        branch: worker/alice

The migration controller is the only writer of ``vcs``, ``anchor`` and
``frozen``. Dispatchers read ``frozen`` through :class:`DispatchGate`,
which re-reads the document on every call.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML

from rigwright.core.vcs.types import VCSBackend

logger = logging.getLogger(__name__)

RIG_DIR = ".rig"
CONFIG_FILE = "config.yaml"
TASKS_DIR = "tasks"
DEFAULT_STORE = ".repo.git"


class RigConfigError(RuntimeError):
    """Raised when .rig/config.yaml cannot be parsed or validated."""


class DispatchFrozenError(RuntimeError):
    """Raised when new work is dispatched to a frozen rig."""


@dataclass
class WorkerEntry:
    """A worker's working directory, relative to the rig root."""

    path: str
    branch: str = ""
    workspace: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path}
        if self.branch:
            data["branch"] = self.branch
        if self.workspace:
            data["workspace"] = True
        return data


@dataclass
class RigConfig:
    """Per-rig configuration.

    Attributes:
        name: Rig name
        vcs: Backend the rig's directories use
        store: Shared object store (bare repository), relative to the rig root
        anchor: Shared anchor the workers are workspaces of, once migrated
        frozen: Dispatch gate flag; no new workers or tasks while set
        workers: Worker name -> entry
    """

    name: str = ""
    vcs: VCSBackend = VCSBackend.GIT
    store: str = DEFAULT_STORE
    anchor: str | None = None
    frozen: bool = False
    workers: dict[str, WorkerEntry] = field(default_factory=dict)

    def worker_path(self, rig_root: Path, name: str) -> Path:
        return rig_root / self.workers[name].path

    def store_path(self, rig_root: Path) -> Path:
        return rig_root / self.store

    def anchor_path(self, rig_root: Path) -> Path | None:
        return rig_root / self.anchor if self.anchor else None


def config_path(rig_root: Path) -> Path:
    return rig_root / RIG_DIR / CONFIG_FILE


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    return yaml


def _read_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return _yaml().load(f) or {}
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        raise RigConfigError(f"Invalid YAML in {path}: {e}") from e


def load_rig_config(rig_root: Path) -> RigConfig:
    """Load rig configuration, returning defaults when the file is absent."""
    path = config_path(rig_root)
    data = _read_document(path)
    if not data:
        logger.debug("No rig config at %s; using defaults", path)
        return RigConfig(name=rig_root.name)

    try:
        vcs = VCSBackend(str(data.get("vcs", VCSBackend.GIT.value)))
    except ValueError as e:
        raise RigConfigError(f"Unknown vcs '{data.get('vcs')}' in {path}") from e

    workers_data = data.get("workers") or {}
    if not isinstance(workers_data, dict):
        raise RigConfigError(f"Invalid workers in {path}: expected a mapping of worker names")

    workers: dict[str, WorkerEntry] = {}
    for name, entry in workers_data.items():
        if isinstance(entry, str):
            entry = {"path": entry}
        if not isinstance(entry, dict) or "path" not in entry:
            raise RigConfigError(f"Worker '{name}' in {path} needs a path")
        workers[str(name)] = WorkerEntry(
            path=str(entry["path"]),
            branch=str(entry.get("branch", "") or ""),
            workspace=bool(entry.get("workspace", False)),
        )

    return RigConfig(
        name=str(data.get("name", rig_root.name)),
        vcs=vcs,
        store=str(data.get("store", DEFAULT_STORE)),
        anchor=str(data["anchor"]) if data.get("anchor") else None,
        frozen=bool(data.get("frozen", False)),
        workers=workers,
    )


def save_rig_config(rig_root: Path, config: RigConfig) -> None:
    """Atomically write rig configuration (temp file + rename).

    Merges with the existing document so unrelated sections survive.
    """
    path = config_path(rig_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = _read_document(path)

    data["name"] = config.name
    data["vcs"] = config.vcs.value
    data["store"] = config.store
    if config.anchor:
        data["anchor"] = config.anchor
    elif "anchor" in data:
        del data["anchor"]
    data["frozen"] = config.frozen
    data["workers"] = {name: entry.to_dict() for name, entry in config.workers.items()}

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".config.yaml.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            _yaml().dump(data, f)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


# =============================================================================
# Task markers
# =============================================================================


def task_marker_path(rig_root: Path, worker: str) -> Path:
    return rig_root / RIG_DIR / TASKS_DIR / worker


def worker_has_active_task(rig_root: Path, worker: str) -> bool:
    """A worker is busy while its in-progress task marker exists."""
    return task_marker_path(rig_root, worker).exists()


# =============================================================================
# Dispatch gate
# =============================================================================


class DispatchGate:
    """Process-wide frozen flag for a rig.

    Constructed empty (it holds only the rig path); the flag itself lives
    in the rig configuration and is re-read on every query, so a
    dispatcher polling :meth:`is_frozen` sees a freeze immediately.
    """

    def __init__(self, rig_root: Path) -> None:
        self.rig_root = Path(rig_root)

    def is_frozen(self) -> bool:
        return load_rig_config(self.rig_root).frozen

    def ensure_open(self) -> None:
        """Raise DispatchFrozenError if dispatch is currently blocked."""
        if self.is_frozen():
            raise DispatchFrozenError(
                f"Rig {self.rig_root.name} is frozen for migration; new workers and tasks are blocked"
            )

    def freeze(self) -> None:
        self._set(True)

    def thaw(self) -> None:
        self._set(False)

    def _set(self, frozen: bool) -> None:
        config = load_rig_config(self.rig_root)
        if config.frozen == frozen:
            return
        config.frozen = frozen
        save_rig_config(self.rig_root, config)
        logger.info("Rig %s dispatch %s", self.rig_root.name, "frozen" if frozen else "resumed")

"""Migration Record persistence for resume capability.

The record lives at ``<rig>/.rig/migration.json`` for as long as a
migration is in flight. It is rewritten (temp file + ``os.replace``)
after every phase transition and after every converted worker, so a
crash between steps resumes instead of requiring a full abort.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from rigwright.core.config import RIG_DIR

logger = logging.getLogger(__name__)

RECORD_FILE = "migration.json"


class MigrationError(Exception):
    """Base error for rig migrations."""


class MigrationPhase(str, Enum):
    PRECHECK = "precheck"
    FREEZE = "freeze"
    CONVERT_REPOSITORY = "convert_repository"
    CONVERT_WORKSPACES = "convert_workspaces"
    UPDATE_CONFIG = "update_config"
    RESUME = "resume"
    ABORTED = "aborted"

    @property
    def abortable(self) -> bool:
        return self in ABORTABLE_PHASES


PHASE_ORDER = [
    MigrationPhase.PRECHECK,
    MigrationPhase.FREEZE,
    MigrationPhase.CONVERT_REPOSITORY,
    MigrationPhase.CONVERT_WORKSPACES,
    MigrationPhase.UPDATE_CONFIG,
    MigrationPhase.RESUME,
]

ABORTABLE_PHASES = frozenset(PHASE_ORDER[:4])


class ArtifactKind(str, Enum):
    BACKUP = "backup"
    ARCHIVE = "archive"
    ANCHOR = "anchor"
    WORKSPACE = "workspace"


@dataclass
class Artifact:
    """Something the migration created on disk, undone newest-first on abort."""

    kind: ArtifactKind
    path: str
    worker: str | None = None
    parked: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Artifact:
        return cls(
            kind=ArtifactKind(data["kind"]),
            path=data["path"],
            worker=data.get("worker"),
            parked=data.get("parked"),
        )


@dataclass
class PreservedBranch:
    """A worker's identity-bearing ref, captured before conversion."""

    branch: str
    commit: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MigrationRecord:
    """State of one in-flight rig migration."""

    source_backend: str
    target_backend: str
    migration_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    phase: MigrationPhase = MigrationPhase.PRECHECK
    frozen: bool = False
    last_completed_phase: MigrationPhase | None = None
    last_outcome: str = ""
    backup_path: str | None = None
    archive_path: str | None = None
    anchor: str | None = None
    preserved_branches: dict[str, PreservedBranch] = field(default_factory=dict)
    converted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    artifacts: list[Artifact] = field(default_factory=list)
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def add_artifact(self, artifact: Artifact) -> None:
        self.artifacts.append(artifact)

    def mark_converted(self, worker: str) -> None:
        if worker not in self.converted:
            self.converted.append(worker)
        self.failed.pop(worker, None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "source_backend": self.source_backend,
            "target_backend": self.target_backend,
            "phase": self.phase.value,
            "frozen": self.frozen,
            "last_completed_phase": self.last_completed_phase.value if self.last_completed_phase else None,
            "last_outcome": self.last_outcome,
            "backup_path": self.backup_path,
            "archive_path": self.archive_path,
            "anchor": self.anchor,
            "preserved_branches": {w: asdict(p) for w, p in self.preserved_branches.items()},
            "converted": list(self.converted),
            "failed": dict(self.failed),
            "artifacts": [a.to_dict() for a in self.artifacts],
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationRecord:
        last = data.get("last_completed_phase")
        return cls(
            migration_id=data["migration_id"],
            source_backend=data["source_backend"],
            target_backend=data["target_backend"],
            phase=MigrationPhase(data["phase"]),
            frozen=bool(data.get("frozen", False)),
            last_completed_phase=MigrationPhase(last) if last else None,
            last_outcome=data.get("last_outcome", ""),
            backup_path=data.get("backup_path"),
            archive_path=data.get("archive_path"),
            anchor=data.get("anchor"),
            preserved_branches={
                w: PreservedBranch(**p) for w, p in (data.get("preserved_branches") or {}).items()
            },
            converted=list(data.get("converted") or []),
            failed=dict(data.get("failed") or {}),
            artifacts=[Artifact.from_dict(a) for a in data.get("artifacts") or []],
            started_at=data.get("started_at", _now()),
            updated_at=data.get("updated_at", _now()),
        )


def record_path(rig_root: Path) -> Path:
    return Path(rig_root) / RIG_DIR / RECORD_FILE


def save_record(rig_root: Path, record: MigrationRecord) -> None:
    """Persist the record using an atomic write."""
    path = record_path(rig_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    record.updated_at = _now()

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def load_record(rig_root: Path) -> MigrationRecord | None:
    """Load the in-flight record, or None when no migration is running.

    A corrupt record raises MigrationError rather than being discarded:
    it describes on-disk artifacts an operator must reconcile.
    """
    path = record_path(rig_root)
    if not path.exists():
        return None
    try:
        with open(path) as f:
            return MigrationRecord.from_dict(json.load(f))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise MigrationError(f"Migration record {path} is unreadable: {e}") from e


def clear_record(rig_root: Path) -> None:
    path = record_path(rig_root)
    if path.exists():
        path.unlink()
        logger.debug("Cleared migration record %s", path)


def migration_status(rig_root: Path) -> dict[str, Any]:
    """Read-only view of the migration state for diagnostic tooling."""
    record = load_record(rig_root)
    if record is None:
        return {"in_progress": False, "phase": None, "frozen": False}
    return {
        "in_progress": True,
        "migration_id": record.migration_id,
        "phase": record.phase.value,
        "frozen": record.frozen,
        "last_completed_phase": record.last_completed_phase.value if record.last_completed_phase else None,
        "last_outcome": record.last_outcome,
        "converted": list(record.converted),
        "failed": dict(record.failed),
        "backup_path": record.backup_path,
    }

"""MigrationController -- phased, resumable rig conversion.

A rig starts as independent clones of a shared object store, one per
worker. Migration converts it into workspaces of one shared anchor on the
target backend:

    precheck -> freeze -> convert_repository -> convert_workspaces
             -> update_config -> resume

``abort`` is reachable from the first four phases. The phase machine is a
``transitions.Machine``; every transition persists the Migration Record
so a crash between phases resumes rather than requiring an abort.
``update_config`` is the commit point: once it has run the rig is
migrated and only manual rollback (see :mod:`rigwright.migration.rollback`)
can take it back.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from transitions import Machine

from rigwright.core.config import RIG_DIR, DispatchGate, load_rig_config, save_rig_config
from rigwright.core.vcs import (
    VCSBackend,
    VCSError,
    VCSProtocol,
    new_from_config,
    new_with_git_dir,
)
from rigwright.migration.backup import (
    BackupManifest,
    archive_rig,
    backup_dir,
    backup_store,
    write_manifest,
)
from rigwright.migration.preflight import PhasePreconditionError, VCSFactory, run_preflight
from rigwright.migration.state import (
    ABORTABLE_PHASES,
    PHASE_ORDER,
    Artifact,
    ArtifactKind,
    MigrationError,
    MigrationPhase,
    MigrationRecord,
    clear_record,
    load_record,
    save_record,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AbortReport",
    "ConversionPartialFailure",
    "MigrationAbortedError",
    "MigrationController",
    "MigrationInProgressError",
    "MigrationResult",
    "NoMigrationError",
]

MIGRATION_DIR = "migration"
STANDALONE_DIR = "standalone"
DEFAULT_MAX_ATTEMPTS = 3
VERIFY_BRANCH = "rigwright-verify"
VCS_METADATA = frozenset({".git", ".jj"})

ProgressCallback = Callable[[MigrationPhase, str, str], None]


class MigrationInProgressError(MigrationError):
    """A Migration Record already exists; resume or abort it first."""


class NoMigrationError(MigrationError):
    """There is no in-flight migration to resume or abort."""


class ConversionPartialFailure(MigrationError):
    """Some workers could not be attached to the anchor after all retries."""

    def __init__(self, converted: list[str], failed: dict[str, str]) -> None:
        self.converted = list(converted)
        self.failed = dict(failed)
        details = "\n".join(f"  {worker}: {error}" for worker, error in sorted(failed.items()))
        super().__init__(
            f"{len(failed)} worker(s) not converted ({len(converted)} converted); "
            f"resume to retry or abort to roll back:\n{details}"
        )


@dataclass
class AbortReport:
    """What an abort undid, for the operator to verify by inspection."""

    phase: MigrationPhase
    removed: list[str] = field(default_factory=list)

    def describe(self) -> str:
        if not self.removed:
            return f"Aborted from {self.phase.value}; nothing to remove"
        return f"Aborted from {self.phase.value}; removed: " + ", ".join(self.removed)


class MigrationAbortedError(MigrationError):
    """A phase failed and the migration rolled itself back."""

    def __init__(self, report: AbortReport, cause: Exception) -> None:
        self.report = report
        super().__init__(f"{cause}. {report.describe()}")


@dataclass
class MigrationResult:
    migration_id: str
    source_backend: VCSBackend
    target_backend: VCSBackend
    anchor: Path
    converted: list[str]
    backup: Path | None = None


class MigrationModel:
    """Model object for the phase machine.

    ``Machine`` attaches ``state`` and the ``advance``/``abort`` triggers.
    Entering any phase rewrites the Migration Record.
    """

    def __init__(self, rig_root: Path, record: MigrationRecord) -> None:
        self.rig_root = rig_root
        self.record = record
        self.state: str = ""

    def on_enter_phase(self, event: Any) -> None:
        self.record.phase = MigrationPhase(event.transition.dest)
        save_record(self.rig_root, self.record)
        logger.debug("Migration %s entered %s", self.record.migration_id, self.record.phase.value)


def _build_transitions() -> list[dict[str, Any]]:
    transitions: list[dict[str, Any]] = [
        {"trigger": "advance", "source": src.value, "dest": dst.value}
        for src, dst in zip(PHASE_ORDER, PHASE_ORDER[1:])
    ]
    transitions.append(
        {
            "trigger": "abort",
            "source": [p.value for p in PHASE_ORDER if p in ABORTABLE_PHASES],
            "dest": MigrationPhase.ABORTED.value,
        }
    )
    return transitions


def _default_factory(path: Path, vcs_type: str) -> VCSProtocol:
    return new_from_config(path, vcs_type)


def _same_path(a: Path, b: Path) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def _copy_leftovers(parked: Path, workspace: Path) -> None:
    """Copy files the new workspace lacks from the parked clone.

    Workers are clean at pre-check, so these are ignored files such as
    local env files and build outputs. VCS metadata is left behind.
    """
    for root, dirs, files in os.walk(parked):
        rel = Path(root).relative_to(parked)
        if rel == Path("."):
            dirs[:] = [d for d in dirs if d not in VCS_METADATA]
        for name in list(dirs):
            dest = workspace / rel / name
            if not os.path.lexists(dest):
                shutil.copytree(Path(root) / name, dest, symlinks=True)
                dirs.remove(name)
        for name in files:
            dest = workspace / rel / name
            if not os.path.lexists(dest):
                shutil.copy2(Path(root) / name, dest, follow_symlinks=False)


class MigrationController:
    """Drive one rig through the migration phases.

    Args:
        rig_root: Rig directory (holds ``.rig/config.yaml``).
        target: Backend the rig converts to. Ignored on resume, where the
            record's target wins.
        archive: Also take a whole-rig archive for level-3 rollback.
        max_attempts: Per-worker conversion attempts in convert_workspaces.
        vcs_factory: Builds a handle for a working directory and backend.
        progress: Called with ``(phase, status, detail)``; status is one of
            ``started``, ``done``, ``failed``.
    """

    def __init__(
        self,
        rig_root: Path | str,
        target: VCSBackend | str | None = None,
        *,
        archive: bool = False,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        vcs_factory: VCSFactory | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.rig_root = Path(rig_root).resolve()
        self.target = VCSBackend(target) if target else None
        self.archive = archive
        self.max_attempts = max_attempts
        self._factory = vcs_factory or _default_factory
        self._progress = progress
        self._gate = DispatchGate(self.rig_root)
        self._model: MigrationModel | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def record(self) -> MigrationRecord | None:
        return self._model.record if self._model else load_record(self.rig_root)

    def run(self) -> MigrationResult:
        """Start a new migration and drive it to completion."""
        if load_record(self.rig_root) is not None:
            raise MigrationInProgressError(
                f"A migration is already in progress for {self.rig_root}; resume or abort it"
            )
        if self.target is None:
            raise ValueError("A target backend is required to start a migration")

        config = load_rig_config(self.rig_root)
        if config.anchor:
            raise MigrationError(
                f"Rig {config.name} already has an anchor at {config.anchor}; "
                "roll it back before migrating again"
            )

        record = MigrationRecord(source_backend=config.vcs.value, target_backend=self.target.value)
        self._attach(record)
        return self._drive()

    def resume(self) -> MigrationResult:
        """Continue an interrupted migration from its recorded phase."""
        record = load_record(self.rig_root)
        if record is None:
            raise NoMigrationError(f"No migration in progress for {self.rig_root}")
        if record.phase == MigrationPhase.ABORTED:
            clear_record(self.rig_root)
            raise NoMigrationError(f"Migration {record.migration_id} was aborted")
        logger.info("Resuming migration %s at %s", record.migration_id, record.phase.value)
        self._attach(record)
        return self._drive()

    def abort(self) -> AbortReport:
        """Undo every artifact created so far, newest first, and thaw dispatch."""
        if self._model is None:
            record = load_record(self.rig_root)
            if record is None:
                raise NoMigrationError(f"No migration in progress for {self.rig_root}")
            self._attach(record)
        assert self._model is not None
        record = self._model.record
        phase = record.phase
        if phase not in ABORTABLE_PHASES:
            raise MigrationError(
                f"Cannot abort from {phase.value}: configuration was already updated; "
                "resume to finish or use manual rollback"
            )

        report = AbortReport(phase=phase)
        for artifact in reversed(list(record.artifacts)):
            described = self._undo(artifact)
            if described:
                report.removed.append(described)
            record.artifacts.remove(artifact)
            save_record(self.rig_root, record)

        if record.frozen or self._gate.is_frozen():
            self._gate.thaw()
            record.frozen = False
        shutil.rmtree(self._migration_dir(), ignore_errors=True)

        self._model.abort()
        clear_record(self.rig_root)
        logger.info(report.describe())
        return report

    # ------------------------------------------------------------------
    # Phase driving
    # ------------------------------------------------------------------

    def _attach(self, record: MigrationRecord) -> None:
        self._model = MigrationModel(self.rig_root, record)
        Machine(
            model=self._model,
            states=[p.value for p in MigrationPhase],
            transitions=_build_transitions(),
            initial=record.phase.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_enter_phase",
        )
        self.target = VCSBackend(record.target_backend)

    def _drive(self) -> MigrationResult:
        assert self._model is not None
        record = self._model.record
        handlers: dict[MigrationPhase, Callable[[MigrationRecord], None]] = {
            MigrationPhase.PRECHECK: self._precheck,
            MigrationPhase.FREEZE: self._freeze,
            MigrationPhase.CONVERT_REPOSITORY: self._convert_repository,
            MigrationPhase.CONVERT_WORKSPACES: self._convert_workspaces,
            MigrationPhase.UPDATE_CONFIG: self._update_config,
            MigrationPhase.RESUME: self._resume,
        }

        while True:
            phase = MigrationPhase(self._model.state)
            self._emit(phase, "started")
            try:
                handlers[phase](record)
            except PhasePreconditionError:
                self._emit(phase, "failed")
                raise
            except Exception as e:
                self._emit(phase, "failed", str(e))
                if phase == MigrationPhase.CONVERT_REPOSITORY:
                    logger.error("Repository conversion failed, aborting: %s", e)
                    raise MigrationAbortedError(self.abort(), e) from e
                if load_record(self.rig_root) is not None:
                    record.last_outcome = f"{phase.value} failed: {e}"
                    save_record(self.rig_root, record)
                raise
            self._emit(phase, "done")
            if phase == MigrationPhase.RESUME:
                break
            record.last_completed_phase = phase
            record.last_outcome = f"{phase.value} completed"
            self._model.advance()

        return MigrationResult(
            migration_id=record.migration_id,
            source_backend=VCSBackend(record.source_backend),
            target_backend=VCSBackend(record.target_backend),
            anchor=self.rig_root / (record.anchor or ""),
            converted=list(record.converted),
            backup=Path(record.backup_path) if record.backup_path else None,
        )

    def _emit(self, phase: MigrationPhase, status: str, detail: str = "") -> None:
        if self._progress is not None:
            self._progress(phase, status, detail)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _precheck(self, record: MigrationRecord) -> None:
        config = load_rig_config(self.rig_root)
        result = run_preflight(self.rig_root, config, self._factory)
        if not result.passed:
            raise PhasePreconditionError(result)

        anchor_name = self._anchor_name(record)
        if (self.rig_root / anchor_name).exists():
            raise MigrationError(f"Anchor path {self.rig_root / anchor_name} already exists")

        record.anchor = anchor_name
        record.preserved_branches = dict(result.branches)

        dest = backup_dir(self.rig_root, record.migration_id)
        try:
            record.backup_path = str(backup_store(config.store_path(self.rig_root), dest))
            record.add_artifact(Artifact(ArtifactKind.BACKUP, str(dest)))
            if self.archive:
                record.archive_path = str(archive_rig(self.rig_root, dest))
                record.add_artifact(Artifact(ArtifactKind.ARCHIVE, record.archive_path))
            write_manifest(
                dest,
                BackupManifest(
                    migration_id=record.migration_id,
                    source_backend=record.source_backend,
                    store=config.store,
                    workers={name: entry.to_dict() for name, entry in config.workers.items()},
                    branches=record.preserved_branches,
                    archive=record.archive_path,
                ),
            )
        except Exception:
            # The record was never persisted; nothing else knows about dest.
            shutil.rmtree(dest, ignore_errors=True)
            raise

    def _freeze(self, record: MigrationRecord) -> None:
        self._gate.freeze()
        record.frozen = True

    def _convert_repository(self, record: MigrationRecord) -> None:
        config = load_rig_config(self.rig_root)
        anchor = self._anchor_path(record)
        if not any(a.kind == ArtifactKind.ANCHOR for a in record.artifacts):
            record.add_artifact(Artifact(ArtifactKind.ANCHOR, str(anchor)))
            save_record(self.rig_root, record)
        if anchor.exists():
            # Left over from an interrupted attempt
            shutil.rmtree(anchor)

        store = config.store_path(self.rig_root)
        anchor_vcs = self._anchor_vcs(record)
        anchor_vcs.clone_bare(str(store), anchor)

        upstream = self._store_upstream(store)
        if upstream:
            anchor_vcs.set_remote_url("origin", upstream)

        default = anchor_vcs.current_branch() or anchor_vcs.default_branch()
        anchor_vcs.rev(default)
        scratch = f"{VERIFY_BRANCH}-{record.migration_id}"
        anchor_vcs.create_branch_from(scratch, default)
        anchor_vcs.delete_branch(scratch, force=True)
        logger.info("Created %s anchor at %s", record.target_backend, anchor)

    def _convert_workspaces(self, record: MigrationRecord) -> None:
        config = load_rig_config(self.rig_root)
        anchor_vcs = self._anchor_vcs(record)

        for worker in sorted(record.preserved_branches):
            if worker in record.converted:
                logger.debug("Worker %s already converted, skipping", worker)
                continue
            last_error: Exception | None = None
            for attempt in range(1, self.max_attempts + 1):
                try:
                    self._convert_worker(record, anchor_vcs, worker, config.worker_path(self.rig_root, worker))
                except (VCSError, OSError, MigrationError) as e:
                    last_error = e
                    logger.warning(
                        "Converting %s failed (attempt %d/%d): %s", worker, attempt, self.max_attempts, e
                    )
                    continue
                record.mark_converted(worker)
                save_record(self.rig_root, record)
                last_error = None
                break
            if last_error is not None:
                record.failed[worker] = str(last_error)
                save_record(self.rig_root, record)

        # A branch can drift if a conversion attempt failed after moving it
        for worker in record.converted:
            preserved = record.preserved_branches[worker]
            if anchor_vcs.rev(preserved.branch) != preserved.commit:
                anchor_vcs.reset_branch(preserved.branch, preserved.commit)

        if record.failed:
            raise ConversionPartialFailure(record.converted, record.failed)

    def _convert_worker(
        self, record: MigrationRecord, anchor_vcs: VCSProtocol, worker: str, path: Path
    ) -> None:
        preserved = record.preserved_branches[worker]
        parked = self._migration_dir() / STANDALONE_DIR / worker

        if parked.exists():
            if self._attached_on(anchor_vcs, path, preserved.branch):
                # Interrupted after attaching but before the record said so
                logger.info("Worker %s was already attached on %s", worker, preserved.branch)
                _copy_leftovers(parked, path)
                return
            logger.info("Restoring half-converted worker %s", worker)
            self._unpark(anchor_vcs, path, parked)
            record.artifacts = [
                a for a in record.artifacts if not (a.kind == ArtifactKind.WORKSPACE and a.worker == worker)
            ]
            save_record(self.rig_root, record)

        if not anchor_vcs.branch_exists(preserved.branch):
            anchor_vcs.create_branch_from(preserved.branch, preserved.commit)
        elif anchor_vcs.rev(preserved.branch) != preserved.commit:
            anchor_vcs.reset_branch(preserved.branch, preserved.commit)

        artifact = Artifact(ArtifactKind.WORKSPACE, str(path), worker=worker, parked=str(parked))
        record.add_artifact(artifact)
        save_record(self.rig_root, record)

        parked.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(path), str(parked))
        try:
            anchor_vcs.workspace_add_existing(path, preserved.branch)
            if not self._attached_on(anchor_vcs, path, preserved.branch):
                raise MigrationError(f"{path} is not listed as a workspace of the anchor")
            _copy_leftovers(parked, path)
        except Exception:
            self._unpark(anchor_vcs, path, parked)
            record.artifacts.remove(artifact)
            save_record(self.rig_root, record)
            raise
        logger.info("Attached %s as a workspace on %s", worker, preserved.branch)

    def _update_config(self, record: MigrationRecord) -> None:
        config = load_rig_config(self.rig_root)
        config.vcs = VCSBackend(record.target_backend)
        config.anchor = record.anchor
        for name in record.converted:
            if name in config.workers:
                config.workers[name].workspace = True
                config.workers[name].branch = record.preserved_branches[name].branch
        save_rig_config(self.rig_root, config)

    def _resume(self, record: MigrationRecord) -> None:
        self._gate.thaw()
        record.frozen = False
        shutil.rmtree(self._migration_dir(), ignore_errors=True)
        clear_record(self.rig_root)
        logger.info("Migration %s complete", record.migration_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _anchor_name(self, record: MigrationRecord) -> str:
        return f".repo.{record.target_backend}.anchor"

    def _anchor_path(self, record: MigrationRecord) -> Path:
        return self.rig_root / (record.anchor or self._anchor_name(record))

    def _anchor_vcs(self, record: MigrationRecord) -> VCSProtocol:
        anchor = self._anchor_path(record)
        if record.target_backend == VCSBackend.GIT.value:
            # Bare repository: no working directory of its own
            return new_with_git_dir(anchor, None, VCSBackend.GIT)
        return self._factory(anchor, record.target_backend)

    def _migration_dir(self) -> Path:
        return self.rig_root / RIG_DIR / MIGRATION_DIR

    def _store_upstream(self, store: Path) -> str | None:
        try:
            return new_with_git_dir(store, None, VCSBackend.GIT).remote_url("origin") or None
        except VCSError:
            return None

    def _is_attached(self, anchor_vcs: VCSProtocol, path: Path) -> bool:
        if not path.exists():
            return False
        return any(_same_path(ws.path, path) for ws in anchor_vcs.workspace_list())

    def _attached_on(self, anchor_vcs: VCSProtocol, path: Path, branch: str) -> bool:
        if not path.exists():
            return False
        return any(
            _same_path(ws.path, path) and ws.branch == branch for ws in anchor_vcs.workspace_list()
        )

    def _unpark(self, anchor_vcs: VCSProtocol, path: Path, parked: Path) -> None:
        if self._is_attached(anchor_vcs, path):
            anchor_vcs.workspace_remove(path, force=True)
        if path.exists():
            shutil.rmtree(path)
        anchor_vcs.workspace_prune()
        shutil.move(str(parked), str(path))

    def _undo(self, artifact: Artifact) -> str | None:
        path = Path(artifact.path)
        if artifact.kind == ArtifactKind.WORKSPACE:
            parked = Path(artifact.parked) if artifact.parked else None
            if parked is None or not parked.exists():
                return None
            record = self._model.record if self._model else None
            anchor_vcs = self._anchor_vcs(record) if record else None
            if anchor_vcs is not None and self._anchor_path(record).exists():
                self._unpark(anchor_vcs, path, parked)
            else:
                if path.exists():
                    shutil.rmtree(path)
                shutil.move(str(parked), str(path))
            return f"workspace {artifact.worker} ({path})"
        if not path.exists():
            return None
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        return f"{artifact.kind.value} {path}"

"""Manual rollback, in escalating depth.

These run outside the phase machine, after a migration finished or was
left in a state ``abort`` cannot handle:

- level a, :func:`rollback_discard_anchor`: delete the new anchor. Only
  allowed while no worker has been attached to it.
- level b, :func:`rollback_restore_store`: put the object-store backup
  back and re-create every worker as an independent clone on its
  pre-migration branch and commit.
- level c, :func:`rollback_restore_archive`: replace the whole rig with
  the pre-migration archive.

Each returns the paths it touched.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from rigwright.core.config import (
    RIG_DIR,
    RigConfig,
    WorkerEntry,
    load_rig_config,
    save_rig_config,
)
from rigwright.core.vcs import VCSBackend, VCSError, new_from_config, new_with_git_dir
from rigwright.migration.backup import (
    BACKUPS_DIR,
    STORE_BACKUP,
    BackupManifest,
    extract_archive,
    latest_backup,
    read_manifest,
)
from rigwright.migration.preflight import VCSFactory
from rigwright.migration.state import MigrationError, clear_record, load_record

logger = logging.getLogger(__name__)

__all__ = [
    "RollbackError",
    "rollback_discard_anchor",
    "rollback_restore_archive",
    "rollback_restore_store",
]


class RollbackError(MigrationError):
    """A manual rollback was refused or could not complete."""


def _resolve_backup(rig_root: Path, backup: Path | None) -> tuple[Path, BackupManifest]:
    directory = backup or latest_backup(rig_root)
    if directory is None:
        raise RollbackError(f"No migration backup found under {rig_root / RIG_DIR / BACKUPS_DIR}")
    try:
        return directory, read_manifest(directory)
    except MigrationError as e:
        raise RollbackError(str(e)) from e


def _factory(factory: VCSFactory | None) -> VCSFactory:
    return factory or (lambda path, vcs_type: new_from_config(path, vcs_type))


def _finish(rig_root: Path, config: RigConfig) -> None:
    config.frozen = False
    save_rig_config(rig_root, config)
    clear_record(rig_root)


def rollback_discard_anchor(rig_root: Path) -> list[Path]:
    """Level a: delete the anchor if no worker is attached to it."""
    rig_root = Path(rig_root).resolve()
    config = load_rig_config(rig_root)
    record = load_record(rig_root)

    anchor_name = config.anchor or (record.anchor if record else None)
    if not anchor_name:
        raise RollbackError("Rig has no anchor to discard")
    attached = [name for name, entry in config.workers.items() if entry.workspace]
    if record:
        attached.extend(w for w in record.converted if w not in attached)
    if attached:
        raise RollbackError(
            f"Workers are attached to the anchor ({', '.join(sorted(attached))}); "
            "use the store backup (level b) or the archive (level c)"
        )

    touched: list[Path] = []
    anchor = rig_root / anchor_name
    if anchor.exists():
        shutil.rmtree(anchor)
        touched.append(anchor)

    if config.anchor:
        config.anchor = None
        if record:
            config.vcs = VCSBackend(record.source_backend)
    _finish(rig_root, config)
    touched.append(rig_root / RIG_DIR)
    logger.info("Discarded anchor %s", anchor)
    return touched


def rollback_restore_store(
    rig_root: Path,
    backup: Path | None = None,
    force: bool = False,
    vcs_factory: VCSFactory | None = None,
) -> list[Path]:
    """Level b: restore the store backup and re-clone every worker.

    Workers with uncommitted work block the rollback unless *force* is set,
    in which case that work is lost.
    """
    rig_root = Path(rig_root).resolve()
    directory, manifest = _resolve_backup(rig_root, backup)
    factory = _factory(vcs_factory)
    config = load_rig_config(rig_root)
    source = VCSBackend(manifest.source_backend)

    workers = {
        name: WorkerEntry(
            path=str(entry["path"]),
            branch=manifest.branches[name].branch if name in manifest.branches else str(entry.get("branch", "")),
        )
        for name, entry in manifest.workers.items()
    }

    if not force:
        dirty = []
        for name, entry in sorted(workers.items()):
            path = rig_root / entry.path
            if not path.exists():
                continue
            try:
                if factory(path, config.vcs.value).has_uncommitted_changes():
                    dirty.append(name)
            except VCSError as e:
                dirty.append(f"{name} ({e})")
        if dirty:
            raise RollbackError(f"Workers have uncommitted changes: {', '.join(dirty)}")

    _check_backup_has_commits(directory, manifest)

    touched: list[Path] = []
    store = rig_root / manifest.store
    if store.exists():
        shutil.rmtree(store)
    shutil.copytree(directory / STORE_BACKUP, store, symlinks=True)
    touched.append(store)

    if config.anchor:
        anchor = rig_root / config.anchor
        if anchor.exists():
            shutil.rmtree(anchor)
            touched.append(anchor)

    for name, entry in sorted(workers.items()):
        path = rig_root / entry.path
        if path.exists():
            shutil.rmtree(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        vcs = factory(path, source.value)
        vcs.clone(str(store), path)
        preserved = manifest.branches.get(name)
        if preserved:
            if not vcs.branch_exists(preserved.branch) and not vcs.remote_branch_exists("origin", preserved.branch):
                # Never pushed: recreate the local-only branch at its captured commit
                vcs.create_branch_from(preserved.branch, preserved.commit)
            vcs.checkout(preserved.branch)
            if vcs.rev("HEAD") != preserved.commit:
                vcs.reset_branch(preserved.branch, preserved.commit)
        touched.append(path)
        logger.info("Re-created worker %s at %s", name, path)

    config.vcs = source
    config.store = manifest.store
    config.anchor = None
    config.workers = workers
    _finish(rig_root, config)
    return touched


def _check_backup_has_commits(directory: Path, manifest: BackupManifest) -> None:
    store = new_with_git_dir(directory / STORE_BACKUP, None, VCSBackend.GIT)
    missing = []
    for name, preserved in sorted(manifest.branches.items()):
        try:
            store.rev(preserved.commit)
        except VCSError:
            missing.append(f"{name} ({preserved.branch} at {preserved.commit[:12]})")
    if missing:
        raise RollbackError(f"Backup {directory} lacks the pre-migration commits of: {', '.join(missing)}")


def rollback_restore_archive(rig_root: Path, backup: Path | None = None) -> list[Path]:
    """Level c: replace the rig's contents with the pre-migration archive.

    Everything under the rig root except the backups directory is deleted
    before the archive is unpacked.
    """
    rig_root = Path(rig_root).resolve()
    directory, manifest = _resolve_backup(rig_root, backup)
    if not manifest.archive:
        raise RollbackError(f"Backup {directory} was taken without an archive")
    archive = Path(manifest.archive)
    if not archive.is_file():
        raise RollbackError(f"Archive {archive} is missing")

    keep = rig_root / RIG_DIR / BACKUPS_DIR
    touched: list[Path] = []
    for child in sorted(rig_root.iterdir()):
        if child.name == RIG_DIR:
            for inner in sorted(child.iterdir()):
                if inner != keep:
                    _remove(inner)
                    touched.append(inner)
            continue
        _remove(child)
        touched.append(child)

    extract_archive(archive, rig_root)
    clear_record(rig_root)
    config = load_rig_config(rig_root)
    if config.frozen:
        config.frozen = False
        save_rig_config(rig_root, config)
    logger.info("Restored rig %s from %s", rig_root, archive)
    return touched


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()

"""Pre-migration backups.

Layout under ``<rig>/.rig/backups/<migration-id>/``::

    store/          copy of the shared object store
    rig.tar.gz      optional archive of the whole rig
    manifest.json   worker -> branch/commit list, path of the store, backend

The manifest outlives the Migration Record so that manual rollback still
works after a migration completed or was cleared.
"""

from __future__ import annotations

import json
import logging
import shutil
import tarfile
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath

from rigwright.core.config import RIG_DIR
from rigwright.migration.state import MigrationError, PreservedBranch

logger = logging.getLogger(__name__)

BACKUPS_DIR = "backups"
STORE_BACKUP = "store"
ARCHIVE_NAME = "rig.tar.gz"
MANIFEST_NAME = "manifest.json"


@dataclass
class BackupManifest:
    migration_id: str
    source_backend: str
    store: str
    workers: dict[str, dict[str, str]] = field(default_factory=dict)
    branches: dict[str, PreservedBranch] = field(default_factory=dict)
    archive: str | None = None

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["branches"] = {w: asdict(b) for w, b in self.branches.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> BackupManifest:
        return cls(
            migration_id=data["migration_id"],
            source_backend=data["source_backend"],
            store=data["store"],
            workers=dict(data.get("workers") or {}),
            branches={w: PreservedBranch(**b) for w, b in (data.get("branches") or {}).items()},
            archive=data.get("archive"),
        )


def backups_root(rig_root: Path) -> Path:
    return rig_root / RIG_DIR / BACKUPS_DIR


def backup_dir(rig_root: Path, migration_id: str) -> Path:
    return backups_root(rig_root) / migration_id


def backup_store(store: Path, dest_dir: Path) -> Path:
    """Copy the object store into *dest_dir* and return the copy's path."""
    if not store.is_dir():
        raise MigrationError(f"Object store {store} does not exist")
    dest = dest_dir / STORE_BACKUP
    if dest.exists():
        raise MigrationError(f"Backup {dest} already exists")
    dest_dir.mkdir(parents=True, exist_ok=True)
    shutil.copytree(store, dest, symlinks=True)
    logger.info("Backed up %s to %s", store, dest)
    return dest


def archive_rig(rig_root: Path, dest_dir: Path) -> Path:
    """Write a gzip archive of the whole rig, excluding earlier backups."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    archive = dest_dir / ARCHIVE_NAME
    excluded = PurePosixPath(".", RIG_DIR, BACKUPS_DIR)

    def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        member = PurePosixPath(info.name)
        if member == excluded or excluded in member.parents:
            return None
        return info

    with tarfile.open(archive, "w:gz") as tar:
        tar.add(rig_root, arcname=".", filter=_filter)
    logger.info("Archived rig %s to %s", rig_root, archive)
    return archive


def extract_archive(archive: Path, rig_root: Path) -> None:
    """Unpack a rig archive over *rig_root*."""
    if not archive.is_file():
        raise MigrationError(f"Archive {archive} does not exist")
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(rig_root, filter="data")


def write_manifest(dest_dir: Path, manifest: BackupManifest) -> Path:
    dest_dir.mkdir(parents=True, exist_ok=True)
    path = dest_dir / MANIFEST_NAME
    path.write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")
    return path


def read_manifest(dest_dir: Path) -> BackupManifest:
    path = dest_dir / MANIFEST_NAME
    if not path.exists():
        raise MigrationError(f"No backup manifest at {path}")
    try:
        return BackupManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise MigrationError(f"Backup manifest {path} is unreadable: {e}") from e


def latest_backup(rig_root: Path) -> Path | None:
    """Most recently written backup directory that carries a manifest."""
    root = backups_root(rig_root)
    if not root.is_dir():
        return None
    candidates = [d for d in root.iterdir() if (d / MANIFEST_NAME).exists()]
    if not candidates:
        return None
    return max(candidates, key=lambda d: (d / MANIFEST_NAME).stat().st_mtime)

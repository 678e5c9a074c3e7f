"""Rig migration between VCS backends.

Usage:
    from rigwright.migration import MigrationController

    result = MigrationController(rig_root, "jj", archive=True).run()
"""

from rigwright.migration.controller import (
    AbortReport,
    ConversionPartialFailure,
    MigrationAbortedError,
    MigrationController,
    MigrationInProgressError,
    MigrationResult,
    NoMigrationError,
)
from rigwright.migration.preflight import (
    PhasePreconditionError,
    PreflightIssue,
    PreflightResult,
    run_preflight,
)
from rigwright.migration.rollback import (
    RollbackError,
    rollback_discard_anchor,
    rollback_restore_archive,
    rollback_restore_store,
)
from rigwright.migration.state import (
    MigrationError,
    MigrationPhase,
    MigrationRecord,
    load_record,
    migration_status,
)

__all__ = [
    "AbortReport",
    "ConversionPartialFailure",
    "MigrationAbortedError",
    "MigrationController",
    "MigrationError",
    "MigrationInProgressError",
    "MigrationPhase",
    "MigrationRecord",
    "MigrationResult",
    "NoMigrationError",
    "PhasePreconditionError",
    "PreflightIssue",
    "PreflightResult",
    "RollbackError",
    "load_record",
    "migration_status",
    "rollback_discard_anchor",
    "rollback_restore_archive",
    "rollback_restore_store",
    "run_preflight",
]

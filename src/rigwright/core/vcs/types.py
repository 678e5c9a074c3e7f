"""
VCS Types
=========

Shared value types used by every VCS backend. These carry no behavior
beyond a few derived properties; adapters produce them and callers
consume them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


# =============================================================================
# Enums
# =============================================================================


class VCSBackend(str, Enum):
    """Supported VCS backends."""

    GIT = "git"
    JUJUTSU = "jj"


# =============================================================================
# Dataclasses
# =============================================================================


@dataclass(frozen=True)
class VCSCapabilities:
    """Describes what a VCS backend can do.

    Callers that need backend-specific behavior query these flags rather
    than inspecting the adapter type.
    """

    supports_staging: bool
    supports_stash: bool
    supports_conflict_storage: bool
    supports_operation_log: bool
    supports_colocated: bool
    supports_workspaces: bool = True


@dataclass
class Status:
    """Point-in-time working directory state.

    ``clean`` is true iff all four path lists are empty.
    """

    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.modified or self.added or self.deleted or self.untracked)


@dataclass(frozen=True)
class Workspace:
    """A git worktree or jj workspace.

    ``branch`` is empty only for a detached workspace.
    """

    path: Path
    branch: str
    commit: str

    @property
    def detached(self) -> bool:
        return not self.branch


@dataclass
class UncommittedWork:
    """Aggregate view of work that would be lost if a directory vanished."""

    has_changes: bool = False
    stash_count: int = 0
    unpushed_commits: int = 0
    modified_files: list[str] = field(default_factory=list)
    untracked_files: list[str] = field(default_factory=list)

    def is_clean(self) -> bool:
        return not self.has_changes and self.stash_count == 0 and self.unpushed_commits == 0

    def summary(self) -> str:
        """Short human readable description, e.g. ``3 modified, 1 stash``."""
        parts: list[str] = []
        if self.modified_files:
            parts.append(f"{len(self.modified_files)} modified")
        if self.untracked_files:
            parts.append(f"{len(self.untracked_files)} untracked")
        if self.has_changes and not parts:
            parts.append("uncommitted changes")
        if self.stash_count:
            parts.append(f"{self.stash_count} stash" + ("es" if self.stash_count != 1 else ""))
        if self.unpushed_commits:
            parts.append(f"{self.unpushed_commits} unpushed")
        return ", ".join(parts) if parts else "clean"


# =============================================================================
# Capability Constants
# =============================================================================

GIT_CAPABILITIES = VCSCapabilities(
    supports_staging=True,
    supports_stash=True,
    supports_conflict_storage=False,
    supports_operation_log=False,
    supports_colocated=False,
)

JJ_CAPABILITIES = VCSCapabilities(
    supports_staging=False,
    supports_stash=False,
    supports_conflict_storage=True,
    supports_operation_log=True,
    supports_colocated=True,
)

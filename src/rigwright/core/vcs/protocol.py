"""
VCS Protocol
============

The capability set every backend implements. Higher-level managers
(worker lifecycle, merge queue, CLI commands, the migration controller)
talk to this interface only and never to backend internals.

A handle is bound to one working directory and one backend for its whole
lifetime. Handles are not thread-safe: callers keep one handle per worker
and serialize calls against a single directory themselves.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .types import Status, UncommittedWork, VCSBackend, VCSCapabilities, Workspace


@runtime_checkable
class VCSProtocol(Protocol):
    """Interface contract for VCS backends (GitVCS and JujutsuVCS)."""

    @property
    def backend(self) -> VCSBackend:
        """Return which backend this is."""
        ...

    @property
    def capabilities(self) -> VCSCapabilities:
        """Return capabilities of this backend."""
        ...

    @property
    def work_dir(self) -> Path:
        """Directory the handle is bound to."""
        ...

    # =========================================================================
    # Repository Setup
    # =========================================================================

    def clone(self, url: str, dest: Path) -> None:
        """Clone a repository to ``dest``."""
        ...

    def clone_bare(self, url: str, dest: Path) -> None:
        """Create the shared anchor that workspaces attach to.

        Implementation notes:
            - Git: a true bare repository (``git clone --bare``)
            - jj: a colocated repository (``jj git clone --colocate``)
        """
        ...

    # =========================================================================
    # Branch / Bookmark Operations
    # =========================================================================

    def current_branch(self) -> str:
        """Current branch (git) or bookmark on the working change (jj)."""
        ...

    def default_branch(self) -> str:
        """Default branch name, e.g. ``main``."""
        ...

    def checkout(self, ref: str) -> None:
        """Switch the working directory to ``ref``."""
        ...

    def create_branch(self, name: str) -> None:
        """Create a branch at HEAD. Fails if ``name`` already exists."""
        ...

    def create_branch_from(self, name: str, ref: str) -> None:
        """Create a branch at ``ref``. Fails if ``name`` already exists."""
        ...

    def delete_branch(self, name: str, force: bool = False) -> None:
        ...

    def list_branches(self, pattern: str = "") -> list[str]:
        """Local branches matching a glob ``pattern`` (all when empty)."""
        ...

    def branch_exists(self, name: str) -> bool:
        ...

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        ...

    def reset_branch(self, name: str, ref: str) -> None:
        """Force-move ``name`` to ``ref``, even across non-ancestor jumps."""
        ...

    # =========================================================================
    # Remote Operations
    # =========================================================================

    def fetch(self, remote: str) -> None:
        ...

    def fetch_branch(self, remote: str, branch: str) -> None:
        ...

    def pull(self, remote: str, branch: str) -> None:
        """Fetch, then integrate with the backend's native strategy."""
        ...

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        ...

    def delete_remote_branch(self, remote: str, branch: str) -> None:
        ...

    def remote_url(self, remote: str) -> str:
        ...

    def set_remote_url(self, remote: str, url: str) -> None:
        ...

    # =========================================================================
    # Staging & Commits
    # =========================================================================

    def add(self, *paths: str) -> None:
        """Stage paths. A no-op on backends that track everything."""
        ...

    def commit(self, message: str) -> None:
        """Same effect as ``commit_all``; ``add`` only matters for partial staging tools."""
        ...

    def commit_all(self, message: str) -> None:
        """Record every outstanding modification as a new change."""
        ...

    def commit_message(self, ref: str = "HEAD") -> str:
        """Full description of the commit ``ref`` resolves to."""
        ...

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Status:
        ...

    def has_uncommitted_changes(self) -> bool:
        ...

    def check_uncommitted_work(self) -> UncommittedWork:
        ...

    # =========================================================================
    # Merge & Rebase
    # =========================================================================

    def merge(self, branch: str) -> None:
        """Merge ``branch`` into the current one.

        Raises MergeConflictError and leaves no conflicted change behind
        on backends that could otherwise commit the conflict.
        """
        ...

    def merge_no_ff(self, branch: str, message: str) -> None:
        ...

    def rebase(self, onto: str) -> None:
        ...

    def abort_merge(self) -> None:
        ...

    def abort_rebase(self) -> None:
        ...

    def check_conflicts(self, source: str, target: str) -> list[str]:
        """Paths that would conflict merging ``source`` into ``target``.

        Never changes refs, the working directory, or history.
        """
        ...

    # Primitives the conflict check is layered on.

    def snapshot_state(self) -> Any:
        """Capture an opaque token from which the current state can be restored."""
        ...

    def restore_state(self, token: Any) -> None:
        ...

    def trial_merge(self, source: str, target: str) -> list[str]:
        """Merge ``source`` into a disposable copy of ``target``.

        Leaves the directory dirty; the caller restores it.
        """
        ...

    # =========================================================================
    # Workspaces (git worktrees / jj workspaces)
    # =========================================================================

    def workspace_add(self, path: Path, branch: str) -> None:
        """Create a new branch and a workspace on it in one step."""
        ...

    def workspace_add_detached(self, path: Path, ref: str) -> None:
        ...

    def workspace_add_existing(self, path: Path, branch: str) -> None:
        """Attach to an existing branch; fails if it is checked out elsewhere."""
        ...

    def workspace_add_existing_force(self, path: Path, branch: str) -> None:
        ...

    def workspace_remove(self, path: Path, force: bool = False) -> None:
        ...

    def workspace_prune(self) -> None:
        """Drop registry entries whose directory no longer exists."""
        ...

    def workspace_list(self) -> list[Workspace]:
        """The backend's workspace registry (not a filesystem scan)."""
        ...

    # =========================================================================
    # Comparison & History
    # =========================================================================

    def rev(self, ref: str) -> str:
        ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        ...

    def commits_ahead(self, base: str, branch: str) -> int:
        ...

    def branch_created_date(self, branch: str) -> str:
        """Date of the first commit unique to ``branch`` (YYYY-MM-DD)."""
        ...

    def branch_pushed_to_remote(self, branch: str, remote: str) -> tuple[bool, int]:
        """Whether ``branch`` exists on ``remote`` and how many commits are unpushed."""
        ...

    def stash_count(self) -> int:
        """Number of stashes. Always 0 on backends without stashes."""
        ...

    def unpushed_commits(self) -> int:
        ...

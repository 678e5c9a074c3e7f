"""
VCS Abstraction Package
=======================

A unified interface for version control operations, backed by either
git or Jujutsu (jj).

Usage:
    from rigwright.core.vcs import new_from_config, VCSBackend

    vcs = new_from_config(worker_dir, VCSBackend.GIT)
    if vcs.check_uncommitted_work().is_clean():
        ...
"""

from __future__ import annotations

# Enums
from .types import VCSBackend

# Dataclasses
from .types import (
    Status,
    UncommittedWork,
    VCSCapabilities,
    Workspace,
)

# Capability constants
from .types import (
    GIT_CAPABILITIES,
    JJ_CAPABILITIES,
)

# Protocol
from .protocol import VCSProtocol

# Exceptions
from .exceptions import (
    AuthenticationError,
    BranchExistsError,
    MergeConflictError,
    NotARepositoryError,
    RebaseConflictError,
    VCSBackendMismatchError,
    VCSCommandError,
    VCSError,
    VCSNotFoundError,
    VCSTimeoutError,
)

# Implementations
from .git import GitVCS
from .jujutsu import JujutsuVCS

# Factory and detection
from .detection import (
    detect_available_backends,
    detect_vcs_type,
    get_git_version,
    get_jj_version,
    is_git_available,
    is_jj_available,
    new_from_config,
    new_vcs,
    new_with_git_dir,
)

# Conflict checking
from .conflicts import check_conflicts, exclusive

__all__ = [
    # Enums
    "VCSBackend",
    # Dataclasses
    "Status",
    "UncommittedWork",
    "VCSCapabilities",
    "Workspace",
    # Capability constants
    "GIT_CAPABILITIES",
    "JJ_CAPABILITIES",
    # Protocol
    "VCSProtocol",
    # Exceptions
    "VCSError",
    "VCSNotFoundError",
    "NotARepositoryError",
    "MergeConflictError",
    "RebaseConflictError",
    "AuthenticationError",
    "VCSBackendMismatchError",
    "VCSCommandError",
    "VCSTimeoutError",
    "BranchExistsError",
    # Implementations
    "GitVCS",
    "JujutsuVCS",
    # Factory and detection
    "detect_vcs_type",
    "new_vcs",
    "new_from_config",
    "new_with_git_dir",
    "is_git_available",
    "is_jj_available",
    "get_git_version",
    "get_jj_version",
    "detect_available_backends",
    # Conflict checking
    "check_conflicts",
    "exclusive",
]

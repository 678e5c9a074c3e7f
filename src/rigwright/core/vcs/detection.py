"""
VCS Detection Module
====================

Tool detection and the factory functions that hand callers an adapter.

Directory detection checks for the jj marker first: a colocated
repository carries both ``.jj`` and ``.git`` and must resolve to jj.
Whenever the caller already knows the backend (from the rig
configuration), explicit construction wins over detection, because a
directory mid-migration can transiently carry both markers.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path

from .exceptions import NotARepositoryError, VCSBackendMismatchError
from .git import GitVCS
from .jujutsu import JujutsuVCS
from .protocol import VCSProtocol
from .types import VCSBackend


# =============================================================================
# Tool Detection Functions
# =============================================================================


@lru_cache(maxsize=1)
def is_jj_available() -> bool:
    """
    Check if jj is installed and working.

    Returns:
        True if jj is installed and responds to --version, False otherwise.
    """
    if shutil.which("jj") is None:
        return False
    try:
        result = subprocess.run(["jj", "--version"], capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


@lru_cache(maxsize=1)
def is_git_available() -> bool:
    """
    Check if git is installed and working.

    Returns:
        True if git is installed and responds to --version, False otherwise.
    """
    if shutil.which("git") is None:
        return False
    try:
        result = subprocess.run(["git", "--version"], capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


def _tool_version(tool: str, pattern: str) -> str | None:
    try:
        result = subprocess.run([tool, "--version"], capture_output=True, timeout=5, text=True)
    except (subprocess.TimeoutExpired, OSError):
        return None
    if result.returncode != 0:
        return None
    match = re.search(pattern, result.stdout.strip())
    return match.group(1) if match else "unknown"


@lru_cache(maxsize=1)
def get_jj_version() -> str | None:
    """Installed jj version (e.g. ``"0.23.0"``), or None if not installed."""
    if not is_jj_available():
        return None
    return _tool_version("jj", r"jj\s+(\d+\.\d+\.\d+)")


@lru_cache(maxsize=1)
def get_git_version() -> str | None:
    """Installed git version (e.g. ``"2.43.0"``), or None if not installed."""
    if not is_git_available():
        return None
    return _tool_version("git", r"git version\s+(\d+\.\d+\.\d+)")


def detect_available_backends() -> list[VCSBackend]:
    """
    Detect which VCS tools are installed and available.

    Returns:
        List of available backends, in preference order (jj first if available).
    """
    backends = []
    if is_jj_available():
        backends.append(VCSBackend.JUJUTSU)
    if is_git_available():
        backends.append(VCSBackend.GIT)
    return backends


# =============================================================================
# Directory Detection
# =============================================================================


def _has_jj_repo(directory: Path) -> bool:
    return (directory / ".jj").is_dir()


def _has_git_repo(directory: Path) -> bool:
    # A worktree carries a .git file instead of a directory
    return (directory / ".git").exists()


def detect_vcs_type(directory: Path | str) -> VCSBackend:
    """
    Return the backend a working directory uses.

    Raises:
        NotARepositoryError: Neither marker is present.
    """
    directory = Path(directory)
    if _has_jj_repo(directory):
        return VCSBackend.JUJUTSU
    if _has_git_repo(directory):
        return VCSBackend.GIT
    raise NotARepositoryError(f"{directory} is not a git or jj repository")


# =============================================================================
# Factory Functions
# =============================================================================


def new_vcs(directory: Path | str, timeout: float | None = None) -> VCSProtocol:
    """Auto-detect the backend of *directory* and return a handle bound to it."""
    backend = detect_vcs_type(directory)
    return _instantiate(backend, work_dir=Path(directory), timeout=timeout)


def new_from_config(
    directory: Path | str,
    vcs_type: VCSBackend | str | None = None,
    timeout: float | None = None,
) -> VCSProtocol:
    """
    Build a handle for a backend the caller already knows.

    Falls back to auto-detection only when no type is given.
    """
    if not vcs_type:
        return new_vcs(directory, timeout=timeout)
    backend = VCSBackend(vcs_type)
    directory = Path(directory)
    has_jj, has_git = _has_jj_repo(directory), _has_git_repo(directory)
    if backend == VCSBackend.GIT and has_jj and not has_git:
        raise VCSBackendMismatchError(f"{directory} is a non-colocated jj workspace, not a git repository")
    if backend == VCSBackend.JUJUTSU and has_git and not has_jj:
        raise VCSBackendMismatchError(f"{directory} is a git repository without jj tracking")
    return _instantiate(backend, work_dir=directory, timeout=timeout)


def new_with_git_dir(
    meta_dir: Path | str,
    work_dir: Path | str | None,
    vcs_type: VCSBackend | str | None,
    timeout: float | None = None,
) -> VCSProtocol:
    """
    Build a handle whose object store lives apart from any working directory.

    Used for a rig's shared bare/colocated anchor. The type is required
    because detection only works against a normal working directory.
    """
    if not vcs_type:
        raise ValueError("VCS type required for explicit repository directory")
    backend = VCSBackend(vcs_type)
    work = Path(work_dir) if work_dir else None
    if backend == VCSBackend.JUJUTSU:
        return JujutsuVCS(work_dir=work, repo_dir=Path(meta_dir), timeout=timeout)
    return GitVCS(work_dir=work, git_dir=Path(meta_dir), timeout=timeout)


def _instantiate(backend: VCSBackend, work_dir: Path, timeout: float | None) -> VCSProtocol:
    if backend == VCSBackend.JUJUTSU:
        return JujutsuVCS(work_dir=work_dir, timeout=timeout)
    return GitVCS(work_dir=work_dir, timeout=timeout)


# =============================================================================
# Cache Management (for testing)
# =============================================================================


def _clear_detection_cache() -> None:
    """
    Clear the detection cache. For testing purposes only.
    """
    is_jj_available.cache_clear()
    is_git_available.cache_clear()
    get_jj_version.cache_clear()
    get_git_version.cache_clear()

"""
Tests for VCS detection and factory functions.
"""

import shutil
import subprocess
from unittest.mock import patch

import pytest

from rigwright.core.vcs import (
    GitVCS,
    JujutsuVCS,
    NotARepositoryError,
    VCSBackend,
    VCSBackendMismatchError,
    detect_available_backends,
    detect_vcs_type,
    get_git_version,
    is_git_available,
    is_jj_available,
    new_from_config,
    new_vcs,
    new_with_git_dir,
)
from rigwright.core.vcs.detection import _clear_detection_cache


def _check_jj_available():
    """Check if jj is available (uncached for test setup)."""
    if shutil.which("jj") is None:
        return False
    try:
        result = subprocess.run(["jj", "--version"], capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


JJ_AVAILABLE = _check_jj_available()

requires_jj = pytest.mark.skipif(not JJ_AVAILABLE, reason="jj not installed")


@pytest.fixture(autouse=True)
def clear_cache():
    """Clear detection cache before each test."""
    _clear_detection_cache()
    yield
    _clear_detection_cache()


# =============================================================================
# Tool Detection Tests
# =============================================================================


class TestToolDetection:
    def test_git_is_available(self):
        assert is_git_available() is True

    def test_git_version_is_semver_like(self):
        version = get_git_version()
        assert version is not None
        parts = version.split(".")
        assert len(parts) >= 3
        assert parts[0].isdigit()

    def test_missing_git_binary(self):
        with patch("rigwright.core.vcs.detection.shutil.which", return_value=None):
            _clear_detection_cache()
            assert is_git_available() is False
            assert get_git_version() is None

    def test_jj_availability_matches_path(self):
        assert is_jj_available() is JJ_AVAILABLE

    def test_available_backends_prefer_jj(self):
        backends = detect_available_backends()
        assert VCSBackend.GIT in backends
        if JJ_AVAILABLE:
            assert backends[0] == VCSBackend.JUJUTSU


# =============================================================================
# Directory Detection Tests
# =============================================================================


class TestDetectVcsType:
    def test_git_directory(self, git_repo):
        assert detect_vcs_type(git_repo) == VCSBackend.GIT

    def test_jj_marker_wins_over_git(self, git_repo):
        (git_repo / ".jj").mkdir()
        assert detect_vcs_type(git_repo) == VCSBackend.JUJUTSU

    def test_worktree_with_git_file(self, tmp_path):
        worktree = tmp_path / "wt"
        worktree.mkdir()
        (worktree / ".git").write_text("gitdir: /elsewhere\n")
        assert detect_vcs_type(worktree) == VCSBackend.GIT

    def test_plain_directory(self, tmp_path):
        with pytest.raises(NotARepositoryError):
            detect_vcs_type(tmp_path)


# =============================================================================
# Factory Tests
# =============================================================================


class TestFactories:
    def test_new_vcs_detects(self, git_repo):
        vcs = new_vcs(git_repo)
        assert isinstance(vcs, GitVCS)
        assert vcs.work_dir == git_repo

    def test_new_from_config_explicit(self, git_repo):
        assert isinstance(new_from_config(git_repo, "git"), GitVCS)

    def test_new_from_config_without_type_detects(self, git_repo):
        assert isinstance(new_from_config(git_repo, None), GitVCS)

    def test_new_from_config_colocated_as_git(self, git_repo):
        (git_repo / ".jj").mkdir()
        assert isinstance(new_from_config(git_repo, VCSBackend.GIT), GitVCS)
        assert isinstance(new_from_config(git_repo, VCSBackend.JUJUTSU), JujutsuVCS)

    def test_git_requested_for_jj_only_directory(self, tmp_path):
        (tmp_path / ".jj").mkdir()
        with pytest.raises(VCSBackendMismatchError):
            new_from_config(tmp_path, VCSBackend.GIT)

    def test_jj_requested_for_git_only_directory(self, git_repo):
        with pytest.raises(VCSBackendMismatchError):
            new_from_config(git_repo, "jj")

    def test_timeout_is_passed_through(self, git_repo):
        vcs = new_from_config(git_repo, "git", timeout=3)
        assert vcs._timeout == 3

    def test_new_with_git_dir_requires_type(self, tmp_path):
        with pytest.raises(ValueError):
            new_with_git_dir(tmp_path / "repo.git", tmp_path, None)

    def test_new_with_git_dir_builds_bare_handle(self, git_repo, tmp_path):
        bare = tmp_path / "anchor.git"
        subprocess.run(["git", "clone", "-q", "--bare", str(git_repo), str(bare)], check=True)
        vcs = new_with_git_dir(bare, None, "git")
        assert isinstance(vcs, GitVCS)
        assert vcs.git_dir == bare
        assert vcs.branch_exists("main")

    def test_new_with_git_dir_for_jj(self, tmp_path):
        vcs = new_with_git_dir(tmp_path / "anchor", None, VCSBackend.JUJUTSU)
        assert isinstance(vcs, JujutsuVCS)
        assert vcs.work_dir == tmp_path / "anchor"

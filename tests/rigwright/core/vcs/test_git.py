"""
Tests for GitVCS against real git repositories.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from rigwright.core.vcs import (
    BranchExistsError,
    GitVCS,
    MergeConflictError,
    NotARepositoryError,
    RebaseConflictError,
    VCSBackend,
    VCSCommandError,
    VCSProtocol,
)


@pytest.fixture
def vcs(git_repo) -> GitVCS:
    return GitVCS(work_dir=git_repo)


@pytest.fixture
def remote_setup(tmp_path, git_repo, git):
    """A bare origin with ``main`` pushed, and a clone tracking it."""
    origin = tmp_path / "origin.git"
    subprocess.run(["git", "clone", "-q", "--bare", str(git_repo), str(origin)], check=True)
    clone = tmp_path / "clone"
    subprocess.run(["git", "clone", "-q", str(origin), str(clone)], check=True)
    return origin, clone


# =============================================================================
# Basics
# =============================================================================


class TestGitBasics:
    def test_conforms_to_protocol(self, vcs):
        assert isinstance(vcs, VCSProtocol)

    def test_backend_and_capabilities(self, vcs):
        assert vcs.backend == VCSBackend.GIT
        assert vcs.capabilities.supports_staging

    def test_requires_a_directory(self):
        with pytest.raises(ValueError):
            GitVCS()

    def test_not_a_repository(self, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(NotARepositoryError):
            GitVCS(work_dir=plain).status()


# =============================================================================
# Branches
# =============================================================================


class TestGitBranches:
    def test_current_and_default_branch(self, vcs):
        assert vcs.current_branch() == "main"
        assert vcs.default_branch() == "main"

    def test_detached_head_has_no_branch(self, vcs, git_repo, git):
        git(git_repo, "checkout", "-q", "--detach")
        assert vcs.current_branch() == ""

    def test_create_and_list(self, vcs):
        vcs.create_branch("feature/a")
        vcs.create_branch_from("feature/b", "main")
        assert vcs.branch_exists("feature/a")
        assert vcs.list_branches("feature/*") == ["feature/a", "feature/b"]

    def test_create_existing_raises(self, vcs):
        with pytest.raises(BranchExistsError):
            vcs.create_branch("main")

    def test_delete_branch(self, vcs):
        vcs.create_branch("gone")
        vcs.delete_branch("gone")
        assert not vcs.branch_exists("gone")

    def test_checkout(self, vcs):
        vcs.create_branch("other")
        vcs.checkout("other")
        assert vcs.current_branch() == "other"

    def test_reset_branch_not_checked_out(self, vcs, git_repo):
        base = vcs.rev("HEAD")
        vcs.create_branch("moving")
        (git_repo / "new.txt").write_text("x\n")
        vcs.commit_all("second")
        vcs.reset_branch("moving", "HEAD")
        assert vcs.rev("moving") == vcs.rev("HEAD") != base

    def test_reset_current_branch_moves_head(self, vcs, git_repo):
        base = vcs.rev("HEAD")
        (git_repo / "new.txt").write_text("x\n")
        vcs.commit_all("second")
        vcs.reset_branch("main", base)
        assert vcs.rev("HEAD") == base
        assert vcs.status().clean


# =============================================================================
# Commits & Status
# =============================================================================


class TestGitCommits:
    def test_status_categories(self, vcs, git_repo, git):
        (git_repo / "README.md").write_text("changed\n")
        (git_repo / "staged.txt").write_text("s\n")
        git(git_repo, "add", "staged.txt")
        (git_repo / "loose.txt").write_text("l\n")
        status = vcs.status()
        assert status.modified == ["README.md"]
        assert status.added == ["staged.txt"]
        assert status.untracked == ["loose.txt"]
        assert vcs.has_uncommitted_changes()

    def test_commit_without_add_records_everything(self, vcs, git_repo):
        (git_repo / "README.md").write_text("edited\n")
        (git_repo / "b.txt").write_text("b\n")
        vcs.commit("m")
        assert vcs.status().clean
        assert not vcs.has_uncommitted_changes()
        assert vcs.commit_message() == "m"

    def test_commit_after_partial_add_matches_commit_all(self, vcs, git_repo):
        (git_repo / "a.txt").write_text("a\n")
        (git_repo / "b.txt").write_text("b\n")
        vcs.add("a.txt")
        vcs.commit("add a and b")
        assert vcs.status().clean
        assert vcs.commit_message() == "add a and b"

    def test_commit_all_includes_untracked(self, vcs, git_repo):
        (git_repo / "c.txt").write_text("c\n")
        vcs.commit_all("add c")
        assert vcs.status().clean
        assert vcs.commit_message("HEAD") == "add c"

    def test_check_uncommitted_work(self, vcs, git_repo, git):
        (git_repo / "x.txt").write_text("x\n")
        git(git_repo, "stash", "-u", "-q")
        work = vcs.check_uncommitted_work()
        assert not work.has_changes
        assert work.stash_count == 1
        assert not work.is_clean()


# =============================================================================
# Merge & Rebase
# =============================================================================


class TestGitMerge:
    def test_clean_merge(self, conflicting_branches):
        vcs = GitVCS(work_dir=conflicting_branches)
        vcs.checkout("left")
        vcs.merge("clean")
        assert vcs.is_ancestor("clean", "HEAD")

    def test_conflicting_merge_raises_with_files(self, conflicting_branches):
        vcs = GitVCS(work_dir=conflicting_branches)
        vcs.checkout("left")
        with pytest.raises(MergeConflictError) as info:
            vcs.merge("right")
        assert info.value.files == ["README.md"]
        vcs.abort_merge()
        assert vcs.status().clean

    def test_merge_no_ff_creates_merge_commit(self, conflicting_branches):
        vcs = GitVCS(work_dir=conflicting_branches)
        vcs.merge_no_ff("clean", "Merge clean")
        assert vcs.commit_message() == "Merge clean"
        assert vcs.commits_ahead("clean", "main") == 1

    def test_conflicting_rebase(self, conflicting_branches):
        vcs = GitVCS(work_dir=conflicting_branches)
        vcs.checkout("left")
        with pytest.raises(RebaseConflictError) as info:
            vcs.rebase("right")
        assert "README.md" in info.value.files
        vcs.abort_rebase()
        assert vcs.current_branch() == "left"


# =============================================================================
# Remotes
# =============================================================================


class TestGitClone:
    def test_fresh_clone_is_clean(self, git_repo, tmp_path):
        dest = tmp_path / "cloned"
        vcs = GitVCS(work_dir=dest)
        vcs.clone(str(git_repo), dest)
        assert vcs.status().clean
        assert not vcs.has_uncommitted_changes()
        assert vcs.check_uncommitted_work().is_clean()
        assert vcs.current_branch() == "main"

    def test_bare_clone_hosts_worktrees(self, git_repo, tmp_path):
        anchor = tmp_path / "anchor.git"
        GitVCS(git_dir=anchor).clone_bare(str(git_repo), anchor)
        assert (anchor / "HEAD").is_file()
        assert not (anchor / ".git").exists()

        bare = GitVCS(git_dir=anchor)
        bare.workspace_add_existing(tmp_path / "wt", "main")
        worktree = GitVCS(work_dir=tmp_path / "wt")
        assert worktree.status().clean
        assert worktree.rev("HEAD") == GitVCS(work_dir=git_repo).rev("HEAD")


class TestGitRemotes:
    def test_push_and_remote_branch_exists(self, remote_setup):
        origin, clone = remote_setup
        vcs = GitVCS(work_dir=clone)
        vcs.create_branch("feature")
        vcs.checkout("feature")
        assert not vcs.remote_branch_exists("origin", "feature")
        vcs.push("origin", "feature")
        assert vcs.remote_branch_exists("origin", "feature")
        assert vcs.branch_pushed_to_remote("feature", "origin") == (True, 0)

    def test_unpushed_commits(self, remote_setup):
        _, clone = remote_setup
        vcs = GitVCS(work_dir=clone)
        (clone / "local.txt").write_text("l\n")
        vcs.commit_all("local only")
        assert vcs.unpushed_commits() == 1

    def test_remote_url_round_trip(self, remote_setup):
        origin, clone = remote_setup
        vcs = GitVCS(work_dir=clone)
        assert Path(vcs.remote_url("origin")) == origin
        vcs.set_remote_url("backup", "https://example.com/backup.git")
        assert vcs.remote_url("backup") == "https://example.com/backup.git"

    def test_pull_fast_forwards(self, remote_setup, tmp_path):
        origin, clone = remote_setup
        other = tmp_path / "other"
        subprocess.run(["git", "clone", "-q", str(origin), str(other)], check=True)
        writer = GitVCS(work_dir=other)
        (other / "up.txt").write_text("u\n")
        writer.commit_all("upstream")
        writer.push("origin", "main")

        vcs = GitVCS(work_dir=clone)
        vcs.pull("origin", "main")
        assert vcs.rev("HEAD") == writer.rev("HEAD")


# =============================================================================
# Workspaces
# =============================================================================


class TestGitWorkspaces:
    def test_add_list_remove(self, vcs, tmp_path):
        path = tmp_path / "ws"
        vcs.workspace_add(path, "ws-branch")
        listed = {ws.path.resolve(): ws for ws in vcs.workspace_list()}
        assert listed[path.resolve()].branch == "ws-branch"
        vcs.workspace_remove(path)
        assert path.resolve() not in {ws.path.resolve() for ws in vcs.workspace_list()}

    def test_add_existing_and_detached(self, vcs, tmp_path):
        vcs.create_branch("existing")
        vcs.workspace_add_existing(tmp_path / "existing", "existing")
        vcs.workspace_add_detached(tmp_path / "detached", "main")
        listed = {ws.path.resolve(): ws for ws in vcs.workspace_list()}
        assert listed[(tmp_path / "existing").resolve()].branch == "existing"
        assert listed[(tmp_path / "detached").resolve()].detached

    def test_add_new_branch_that_exists_raises(self, vcs, tmp_path):
        with pytest.raises(BranchExistsError):
            vcs.workspace_add(tmp_path / "dup", "main")

    def test_add_existing_branch_checked_out_elsewhere_fails(self, vcs, tmp_path):
        with pytest.raises(VCSCommandError):
            vcs.workspace_add_existing(tmp_path / "again", "main")

    def test_prune_missing(self, vcs, tmp_path):
        path = tmp_path / "pruned"
        vcs.workspace_add(path, "pruned")
        shutil.rmtree(path)
        vcs.workspace_prune()
        assert path.resolve() not in {ws.path.resolve() for ws in vcs.workspace_list()}

    def test_bare_anchor_lists_only_worktrees(self, git_repo, tmp_path):
        bare = tmp_path / "anchor.git"
        subprocess.run(["git", "clone", "-q", "--bare", str(git_repo), str(bare)], check=True)
        anchor = GitVCS(git_dir=bare)
        assert anchor.workspace_list() == []
        anchor.create_branch_from("feature", "main")
        anchor.workspace_add_existing(tmp_path / "feature", "feature")
        assert [ws.branch for ws in anchor.workspace_list()] == ["feature"]

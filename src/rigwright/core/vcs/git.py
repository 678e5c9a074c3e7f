"""
Git VCS Implementation
======================

GitVCS maps the VCS protocol onto the git command line. Git blocks on
conflicts natively, so merges and rebases that stop with unmerged paths
are surfaced as MergeConflictError / RebaseConflictError and left for
the caller to abort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .exceptions import (
    AuthenticationError,
    BranchExistsError,
    MergeConflictError,
    NotARepositoryError,
    RebaseConflictError,
    VCSCommandError,
    _first_line,
)
from .runner import CommandResult, default_timeout, looks_like_auth_failure, run_vcs
from .types import (
    GIT_CAPABILITIES,
    Status,
    UncommittedWork,
    VCSBackend,
    VCSCapabilities,
    Workspace,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GitState:
    """Restorable position of a git working directory."""

    branch: str
    head: str


class GitVCS:
    """Git implementation of VCSProtocol.

    Bound to a working directory, or to a bare repository when only
    ``git_dir`` is given (the shared anchor of a rig).
    """

    def __init__(
        self,
        work_dir: Path | str | None = None,
        git_dir: Path | str | None = None,
        timeout: float | None = None,
    ) -> None:
        if work_dir is None and git_dir is None:
            raise ValueError("GitVCS needs a work_dir or a git_dir")
        self._work_dir = Path(work_dir) if work_dir is not None else None
        self._git_dir = Path(git_dir) if git_dir is not None else None
        self._timeout = default_timeout() if timeout is None else timeout

    def __repr__(self) -> str:
        return f"GitVCS(work_dir={self._work_dir!r}, git_dir={self._git_dir!r})"

    @property
    def backend(self) -> VCSBackend:
        """Return which backend this is."""
        return VCSBackend.GIT

    @property
    def capabilities(self) -> VCSCapabilities:
        """Return capabilities of this backend."""
        return GIT_CAPABILITIES

    @property
    def work_dir(self) -> Path:
        return self._work_dir if self._work_dir is not None else self._git_dir  # type: ignore[return-value]

    @property
    def git_dir(self) -> Path | None:
        return self._git_dir

    # =========================================================================
    # Command plumbing
    # =========================================================================

    def _run(
        self,
        *args: str,
        operation: str,
        mutating: bool = False,
        cwd: Path | None = None,
        bound: bool = True,
    ) -> CommandResult:
        argv = ["git"]
        run_cwd = cwd
        if bound and cwd is None:
            if self._work_dir is not None:
                run_cwd = self._work_dir
            else:
                argv.append(f"--git-dir={self._git_dir}")
                run_cwd = self._git_dir
        argv.extend(args)
        return run_vcs(argv, run_cwd, operation=operation, timeout=self._timeout, mutating=mutating)

    def _git(self, *args: str, operation: str, mutating: bool = False, **kwargs) -> CommandResult:
        """Run git and raise the classified error on non-zero exit."""
        result = self._run(*args, operation=operation, mutating=mutating, **kwargs)
        if not result.ok:
            self._raise_for(result, operation)
        return result

    def _raise_for(self, result: CommandResult, operation: str) -> None:
        output = f"{result.stderr}\n{result.stdout}"
        lowered = output.lower()
        if "not a git repository" in lowered:
            raise NotARepositoryError(f"{operation}: {self.work_dir} is not a git repository")
        if looks_like_auth_failure(output):
            raise AuthenticationError(f"{operation}: {_first_line(result.stderr) or 'authentication failed'}")
        raise VCSCommandError(operation, result.args, result.returncode, result.stdout, result.stderr)

    def _unmerged_files(self) -> list[str]:
        result = self._run("diff", "--name-only", "--diff-filter=U", operation="list conflicts")
        return result.lines() if result.ok else []

    def _has_head(self) -> bool:
        return self._run("rev-parse", "--verify", "--quiet", "HEAD", operation="resolve HEAD").ok

    # =========================================================================
    # Repository Setup
    # =========================================================================

    def clone(self, url: str, dest: Path) -> None:
        self._git("clone", url, str(dest), operation="clone", mutating=True, bound=False)

    def clone_bare(self, url: str, dest: Path) -> None:
        self._git("clone", "--bare", url, str(dest), operation="clone bare", mutating=True, bound=False)

    # =========================================================================
    # Branch Operations
    # =========================================================================

    def current_branch(self) -> str:
        result = self._run("symbolic-ref", "--short", "-q", "HEAD", operation="current branch")
        if result.ok:
            return result.stdout.strip()
        if result.returncode == 1:
            # Detached HEAD
            return ""
        self._raise_for(result, "current branch")
        return ""

    def default_branch(self) -> str:
        result = self._run("symbolic-ref", "refs/remotes/origin/HEAD", operation="default branch")
        if result.ok:
            ref = result.stdout.strip()
            if ref.startswith("refs/remotes/origin/"):
                return ref[len("refs/remotes/origin/"):]

        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        return "main"

    def checkout(self, ref: str) -> None:
        self._git("checkout", "-q", ref, operation=f"checkout {ref}", mutating=True)

    def create_branch(self, name: str) -> None:
        self.create_branch_from(name, "HEAD")

    def create_branch_from(self, name: str, ref: str) -> None:
        if self.branch_exists(name):
            raise BranchExistsError("create branch", name)
        self._git("branch", name, ref, operation=f"create branch {name}", mutating=True)

    def delete_branch(self, name: str, force: bool = False) -> None:
        flag = "-D" if force else "-d"
        self._git("branch", flag, name, operation=f"delete branch {name}", mutating=True)

    def list_branches(self, pattern: str = "") -> list[str]:
        args = ["branch", "--list", "--format=%(refname:short)"]
        if pattern:
            args.append(pattern)
        return self._git(*args, operation="list branches").lines()

    def branch_exists(self, name: str) -> bool:
        result = self._run(
            "show-ref", "--verify", "--quiet", f"refs/heads/{name}", operation="branch exists"
        )
        if result.ok:
            return True
        if result.returncode == 1:
            return False
        self._raise_for(result, "branch exists")
        return False

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        result = self._git("ls-remote", "--heads", remote, branch, operation="ls-remote")
        wanted = f"refs/heads/{branch}"
        return any(line.split()[-1] == wanted for line in result.lines())

    def reset_branch(self, name: str, ref: str) -> None:
        target = self.rev(ref)
        if self._work_dir is not None and self.current_branch() == name:
            self._git("reset", "--hard", "-q", target, operation=f"reset branch {name}", mutating=True)
            return
        self._git(
            "update-ref", f"refs/heads/{name}", target,
            operation=f"reset branch {name}", mutating=True,
        )

    # =========================================================================
    # Remote Operations
    # =========================================================================

    def fetch(self, remote: str) -> None:
        self._git("fetch", "--prune", remote, operation=f"fetch {remote}", mutating=True)

    def fetch_branch(self, remote: str, branch: str) -> None:
        refspec = f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}"
        self._git("fetch", remote, refspec, operation=f"fetch {remote}/{branch}", mutating=True)

    def pull(self, remote: str, branch: str) -> None:
        operation = f"pull {remote}/{branch}"
        result = self._run("pull", "--no-rebase", "--no-edit", remote, branch, operation=operation, mutating=True)
        if result.ok:
            return
        conflicts = self._unmerged_files()
        if conflicts:
            raise MergeConflictError(f"{operation}: merge conflict", conflicts)
        self._raise_for(result, operation)

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        args = ["push", "-u"]
        if force:
            args.append("--force")
        args.extend([remote, branch])
        self._git(*args, operation=f"push {remote}/{branch}", mutating=True)

    def delete_remote_branch(self, remote: str, branch: str) -> None:
        self._git("push", remote, "--delete", branch, operation=f"delete {remote}/{branch}", mutating=True)

    def remote_url(self, remote: str) -> str:
        return self._git("remote", "get-url", remote, operation=f"remote url {remote}").stdout.strip()

    def set_remote_url(self, remote: str, url: str) -> None:
        existing = self._run("remote", "get-url", remote, operation=f"remote url {remote}")
        verb = "set-url" if existing.ok else "add"
        self._git("remote", verb, remote, url, operation=f"set remote {remote}", mutating=True)

    # =========================================================================
    # Staging & Commits
    # =========================================================================

    def add(self, *paths: str) -> None:
        if not paths:
            return
        self._git("add", "--", *paths, operation="add", mutating=True)

    def commit(self, message: str) -> None:
        """Record every outstanding modification, staged or not, as one commit."""
        self._git("add", "-A", operation="commit", mutating=True)
        self._git("commit", "-q", "-m", message, operation="commit", mutating=True)

    def commit_all(self, message: str) -> None:
        self.commit(message)

    def commit_message(self, ref: str = "HEAD") -> str:
        result = self._git("log", "-1", "--format=%B", ref, operation=f"commit message {ref}")
        return result.stdout.rstrip("\n")

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Status:
        result = self._git(
            "status", "--porcelain=v1", "-z", "--untracked-files=all", operation="status"
        )
        return _parse_porcelain(result.stdout)

    def has_uncommitted_changes(self) -> bool:
        return not self.status().clean

    def check_uncommitted_work(self) -> UncommittedWork:
        status = self.status()
        return UncommittedWork(
            has_changes=not status.clean,
            stash_count=self.stash_count(),
            unpushed_commits=self.unpushed_commits(),
            modified_files=status.modified + status.added + status.deleted,
            untracked_files=list(status.untracked),
        )

    # =========================================================================
    # Merge & Rebase
    # =========================================================================

    def merge(self, branch: str) -> None:
        self._merge(["merge", "--no-edit", branch], f"merge {branch}")

    def merge_no_ff(self, branch: str, message: str) -> None:
        self._merge(["merge", "--no-ff", "-m", message, branch], f"merge --no-ff {branch}")

    def _merge(self, args: list[str], operation: str) -> None:
        result = self._run(*args, operation=operation, mutating=True)
        if result.ok:
            return
        conflicts = self._unmerged_files()
        if conflicts:
            raise MergeConflictError(f"{operation}: merge conflict", conflicts)
        self._raise_for(result, operation)

    def rebase(self, onto: str) -> None:
        operation = f"rebase onto {onto}"
        result = self._run("rebase", onto, operation=operation, mutating=True)
        if result.ok:
            return
        conflicts = self._unmerged_files()
        if conflicts:
            raise RebaseConflictError(f"{operation}: rebase conflict", conflicts)
        self._raise_for(result, operation)

    def abort_merge(self) -> None:
        self._git("merge", "--abort", operation="abort merge", mutating=True)

    def abort_rebase(self) -> None:
        self._git("rebase", "--abort", operation="abort rebase", mutating=True)

    def check_conflicts(self, source: str, target: str) -> list[str]:
        from .conflicts import check_conflicts

        return check_conflicts(self, source, target)

    def snapshot_state(self) -> GitState:
        if self.has_uncommitted_changes():
            raise VCSCommandError(
                "snapshot state",
                message=f"{self.work_dir} has uncommitted changes; commit or stash them first",
            )
        return GitState(branch=self.current_branch(), head=self.rev("HEAD"))

    def trial_merge(self, source: str, target: str) -> list[str]:
        operation = f"trial merge {source} into {target}"
        self._git("checkout", "-q", "--detach", target, operation=operation, mutating=True)
        result = self._run("merge", "--no-commit", "--no-ff", source, operation=operation, mutating=True)
        if result.ok:
            return []
        conflicts = self._unmerged_files()
        if conflicts:
            return conflicts
        self._raise_for(result, operation)
        return []

    def restore_state(self, token: GitState) -> None:
        aborted = self._run("merge", "--abort", operation="restore state", mutating=True)
        if not aborted.ok:
            logger.debug("No merge to abort in %s", self.work_dir)
        self._git("reset", "--hard", "-q", operation="restore state", mutating=True)
        self._git("checkout", "-q", token.branch or token.head, operation="restore state", mutating=True)

    # =========================================================================
    # Workspaces (worktrees)
    # =========================================================================

    def workspace_add(self, path: Path, branch: str) -> None:
        if self.branch_exists(branch):
            raise BranchExistsError("workspace add", branch)
        self._git("worktree", "add", "-b", branch, str(path), operation="workspace add", mutating=True)

    def workspace_add_detached(self, path: Path, ref: str) -> None:
        self._git("worktree", "add", "--detach", str(path), ref, operation="workspace add", mutating=True)

    def workspace_add_existing(self, path: Path, branch: str) -> None:
        self._git("worktree", "add", str(path), branch, operation="workspace add", mutating=True)

    def workspace_add_existing_force(self, path: Path, branch: str) -> None:
        self._git(
            "worktree", "add", "--force", str(path), branch, operation="workspace add", mutating=True
        )

    def workspace_remove(self, path: Path, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self._git(*args, operation="workspace remove", mutating=True)

    def workspace_prune(self) -> None:
        self._git("worktree", "prune", operation="workspace prune", mutating=True)

    def workspace_list(self) -> list[Workspace]:
        result = self._git("worktree", "list", "--porcelain", operation="workspace list")
        return _parse_worktree_list(result.stdout)

    # =========================================================================
    # Comparison & History
    # =========================================================================

    def rev(self, ref: str) -> str:
        return self._git("rev-parse", "--verify", f"{ref}^{{commit}}", operation=f"rev {ref}").stdout.strip()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._run(
            "merge-base", "--is-ancestor", ancestor, descendant, operation="is ancestor"
        )
        if result.ok:
            return True
        if result.returncode == 1:
            return False
        self._raise_for(result, "is ancestor")
        return False

    def commits_ahead(self, base: str, branch: str) -> int:
        return self._count(f"{base}..{branch}", operation="commits ahead")

    def branch_created_date(self, branch: str) -> str:
        base = self.default_branch()
        if base != branch and self.branch_exists(base):
            result = self._git(
                "log", "--reverse", "--format=%cd", "--date=short", f"{base}..{branch}",
                operation="branch created date",
            )
            lines = result.lines()
            if lines:
                return lines[0].strip()
        result = self._git("log", "-1", "--format=%cd", "--date=short", branch, operation="branch created date")
        return result.stdout.strip()

    def branch_pushed_to_remote(self, branch: str, remote: str) -> tuple[bool, int]:
        remote_ref = f"refs/remotes/{remote}/{branch}"
        exists = self._run("show-ref", "--verify", "--quiet", remote_ref, operation="remote ref exists")
        if not exists.ok:
            return False, self._count(branch, "--not", "--remotes", operation="unpushed commits")
        ahead = self._count(f"{remote}/{branch}..{branch}", operation="unpushed commits")
        return ahead == 0, ahead

    def stash_count(self) -> int:
        return len(self._git("stash", "list", operation="stash list").lines())

    def unpushed_commits(self) -> int:
        if not self._has_head():
            return 0
        upstream = self._run(
            "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}", operation="upstream"
        )
        if upstream.ok:
            return self._count("@{u}..HEAD", operation="unpushed commits")
        return self._count("HEAD", "--not", "--remotes", operation="unpushed commits")

    def _count(self, *rev_args: str, operation: str) -> int:
        result = self._git("rev-list", "--count", *rev_args, operation=operation)
        return int(result.stdout.strip() or 0)


# =============================================================================
# Parsing helpers
# =============================================================================


def _parse_porcelain(output: str) -> Status:
    """Parse ``git status --porcelain=v1 -z`` output."""
    status = Status()
    entries = output.split("\0")
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        if code[0] in "RC":
            # Rename/copy entries are followed by the original path
            index += 1
        if code == "??":
            status.untracked.append(path)
        elif code == "!!":
            continue
        elif "U" in code or code in ("AA", "DD"):
            status.modified.append(path)
        elif code[0] == "A":
            status.added.append(path)
        elif "D" in code:
            status.deleted.append(path)
        else:
            status.modified.append(path)
    return status


def _parse_worktree_list(output: str) -> list[Workspace]:
    """Parse ``git worktree list --porcelain``; bare entries are skipped."""
    workspaces: list[Workspace] = []
    block: dict[str, str] = {}

    def flush() -> None:
        if "worktree" in block and "bare" not in block:
            branch = block.get("branch", "")
            if branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/"):]
            workspaces.append(
                Workspace(path=Path(block["worktree"]), branch=branch, commit=block.get("HEAD", ""))
            )

    for line in output.splitlines():
        if not line.strip():
            flush()
            block = {}
            continue
        key, _, value = line.partition(" ")
        block[key] = value
    flush()
    return workspaces

"""
Jujutsu VCS Implementation
==========================

JujutsuVCS maps the VCS protocol onto the jj command line.

jj differs from git in ways this adapter hides:

- There is no staging area; ``add()`` is a no-op and the working copy
  ``@`` is itself a change. ``HEAD`` is normalized to ``@-``, the last
  recorded change, so ``rev("HEAD")`` and ``commit_message("HEAD")``
  behave as they do on git after a commit.
- Conflicts are first-class commits in jj. Merges and rebases here are
  normalized to *block on conflict*: the operation log position is
  captured before the attempt and restored with ``jj op restore`` when
  the result is conflicted, before the conflict error is raised.
- jj keeps no record of workspace paths, so the adapter maintains a
  small path/branch registry beside the repository store.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
import shutil
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
    JJ_CAPABILITIES,
    Status,
    UncommittedWork,
    VCSBackend,
    VCSCapabilities,
    Workspace,
)

logger = logging.getLogger(__name__)

WORKSPACE_REGISTRY = "rigwright-workspaces.json"
DEFAULT_WORKSPACE = "default"

_PLAIN_NAME = re.compile(r"^[A-Za-z0-9_./+-]+$")
_RENAME = re.compile(r"^(?P<prefix>.*)\{(?P<old>.*) => (?P<new>.*)\}(?P<suffix>.*)$")


def _symbol(name: str) -> str:
    """Quote a bookmark or workspace name for use inside a revset."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _revset(ref: str) -> str:
    """Translate a caller ref into a jj revset.

    ``HEAD`` means the last recorded change. Plain names are quoted so
    bookmark names containing ``/`` resolve as symbols.
    """
    if ref == "HEAD":
        return "@-"
    if _PLAIN_NAME.match(ref):
        return _symbol(ref)
    return ref


@dataclass(frozen=True)
class JujutsuState:
    """Restorable position of a jj repository: an operation id."""

    operation_id: str


class JujutsuVCS:
    """Jujutsu implementation of VCSProtocol."""

    def __init__(
        self,
        work_dir: Path | str | None = None,
        repo_dir: Path | str | None = None,
        timeout: float | None = None,
    ) -> None:
        if work_dir is None and repo_dir is None:
            raise ValueError("JujutsuVCS needs a work_dir or a repo_dir")
        self._work_dir = Path(work_dir) if work_dir is not None else None
        self._repo_dir = Path(repo_dir) if repo_dir is not None else None
        self._timeout = default_timeout() if timeout is None else timeout

    def __repr__(self) -> str:
        return f"JujutsuVCS(work_dir={self._work_dir!r}, repo_dir={self._repo_dir!r})"

    @property
    def backend(self) -> VCSBackend:
        """Return which backend this is."""
        return VCSBackend.JUJUTSU

    @property
    def capabilities(self) -> VCSCapabilities:
        """Return capabilities of this backend."""
        return JJ_CAPABILITIES

    @property
    def work_dir(self) -> Path:
        return self._work_dir if self._work_dir is not None else self._repo_dir  # type: ignore[return-value]

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
        argv = ["jj", "--no-pager", "--color=never"]
        run_cwd = cwd
        if bound and cwd is None:
            if self._work_dir is not None:
                run_cwd = self._work_dir
            else:
                argv.extend(["-R", str(self._repo_dir)])
                run_cwd = self._repo_dir
        argv.extend(args)
        return run_vcs(argv, run_cwd, operation=operation, timeout=self._timeout, mutating=mutating)

    def _jj(self, *args: str, operation: str, mutating: bool = False, **kwargs) -> CommandResult:
        """Run jj and raise the classified error on non-zero exit."""
        result = self._run(*args, operation=operation, mutating=mutating, **kwargs)
        if not result.ok:
            self._raise_for(result, operation)
        return result

    def _raise_for(self, result: CommandResult, operation: str) -> None:
        output = f"{result.stderr}\n{result.stdout}"
        lowered = output.lower()
        if "no jj repo in" in lowered or "there is no jj repo" in lowered:
            raise NotARepositoryError(f"{operation}: {self.work_dir} is not a jj repository")
        if looks_like_auth_failure(output):
            raise AuthenticationError(f"{operation}: {_first_line(result.stderr) or 'authentication failed'}")
        raise VCSCommandError(operation, result.args, result.returncode, result.stdout, result.stderr)

    def _log(self, revset: str, template: str, operation: str) -> list[str]:
        result = self._jj("log", "--no-graph", "-r", revset, "-T", template, operation=operation)
        return result.lines()

    def _commit_ids(self, revset: str, operation: str) -> list[str]:
        return self._log(revset, 'commit_id ++ "\\n"', operation)

    def _bookmarks_at(self, revset: str) -> list[str]:
        lines = self._log(revset, 'local_bookmarks.map(|b| b.name()).join("\\n") ++ "\\n"', "bookmarks at")
        return [line.strip() for line in lines]

    def _operation_id(self) -> str:
        result = self._jj("op", "log", "--no-graph", "-n", "1", "-T", 'id ++ "\\n"', operation="operation id")
        return result.stdout.strip()

    def _restore_operation(self, operation_id: str) -> None:
        self._jj("op", "restore", operation_id, operation="restore operation", mutating=True)

    def _is_conflicted(self, revset: str) -> bool:
        return bool(self._log(f"({revset}) & conflicts()", 'commit_id ++ "\\n"', "conflict check"))

    def _conflicted_files(self, revset: str) -> list[str]:
        result = self._run("resolve", "--list", "-r", revset, operation="list conflicts")
        if not result.ok:
            # jj exits non-zero when there is nothing to resolve
            return []
        files = []
        for line in result.lines():
            path = re.split(r"\s{2,}", line.strip(), maxsplit=1)[0]
            files.append(path)
        return files

    # =========================================================================
    # Repository Setup
    # =========================================================================

    def clone(self, url: str, dest: Path) -> None:
        self._jj("git", "clone", url, str(dest), operation="clone", mutating=True, bound=False)

    def clone_bare(self, url: str, dest: Path) -> None:
        self._jj("git", "clone", "--colocate", url, str(dest), operation="clone colocated", mutating=True, bound=False)
        tracked = self._run(
            "bookmark", "track", "glob:*@origin",
            operation="track remote bookmarks", mutating=True, cwd=Path(dest),
        )
        if not tracked.ok:
            logger.debug("No remote bookmarks to track in %s: %s", dest, _first_line(tracked.stderr))

    # =========================================================================
    # Bookmark Operations
    # =========================================================================

    def current_branch(self) -> str:
        registered = self._registry().get(self._workspace_name_for(self.work_dir), {}).get("branch", "")
        for revset in ("@", "@-"):
            names = [name for name in self._bookmarks_at(revset) if name]
            if registered and registered in names:
                return registered
            if names:
                return sorted(names)[0]
        return ""

    def default_branch(self) -> str:
        local = set(self.list_branches())
        for candidate in ("main", "master", "trunk"):
            if candidate in local:
                return candidate
        return "main"

    def checkout(self, ref: str) -> None:
        self._jj("new", _revset(ref), operation=f"checkout {ref}", mutating=True)

    def create_branch(self, name: str) -> None:
        self.create_branch_from(name, "HEAD")

    def create_branch_from(self, name: str, ref: str) -> None:
        if self.branch_exists(name):
            raise BranchExistsError("create bookmark", name)
        self._jj("bookmark", "create", name, "-r", _revset(ref), operation=f"create bookmark {name}", mutating=True)

    def delete_branch(self, name: str, force: bool = False) -> None:
        self._jj("bookmark", "delete", name, operation=f"delete bookmark {name}", mutating=True)

    def list_branches(self, pattern: str = "") -> list[str]:
        result = self._jj("bookmark", "list", "-T", 'if(remote, "", name ++ "\\n")', operation="list bookmarks")
        names: list[str] = []
        for line in result.lines():
            name = line.strip()
            if name and name not in names:
                names.append(name)
        if pattern:
            names = [name for name in names if fnmatch.fnmatchcase(name, pattern)]
        return names

    def branch_exists(self, name: str) -> bool:
        return name in self.list_branches()

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        result = self._jj(
            "bookmark", "list", "--all-remotes",
            "-T", 'if(remote, name ++ "@" ++ remote ++ "\\n", "")',
            operation="list remote bookmarks",
        )
        return f"{branch}@{remote}" in {line.strip() for line in result.lines()}

    def reset_branch(self, name: str, ref: str) -> None:
        self._jj(
            "bookmark", "set", name, "-r", _revset(ref), "--allow-backwards",
            operation=f"reset bookmark {name}", mutating=True,
        )

    # =========================================================================
    # Remote Operations
    # =========================================================================

    def fetch(self, remote: str) -> None:
        self._jj("git", "fetch", "--remote", remote, operation=f"fetch {remote}", mutating=True)

    def fetch_branch(self, remote: str, branch: str) -> None:
        self._jj(
            "git", "fetch", "--remote", remote, "--branch", branch,
            operation=f"fetch {remote}/{branch}", mutating=True,
        )

    def pull(self, remote: str, branch: str) -> None:
        """Fetch, then fast-forward the local bookmark to its remote counterpart."""
        operation = f"pull {remote}/{branch}"
        self.fetch_branch(remote, branch)
        remote_rev = f"{_symbol(branch)}@{_symbol(remote)}"
        if not self.branch_exists(branch):
            self._jj("bookmark", "track", f"{branch}@{remote}", operation=operation, mutating=True)
            return

        local_tip = self.rev(branch)
        if self.is_ancestor(remote_rev, _symbol(branch)):
            return
        if not self.is_ancestor(_symbol(branch), remote_rev):
            raise VCSCommandError(operation, message=f"'{branch}' has diverged from {remote}; cannot fast-forward")

        before = self._operation_id()
        self._jj("bookmark", "set", branch, "-r", remote_rev, operation=operation, mutating=True)
        if local_tip not in self._commit_ids("@-", operation):
            return
        if self.status().clean:
            self._jj("new", _symbol(branch), operation=operation, mutating=True)
            return
        self._jj("rebase", "-r", "@", "-d", _symbol(branch), operation=operation, mutating=True)
        if self._is_conflicted("@"):
            files = self._conflicted_files("@")
            self._restore_operation(before)
            raise MergeConflictError(f"{operation}: merge conflict", files)

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        if force:
            logger.debug("jj push always rewrites the remote bookmark; force flag has no effect")
        self._jj(
            "git", "push", "--remote", remote, "--bookmark", branch, "--allow-new",
            operation=f"push {remote}/{branch}", mutating=True,
        )

    def delete_remote_branch(self, remote: str, branch: str) -> None:
        operation = f"delete {remote}/{branch}"
        if self.branch_exists(branch):
            self._jj("bookmark", "delete", branch, operation=operation, mutating=True)
        self._jj("git", "push", "--remote", remote, "--bookmark", branch, operation=operation, mutating=True)

    def _remotes(self) -> dict[str, str]:
        result = self._jj("git", "remote", "list", operation="list remotes")
        remotes: dict[str, str] = {}
        for line in result.lines():
            name, _, url = line.strip().partition(" ")
            remotes[name] = url.strip()
        return remotes

    def remote_url(self, remote: str) -> str:
        remotes = self._remotes()
        if remote not in remotes:
            raise VCSCommandError(f"remote url {remote}", message=f"no remote named '{remote}'")
        return remotes[remote]

    def set_remote_url(self, remote: str, url: str) -> None:
        verb = "set-url" if remote in self._remotes() else "add"
        self._jj("git", "remote", verb, remote, url, operation=f"set remote {remote}", mutating=True)

    # =========================================================================
    # Staging & Commits
    # =========================================================================

    def add(self, *paths: str) -> None:
        """No-op: jj tracks every file in the working copy automatically."""

    def commit(self, message: str) -> None:
        branch = self.current_branch()
        on_parent = branch and branch not in self._bookmarks_at("@")
        self._jj("commit", "-m", message, operation="commit", mutating=True)
        if on_parent:
            # Advance the bookmark like a git branch would
            self._jj("bookmark", "set", branch, "-r", "@-", operation="commit", mutating=True)

    def commit_all(self, message: str) -> None:
        self.commit(message)

    def commit_message(self, ref: str = "HEAD") -> str:
        result = self._jj(
            "log", "--no-graph", "-r", _revset(ref), "-T", "description", operation=f"commit message {ref}"
        )
        return result.stdout.rstrip("\n")

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Status:
        result = self._jj("diff", "--summary", "-r", "@", operation="status")
        return _parse_summary(result.stdout)

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
        self._merge(branch, f"Merge {branch}", allow_fast_forward=True)

    def merge_no_ff(self, branch: str, message: str) -> None:
        self._merge(branch, message, allow_fast_forward=False)

    def _merge(self, branch: str, message: str, allow_fast_forward: bool) -> None:
        operation = f"merge {branch}"
        if self.has_uncommitted_changes():
            raise VCSCommandError(operation, message="working copy has uncommitted changes")
        current = self.current_branch()
        source = _revset(branch)

        if self.is_ancestor(source, "@-"):
            return
        if allow_fast_forward and self.is_ancestor("@-", source):
            self._jj("new", source, operation=operation, mutating=True)
            if current:
                self._jj("bookmark", "set", current, "-r", "@-", operation=operation, mutating=True)
            return

        before = self._operation_id()
        self._jj("new", "@-", source, "-m", message, operation=operation, mutating=True)
        if self._is_conflicted("@"):
            files = self._conflicted_files("@")
            self._restore_operation(before)
            raise MergeConflictError(f"{operation}: merge conflict", files)
        self._jj("new", operation=operation, mutating=True)
        if current:
            self._jj("bookmark", "set", current, "-r", "@-", operation=operation, mutating=True)

    def rebase(self, onto: str) -> None:
        operation = f"rebase onto {onto}"
        destination = _revset(onto)
        before = self._operation_id()
        self._jj("rebase", "-b", "@", "-d", destination, operation=operation, mutating=True)
        conflicted = self._commit_ids(f"({destination}..@) & conflicts()", operation)
        if conflicted:
            files = self._conflicted_files(conflicted[-1])
            self._restore_operation(before)
            raise RebaseConflictError(f"{operation}: rebase conflict", files)

    def abort_merge(self) -> None:
        """No-op: conflicted merges are already rolled back before raising."""
        logger.debug("abort_merge: no merge in progress in %s", self.work_dir)

    def abort_rebase(self) -> None:
        """No-op: conflicted rebases are already rolled back before raising."""
        logger.debug("abort_rebase: no rebase in progress in %s", self.work_dir)

    def check_conflicts(self, source: str, target: str) -> list[str]:
        from .conflicts import check_conflicts

        return check_conflicts(self, source, target)

    def snapshot_state(self) -> JujutsuState:
        return JujutsuState(operation_id=self._operation_id())

    def trial_merge(self, source: str, target: str) -> list[str]:
        operation = f"trial merge {source} into {target}"
        if self.is_ancestor(source, target):
            return []
        self._jj("new", _revset(target), _revset(source), operation=operation, mutating=True)
        if not self._is_conflicted("@"):
            return []
        return self._conflicted_files("@")

    def restore_state(self, token: JujutsuState) -> None:
        self._restore_operation(token.operation_id)

    # =========================================================================
    # Workspaces
    # =========================================================================

    def _store_dir(self) -> Path:
        """The shared ``.jj/repo`` directory, resolved from any workspace."""
        repo = self.work_dir / ".jj" / "repo"
        if repo.is_file():
            pointer = Path(repo.read_text(encoding="utf-8").strip())
            if not pointer.is_absolute():
                pointer = (repo.parent / pointer).resolve()
            return pointer
        if repo.is_dir():
            return repo
        raise NotARepositoryError(f"{self.work_dir} is not a jj repository")

    def _registry_path(self) -> Path:
        return self._store_dir() / WORKSPACE_REGISTRY

    def _registry(self) -> dict[str, dict[str, str]]:
        try:
            path = self._registry_path()
        except NotARepositoryError:
            return {}
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt workspace registry %s", path)
            return {}

    def _save_registry(self, registry: dict[str, dict[str, str]]) -> None:
        self._registry_path().write_text(json.dumps(registry, indent=2, sort_keys=True), encoding="utf-8")

    def _workspace_name_for(self, path: Path) -> str:
        resolved = str(Path(path).resolve())
        for name, entry in self._registry().items():
            if entry.get("path") == resolved:
                return name
        return DEFAULT_WORKSPACE if self._is_default_root(path) else Path(path).name

    def _is_default_root(self, path: Path) -> bool:
        return (Path(path) / ".jj" / "repo").is_dir()

    def _unique_workspace_name(self, path: Path) -> str:
        """Workspace names are global to the repo; suffix repeated directory names."""
        taken = set(self._registry()) | set(self._workspace_names()) | {DEFAULT_WORKSPACE}
        name, suffix = path.name, 1
        while name in taken:
            suffix += 1
            name = f"{path.name}-{suffix}"
        return name

    def _add_workspace(self, path: Path, revset: str, branch: str, operation: str) -> str:
        path = Path(path)
        name = self._unique_workspace_name(path)
        self._jj("workspace", "add", "--name", name, "-r", revset, str(path), operation=operation, mutating=True)
        registry = self._registry()
        registry[name] = {"path": str(path.resolve()), "branch": branch}
        self._save_registry(registry)
        return name

    def workspace_add(self, path: Path, branch: str) -> None:
        operation = "workspace add"
        if self.branch_exists(branch):
            raise BranchExistsError(operation, branch)
        base = self.rev("HEAD")
        name = self._add_workspace(path, base, branch, operation)
        try:
            self._jj("bookmark", "create", branch, "-r", base, operation=operation, mutating=True)
        except Exception:
            self._forget(name)
            shutil.rmtree(path, ignore_errors=True)
            raise

    def workspace_add_detached(self, path: Path, ref: str) -> None:
        self._add_workspace(path, _revset(ref), "", "workspace add")

    def workspace_add_existing(self, path: Path, branch: str) -> None:
        self._add_existing(path, branch, force=False)

    def workspace_add_existing_force(self, path: Path, branch: str) -> None:
        self._add_existing(path, branch, force=True)

    def _add_existing(self, path: Path, branch: str, force: bool) -> None:
        operation = "workspace add"
        if not self.branch_exists(branch):
            raise VCSCommandError(operation, message=f"bookmark '{branch}' does not exist")
        if not force:
            for workspace in self.workspace_list():
                if workspace.branch == branch and workspace.path.exists():
                    raise VCSCommandError(
                        operation, message=f"'{branch}' is already checked out at {workspace.path}"
                    )
        self._add_workspace(path, _symbol(branch), branch, operation)

    def _forget(self, name: str) -> None:
        self._jj("workspace", "forget", name, operation="workspace forget", mutating=True)
        registry = self._registry()
        if registry.pop(name, None) is not None:
            self._save_registry(registry)

    def workspace_remove(self, path: Path, force: bool = False) -> None:
        path = Path(path)
        name = self._workspace_name_for(path)
        if name == DEFAULT_WORKSPACE:
            raise VCSCommandError("workspace remove", message="cannot remove the default workspace")
        if not force and path.exists():
            if JujutsuVCS(work_dir=path, timeout=self._timeout).has_uncommitted_changes():
                raise VCSCommandError(
                    "workspace remove", message=f"{path} has uncommitted changes; use force to remove"
                )
        self._forget(name)
        if path.exists():
            shutil.rmtree(path)

    def workspace_prune(self) -> None:
        known = set(self._workspace_names())
        for name, entry in self._registry().items():
            if Path(entry["path"]).exists():
                continue
            if name in known:
                logger.info("Pruning workspace %s (missing %s)", name, entry["path"])
                self._forget(name)
            else:
                registry = self._registry()
                registry.pop(name, None)
                self._save_registry(registry)

    def _workspace_names(self) -> list[str]:
        result = self._jj("workspace", "list", operation="workspace list")
        names = []
        for line in result.lines():
            name, sep, _ = line.partition(":")
            if sep:
                names.append(name.strip())
        return names

    def workspace_list(self) -> list[Workspace]:
        registry = self._registry()
        root = self._store_dir().parent.parent
        workspaces: list[Workspace] = []
        for name in self._workspace_names():
            entry = registry.get(name, {})
            path = Path(entry["path"]) if "path" in entry else root if name == DEFAULT_WORKSPACE else Path(name)
            parent = f"{_symbol(name)}@-"
            commits = self._commit_ids(parent, "workspace list")
            branch = entry.get("branch", "")
            if not branch and name == DEFAULT_WORKSPACE:
                bookmarks = [b for b in self._bookmarks_at(parent) if b]
                branch = sorted(bookmarks)[0] if bookmarks else ""
            workspaces.append(Workspace(path=path, branch=branch, commit=commits[0] if commits else ""))
        return workspaces

    # =========================================================================
    # Comparison & History
    # =========================================================================

    def rev(self, ref: str) -> str:
        commits = self._commit_ids(_revset(ref), f"rev {ref}")
        if len(commits) != 1:
            raise VCSCommandError(f"rev {ref}", message=f"'{ref}' resolves to {len(commits)} commits")
        return commits[0]

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        revset = f"({_revset(ancestor)}) & ::({_revset(descendant)})"
        return bool(self._commit_ids(revset, "is ancestor"))

    def commits_ahead(self, base: str, branch: str) -> int:
        return len(self._commit_ids(f"({_revset(base)})..({_revset(branch)})", "commits ahead"))

    def branch_created_date(self, branch: str) -> str:
        template = 'committer.timestamp().format("%Y-%m-%d") ++ "\\n"'
        base = self.default_branch()
        if base != branch and self.branch_exists(base):
            dates = self._log(f"({_symbol(base)})..({_symbol(branch)})", template, "branch created date")
            if dates:
                # jj log lists newest first
                return dates[-1].strip()
        return self._log(_symbol(branch), template, "branch created date")[0].strip()

    def branch_pushed_to_remote(self, branch: str, remote: str) -> tuple[bool, int]:
        tracked = f"remote_bookmarks(exact:{_symbol(branch)}, exact:{_symbol(remote)})"
        if not self._commit_ids(tracked, "remote bookmark exists"):
            ahead = self._commit_ids(f"(remote_bookmarks()..{_symbol(branch)}) ~ empty()", "unpushed commits")
            return False, len(ahead)
        ahead = self._commit_ids(f"({tracked}..{_symbol(branch)}) ~ empty()", "unpushed commits")
        return not ahead, len(ahead)

    def stash_count(self) -> int:
        """jj has no stash; the count is always zero."""
        return 0

    def unpushed_commits(self) -> int:
        return len(self._commit_ids("(remote_bookmarks()..@-) ~ empty()", "unpushed commits"))


# =============================================================================
# Parsing helpers
# =============================================================================


def _parse_summary(output: str) -> Status:
    """Parse ``jj diff --summary`` output (``M path`` lines)."""
    status = Status()
    for line in output.splitlines():
        if len(line) < 3 or line[1] != " ":
            continue
        code, path = line[0], line[2:].strip()
        match = _RENAME.match(path)
        if match:
            path = f"{match['prefix']}{match['new']}{match['suffix']}".replace("//", "/")
        if code == "A" or code == "C":
            status.added.append(path)
        elif code == "D":
            status.deleted.append(path)
        else:
            status.modified.append(path)
    return status

"""Phase 1 pre-checks: every worker must be idle and clean before a freeze."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from rigwright.core.config import RigConfig, worker_has_active_task
from rigwright.core.vcs import VCSError, VCSProtocol, new_from_config
from rigwright.migration.state import MigrationError, PreservedBranch

__all__ = [
    "PreflightIssue",
    "PreflightResult",
    "PhasePreconditionError",
    "run_preflight",
]

VCSFactory = Callable[[Path, str], VCSProtocol]


@dataclass
class PreflightIssue:
    """One reason a worker blocks the migration."""

    worker: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"worker": self.worker, "code": self.code, "message": self.message}


@dataclass
class PreflightResult:
    """Result envelope for migration pre-checks."""

    rig_root: Path
    issues: list[PreflightIssue] = field(default_factory=list)
    branches: dict[str, PreservedBranch] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.issues

    @property
    def offending_workers(self) -> list[str]:
        seen: list[str] = []
        for issue in self.issues:
            if issue.worker not in seen:
                seen.append(issue.worker)
        return seen

    def to_dict(self) -> dict[str, object]:
        return {
            "rig_root": str(self.rig_root),
            "passed": self.passed,
            "issues": [issue.to_dict() for issue in self.issues],
        }


class PhasePreconditionError(MigrationError):
    """Pre-checks failed; nothing was frozen, backed up or recorded."""

    def __init__(self, result: PreflightResult) -> None:
        self.result = result
        lines = [f"  {issue.worker}: {issue.message}" for issue in result.issues]
        super().__init__(
            f"{len(result.offending_workers)} worker(s) block the migration:\n" + "\n".join(lines)
        )

    @property
    def issues(self) -> list[PreflightIssue]:
        return self.result.issues


def _default_factory(path: Path, vcs_type: str) -> VCSProtocol:
    return new_from_config(path, vcs_type)


def run_preflight(
    rig_root: Path,
    config: RigConfig,
    vcs_factory: VCSFactory | None = None,
) -> PreflightResult:
    """Check every worker and capture its branch and commit.

    All workers are inspected; the result lists every offender rather than
    stopping at the first.
    """
    factory = vcs_factory or _default_factory
    result = PreflightResult(rig_root=rig_root)

    for name in sorted(config.workers):
        path = config.worker_path(rig_root, name)
        if worker_has_active_task(rig_root, name):
            result.issues.append(PreflightIssue(name, "WORKER_BUSY", "has an in-progress task"))
        if not path.exists():
            result.issues.append(PreflightIssue(name, "WORKER_MISSING", f"directory {path} does not exist"))
            continue

        try:
            vcs = factory(path, config.vcs.value)
            work = vcs.check_uncommitted_work()
            branch = vcs.current_branch()
            commit = vcs.rev("HEAD")
        except VCSError as e:
            result.issues.append(PreflightIssue(name, "VCS_ERROR", str(e)))
            continue

        if not work.is_clean():
            result.issues.append(PreflightIssue(name, "UNCOMMITTED_WORK", work.summary()))
        if not branch:
            result.issues.append(PreflightIssue(name, "DETACHED", "is not on a branch"))
            continue
        configured = config.workers[name].branch
        if configured and configured != branch:
            result.issues.append(
                PreflightIssue(
                    name,
                    "BRANCH_MISMATCH",
                    f"is on {branch} but the rig configuration says {configured}",
                )
            )
            continue
        result.branches[name] = PreservedBranch(branch=branch, commit=commit)

    _check_shared_branches(result)
    return result


def _check_shared_branches(result: PreflightResult) -> None:
    # One branch can back only one workspace
    owners: dict[str, list[str]] = {}
    for name, preserved in sorted(result.branches.items()):
        owners.setdefault(preserved.branch, []).append(name)
    for branch, names in owners.items():
        if len(names) < 2:
            continue
        for name in names:
            others = ", ".join(n for n in names if n != name)
            result.issues.append(
                PreflightIssue(name, "DUPLICATE_BRANCH", f"shares branch {branch} with {others}")
            )

"""
VCS Exceptions
==============

Error taxonomy shared by all VCS backends. Adapters map every recognized
backend failure onto one of the specific kinds below; anything else is
raised as :class:`VCSCommandError`, which carries the command, its
arguments and the raw output for diagnosis.
"""

from __future__ import annotations

from typing import Sequence


class VCSError(Exception):
    """Base exception for VCS operations."""


class VCSNotFoundError(VCSError):
    """The VCS executable is not installed or not on PATH."""


class NotARepositoryError(VCSError):
    """The directory is not inside a repository of the expected backend."""


class AuthenticationError(VCSError):
    """A network operation was rejected by the remote."""


class _ConflictError(VCSError):
    def __init__(self, message: str, files: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.files = list(files)


class MergeConflictError(_ConflictError):
    """A merge could not complete because of conflicts."""


class RebaseConflictError(_ConflictError):
    """A rebase could not complete because of conflicts."""


class VCSBackendMismatchError(VCSError):
    """An explicitly requested backend contradicts the directory layout."""


class VCSCommandError(VCSError):
    """Backend-opaque failure of a single VCS command."""

    def __init__(
        self,
        operation: str,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.operation = operation
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = message or _first_line(stderr) or _first_line(stdout) or "command failed"
        super().__init__(f"{operation}: {detail}")

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class VCSTimeoutError(VCSCommandError):
    """A command exceeded its deadline.

    When ``mutating`` is set the directory is in an unknown state and must
    be checked with ``status()`` before it is trusted again.
    """

    def __init__(
        self,
        operation: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        mutating: bool = False,
    ) -> None:
        super().__init__(operation, args, message=f"timed out after {timeout}s")
        self.timeout = timeout
        self.mutating = mutating


class BranchExistsError(VCSCommandError):
    """A branch or bookmark with that name already exists locally."""

    def __init__(self, operation: str, name: str) -> None:
        super().__init__(operation, message=f"branch '{name}' already exists")
        self.name = name


def _first_line(text: str) -> str:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""

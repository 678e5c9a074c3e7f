"""Subprocess execution for VCS adapters.

Every backend command goes through :func:`run_vcs`, which normalizes the
result shape, enforces a deadline, and turns missing executables and
missing working directories into the shared error kinds.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .exceptions import NotARepositoryError, VCSNotFoundError, VCSTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
TIMEOUT_ENV_VAR = "RIGWRIGHT_VCS_TIMEOUT"


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def lines(self) -> list[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]


def default_timeout() -> float:
    """Deadline applied when an adapter is built without an explicit one."""
    raw = os.environ.get(TIMEOUT_ENV_VAR)
    if raw:
        try:
            return float(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", TIMEOUT_ENV_VAR, raw)
    return DEFAULT_TIMEOUT


def run_vcs(
    args: Sequence[str],
    cwd: Path | None,
    *,
    operation: str,
    timeout: float | None,
    mutating: bool = False,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a VCS command and return its normalized result.

    Non-zero exit codes are returned, not raised; the calling adapter
    classifies them. Timeouts always raise :class:`VCSTimeoutError`.
    """
    argv = [str(a) for a in args]
    if cwd is not None and not Path(cwd).is_dir():
        raise NotARepositoryError(f"{operation}: directory does not exist: {cwd}")

    logger.debug("%s: %s (cwd=%s)", operation, shlex.join(argv), cwd)
    full_env = None
    if env:
        full_env = {**os.environ, **env}
    try:
        completed = subprocess.run(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=timeout,
            env=full_env,
        )
    except FileNotFoundError as exc:
        raise VCSNotFoundError(f"{argv[0]} executable not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        logger.warning("%s timed out after %ss: %s", operation, timeout, shlex.join(argv))
        raise VCSTimeoutError(operation, argv, timeout=timeout, mutating=mutating) from exc

    return CommandResult(
        args=argv,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


_AUTH_MARKERS = (
    "authentication failed",
    "permission denied (publickey",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "access denied",
    "http basic: access denied",
    "requested url returned error: 401",
    "requested url returned error: 403",
)


def looks_like_auth_failure(output: str) -> bool:
    """True when backend output reports a rejected credential."""
    lowered = output.lower()
    return any(marker in lowered for marker in _AUTH_MARKERS)

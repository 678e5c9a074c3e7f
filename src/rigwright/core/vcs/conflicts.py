"""Non-destructive conflict checking.

``check_conflicts(vcs, source, target)`` answers whether merging *source*
into *target* would succeed. It captures the handle's restorable state,
performs a trial merge on a disposable target (a detached checkout on
git, an anonymous merge change on jj), collects the conflicting paths,
and restores the captured state on every exit path.

The whole sequence holds the directory's exclusive lock. Other callers
that mutate the same directory from another thread should take
:func:`exclusive` too.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from .protocol import VCSProtocol

logger = logging.getLogger(__name__)

_locks: dict[Path, threading.Lock] = {}
_locks_guard = threading.Lock()


def _lock_for(directory: Path) -> threading.Lock:
    key = Path(directory).resolve()
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


@contextmanager
def exclusive(vcs: "VCSProtocol", timeout: float = -1) -> Iterator[None]:
    """Hold the process-wide lock for the handle's working directory."""
    lock = _lock_for(vcs.work_dir)
    if not lock.acquire(timeout=timeout):
        raise TimeoutError(f"could not lock {vcs.work_dir} within {timeout}s")
    try:
        yield
    finally:
        lock.release()


@contextmanager
def preserved_state(vcs: "VCSProtocol") -> Iterator[None]:
    """Restore the handle's captured state when the block exits, however it exits."""
    token = vcs.snapshot_state()
    try:
        yield
    finally:
        logger.debug("Restoring %s after trial operation", vcs.work_dir)
        vcs.restore_state(token)


def check_conflicts(vcs: "VCSProtocol", source: str, target: str) -> list[str]:
    """Return paths that would conflict merging *source* into *target*.

    An empty list means the merge is clean. No ref, working-directory
    content or history visible to the backend is changed.
    """
    with exclusive(vcs), preserved_state(vcs):
        conflicts = vcs.trial_merge(source, target)
    if conflicts:
        logger.info("%s -> %s would conflict in %d file(s)", source, target, len(conflicts))
    return sorted(conflicts)

"""
Source checks before a file is probed.

Skips files that are missing, held by another process, or still growing
(being downloaded/copied). A skipped file is left alone for the rest of the
run.
"""

import fcntl
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from mediashrink.transition import file_size


@dataclass(frozen=True)
class PreflightResult:
    ok: bool
    reason: str = ""


def check_file_unlocked(path: Path) -> bool:
    """
    Check that no other process holds an exclusive lock on the file.

    Returns:
        True if a shared lock could be taken without waiting.
    """
    try:
        with path.open("rb") as fh:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
            except OSError:
                return False
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    except OSError:
        return False
    return True


def check_file_stable(path: Path, wait_seconds: int = 3, sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Check if file size is stable (not being written to).

    Args:
        path: Path to the file.
        wait_seconds: Number of seconds to wait between checks.

    Returns:
        True if file size is stable, False otherwise.
    """
    if wait_seconds <= 0:
        return True
    s1 = file_size(path)
    sleep(wait_seconds)
    return s1 == file_size(path)


def preflight(path: Path, stable_wait: int = 0, sleep: Callable[[float], None] = time.sleep) -> PreflightResult:
    """Run every check in order; the first failure is the reason."""
    if not path.is_file():
        return PreflightResult(False, "missing")
    if file_size(path) == 0:
        return PreflightResult(False, "empty")
    if not check_file_unlocked(path):
        return PreflightResult(False, "locked by another process")
    if not check_file_stable(path, stable_wait, sleep):
        return PreflightResult(False, "size still changing")
    return PreflightResult(True)

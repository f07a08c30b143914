"""
Cross-process file locking for the job snapshot file.

The lock is taken on a sidecar ``<file>.lock`` so the data file itself can
be replaced atomically while the lock is held:
- Unix/Linux/macOS: fcntl.flock()
- Windows: msvcrt.locking()
"""

import contextlib
import logging
import platform
import time
from pathlib import Path
from typing import Iterator, Optional

log = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

if _IS_WINDOWS:
    import msvcrt
else:
    import fcntl


class FileLockError(Exception):
    """Exception raised when file locking operations fail."""

    pass


class FileLockTimeout(FileLockError):
    """Exception raised when file locking times out."""

    pass


def lock_path_for(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".lock")


@contextlib.contextmanager
def file_lock(
    path: Path,
    exclusive: bool = True,
    timeout: Optional[float] = 10.0,
    retry_interval: float = 0.05,
) -> Iterator[None]:
    """
    Hold a lock guarding ``path`` for the duration of the block.

    Args:
        path: Data file to guard (the lock lives next to it)
        exclusive: True for exclusive lock, False for shared lock
        timeout: Maximum seconds to wait for lock (None = no timeout)
        retry_interval: Seconds to wait between lock attempts

    Raises:
        FileLockTimeout: If lock cannot be acquired within timeout
        FileLockError: If the lock file cannot be opened

    Usage:
        with file_lock(snapshot_path):
            snapshot_path.write_text(data)
    """
    lock_path = lock_path_for(path)
    try:
        handle = open(lock_path, "a+b")
    except OSError as e:
        raise FileLockError(f"Cannot open lock file {lock_path}: {e}") from e

    start_time = time.monotonic()
    try:
        while True:
            try:
                _acquire(handle, exclusive)
                break
            except OSError as e:
                if timeout is not None and (time.monotonic() - start_time) >= timeout:
                    raise FileLockTimeout(
                        f"Could not acquire lock on {lock_path} within {timeout} seconds: {e}"
                    ) from e
                time.sleep(retry_interval)

        log.debug(f"File lock acquired on {lock_path} (exclusive={exclusive})")
        try:
            yield
        finally:
            try:
                _release(handle)
                log.debug(f"File lock released on {lock_path}")
            except OSError as e:
                log.error(f"Error releasing file lock on {lock_path}: {e}")
    finally:
        handle.close()


def _acquire(handle, exclusive: bool) -> None:
    if _IS_WINDOWS:
        # msvcrt has no shared locks, readers lock exclusively too
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)


def _release(handle) -> None:
    if _IS_WINDOWS:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

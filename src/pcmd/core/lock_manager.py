"""Lock manager for per-identity proxy command exclusion.

Uses flock(2) advisory locks so that mutual exclusion holds across
independent pcmd invocations. The lock lives on a single file descriptor
for its whole lifetime; the kernel drops it if the process dies.

The holder unlinks the lock file *before* unlocking, and only if the path
still names the inode it locked, so it can only ever delete its own file.
An acquirer that wins the lock on an inode that was unlinked in the
meantime retries against the file now at the path.
"""

import contextlib
import errno
import fcntl
import logging
import os
from collections.abc import Callable, Iterator
from pathlib import Path

from ..errors import LockError

logger = logging.getLogger(__name__)

LOCK_FILE_MODE = 0o640
MAX_LOCK_RETRIES = 3  # Max retries when the locked inode was unlinked underneath us


def _noop() -> None:
    return None


def _open_lock_file(path: Path) -> int:
    try:
        return os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, LOCK_FILE_MODE)
    except OSError as e:
        raise LockError(f"Could not open lock file {path}: {e}") from e


def _try_flock(fd: int, path: Path) -> bool:
    """Attempt a non-blocking exclusive lock. False means someone else holds it."""
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    except OSError as e:
        if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            return False
        raise LockError(f"Could not lock {path}: {e}") from e
    return True


def _is_current_inode(fd: int, path: Path) -> bool:
    """Check the locked descriptor still refers to the file at ``path``."""
    try:
        on_disk = os.stat(path)
    except FileNotFoundError:
        return False
    held = os.fstat(fd)
    return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)


def acquire_or_report(path: Path) -> tuple[Callable[[], None], bool]:
    """Try to take the exclusive lock at ``path`` without blocking.

    Args:
        path: Lock file path (created if absent, truncated if present)

    Returns:
        Tuple of (release, acquired). When another process holds the lock,
        acquired is False and release is a no-op. Otherwise release unlinks
        the file, drops the lock and closes the descriptor; calling it again
        does nothing.

    Raises:
        LockError: If the lock file cannot be opened or locked for any
            reason other than contention
    """
    for _ in range(MAX_LOCK_RETRIES):
        fd = _open_lock_file(path)
        try:
            locked = _try_flock(fd, path)
        except LockError:
            os.close(fd)
            raise

        if not locked:
            os.close(fd)
            logger.debug(f"Lock {path} is held by another process")
            return _noop, False

        if _is_current_inode(fd, path):
            logger.debug(f"Acquired lock {path}")
            return _make_release(fd, path), True

        # Previous holder unlinked the file between our open and flock
        os.close(fd)

    raise LockError(f"Could not lock {path}: lock file kept changing underneath us")


def _make_release(fd: int, path: Path) -> Callable[[], None]:
    released = False

    def release() -> None:
        nonlocal released
        if released:
            return
        released = True
        try:
            # Only ever delete our own file, never one a newer holder created
            if _is_current_inode(fd, path):
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(path)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Released lock {path}")

    return release


@contextlib.contextmanager
def exclusive_lock(path: Path) -> Iterator[bool]:
    """Scoped lock acquisition.

    Yields whether the lock was acquired. If it was, the lock is released
    (and the file deleted) on every exit route, including exceptions.

    Example:
        with exclusive_lock(config.lock_file_path) as acquired:
            if not acquired:
                raise LockHeldError(...)
            ...
    """
    release, acquired = acquire_or_report(path)
    try:
        yield acquired
    finally:
        release()

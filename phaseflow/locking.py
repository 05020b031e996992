"""
File locking for the shared state file.

Only one process may mutate the state directory at a time. Writers take an
exclusive fcntl lock on locks/state.lock and record their PID in it so a
stale holder can be reported by diagnostics.
"""

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when lock acquisition times out."""
    pass


class FileLock:
    """
    Exclusive fcntl lock on one file, recording the holder's PID.

    Not reentrant by itself; FileStateStore.locked() keeps the nesting depth.
    """

    def __init__(self, lock_path: Path):
        """
        Initialize file lock.

        Args:
            lock_path: Path to the lock file
        """
        self.lock_path = Path(lock_path)
        self._fd: Optional[int] = None

    def acquire_exclusive(self, timeout: float = 10.0) -> None:
        """
        Acquire the lock and record our PID in the lock file.

        Raises:
            LockTimeoutError: If lock cannot be acquired within timeout
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        flags = os.O_RDWR | os.O_CREAT
        if hasattr(os, 'O_CLOEXEC'):
            flags |= os.O_CLOEXEC

        fd = os.open(str(self.lock_path), flags, 0o644)
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except (BlockingIOError, OSError):
                if time.monotonic() - start >= timeout:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Could not acquire lock on {self.lock_path} within {timeout}s"
                    )
                time.sleep(0.05)

        self._fd = fd
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())

    def release(self) -> None:
        """Release the lock."""
        if self._fd is None:
            return
        try:
            # A PID left behind after release would look like a crashed holder
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def is_locked(self) -> bool:
        """Check if lock is currently held by this object."""
        return self._fd is not None

    @contextmanager
    def exclusive(self, timeout: float = 10.0):
        """Context manager for exclusive lock."""
        self.acquire_exclusive(timeout)
        try:
            yield
        finally:
            self.release()


def read_lock_holder(lock_path: Path) -> Optional[int]:
    """PID recorded in a lock file, or None if absent or unreadable."""
    try:
        content = Path(lock_path).read_text().strip()
    except OSError:
        return None
    if not content.isdigit():
        return None
    return int(content)


def lock_status(lock_path: Path) -> dict:
    """
    Describe who holds (or last held) a lock file.

    Returns:
        Dict with `exists`, `pid`, `pid_alive`, `held` and `stale` keys.
        `stale` means a PID is recorded but that process no longer exists.
    """
    lock_path = Path(lock_path)
    if not lock_path.exists():
        return {"exists": False, "pid": None, "pid_alive": False, "held": False, "stale": False}

    pid = read_lock_holder(lock_path)
    alive = pid is not None and psutil.pid_exists(pid)

    held = False
    fd = os.open(str(lock_path), os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
    except (BlockingIOError, OSError):
        held = True
    finally:
        os.close(fd)

    return {
        "exists": True,
        "pid": pid,
        "pid_alive": alive,
        "held": held,
        "stale": pid is not None and not alive,
    }

"""
Advisory file lock keyed by an arbitrary string.

Each key maps to a lock file named after the md5 of the key. The lock is an
exclusive ``flock`` that the kernel drops if the holder dies, so a crashed
writer never wedges a session file.
"""

import fcntl
import hashlib
import logging
import os
import time
from pathlib import Path

from convoy.exceptions import SessionLockError

logger = logging.getLogger(__name__)


class FileLock:
    """
    Exclusive advisory lock for one key.

    Usage:
        with FileLock(lock_dir, "claude-sessions/x.json", timeout=10):
            ...read, merge, write...
    """

    def __init__(
        self,
        lock_dir: Path | str,
        key: str,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.lock_dir = Path(lock_dir)
        self.key = key
        self.timeout = timeout
        self.poll_interval = poll_interval
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        self.lock_path = self.lock_dir / f"file_lock_{digest}.lock"
        self._fd: int | None = None

    def acquire(self) -> None:
        """Block until the lock is held or the timeout elapses."""
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        deadline = time.monotonic() + self.timeout

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise SessionLockError(
                        f"Could not lock {self.key} within {self.timeout}s",
                        path=self.key,
                        timeout=self.timeout,
                    )
                time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

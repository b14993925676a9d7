"""Atomic per-workflow locking using mkdir."""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class FileLock:
    """
    Advisory lock backed by an atomically created directory.

    - mkdir is atomic on local filesystems, so only one caller can win
    - The owner's PID is stored inside for stale lock detection
    - A lock whose owner process is gone is taken over instead of blocking
    - Acquisition never waits: a held lock is reported immediately
    """

    def __init__(self, lock_path: Path, owner: str):
        self.lock_path = Path(lock_path)
        self.owner = owner
        self.pid_file = self.lock_path / "pid"
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def acquire(self) -> bool:
        """
        Attempt to acquire the lock without blocking.

        Returns True if the lock was acquired, False if another holder owns it.
        """
        if self._acquired:
            return False

        if self.lock_path.exists():
            if self._is_stale_lock():
                logger.info(f"Removing stale lock for {self.owner}")
                self._remove_lock()
            else:
                logger.debug(f"Lock for {self.owner} is held by another holder")
                return False

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self.lock_path.mkdir(exist_ok=False)
        except FileExistsError:
            logger.debug(f"Lock for {self.owner} already exists (race condition)")
            return False

        self.pid_file.write_text(str(os.getpid()))
        self._acquired = True
        logger.debug(f"Acquired lock for {self.owner} (PID: {os.getpid()})")
        return True

    def release(self) -> None:
        """Release the lock. Releasing a lock that is not held is a no-op."""
        if self._acquired:
            self._remove_lock()
            self._acquired = False
            logger.debug(f"Released lock for {self.owner}")

    def _is_stale_lock(self) -> bool:
        """Check if lock is stale (owning process no longer exists)."""
        if not self.pid_file.exists():
            logger.warning(f"Lock for {self.owner} has no PID file (stale)")
            return True

        try:
            pid = int(self.pid_file.read_text().strip())
        except (ValueError, OSError):
            logger.warning(f"Lock for {self.owner} has invalid PID (stale)")
            return True

        try:
            os.kill(pid, 0)
            return False
        except ProcessLookupError:
            logger.warning(f"Lock for {self.owner} held by dead PID {pid} (stale)")
            return True
        except PermissionError:
            # Can't signal the process but it may still be alive
            return False

    def _remove_lock(self) -> None:
        if self.lock_path.exists():
            try:
                shutil.rmtree(self.lock_path)
            except OSError as e:
                logger.warning(f"Failed to remove lock directory {self.lock_path}: {e}")

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock for {self.owner}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

"""
Single Instance Lock - Prevent overlapping rebalance runs

Two rotators working the same account would both diff the same holdings and
both sell the same positions. A PID file in the lock directory guarantees a
single live process; stale files left by a crashed process are reclaimed.
"""

import os
import atexit
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Signal handling belongs to the runner (it must stop trade retries
    first), so the lock only registers an atexit release.
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (ValueError, OSError) as e:
            logger.warning(f"Unreadable lock file {self.lock_file}, reclaiming: {e}")
            return None

    def acquire(self) -> bool:
        """
        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            owner = self._read_owner()
            if owner is not None and owner != os.getpid() and self._is_process_running(owner):
                logger.error(
                    f"Another rotator is running (PID={owner}). Lock file: {self.lock_file}"
                )
                return False
            if owner is not None:
                logger.warning(f"Found stale lock file (PID={owner} not running), removing")
            self.lock_file.unlink(missing_ok=True)

        try:
            current_pid = os.getpid()
            self.lock_file.write_text(str(current_pid))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        self.acquired = True
        logger.info(f"Lock acquired (PID={current_pid}, file={self.lock_file})")
        return True

    def release(self):
        if not self.acquired:
            return
        try:
            self.lock_file.unlink(missing_ok=True)
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "rotator",
                          lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None if another instance holds it."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None

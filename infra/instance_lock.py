"""
Single Instance Lock - One Engine per Data Directory

The position store has exactly one writer. A PID file in the lock directory
keeps a second engine from running against the same positions file.

The lock is released on clean exit; a lock left behind by a crashed process
is detected as stale (PID not running) and replaced.
"""

import atexit
import os
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("exit-engine", lock_dir="data")
        if not lock.acquire():
            raise SystemExit(1)
        ...
        lock.release()  # Optional - auto-released on exit

    Signal handling is left to the runner's event loop.
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
        """Check if a process with given PID is running"""
        if pid <= 0:
            return False
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except PermissionError:
            # Exists but owned by another user
            return True
        except OSError:
            return False

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            logger.warning("Lock already acquired by this instance")
            return True

        if self.lock_file.exists():
            existing_pid = self.holder_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another exit engine is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False
            logger.warning(f"Removing stale or invalid lock file {self.lock_file} (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            # O_EXCL so two engines starting together cannot both win
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.error(f"Lost race for lock file {self.lock_file}")
            return False
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        """Release the lock (delete PID file)"""
        if not self.acquired:
            return
        try:
            if self.holder_pid() == os.getpid():
                self.lock_file.unlink()
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

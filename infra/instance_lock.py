"""
Single Instance Lock

PID file guarding the ledger's state file: two daemons writing the same
state would corrupt cash and position invariants. A lock left behind by a
dead process is treated as stale and taken over.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("scanpilot", lock_dir="data")
        if not lock.acquire():
            sys.exit(1)
        ...
        lock.release()  # also released at interpreter exit
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
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as e:
                logger.warning(f"Invalid lock file, removing: {e}")
                existing_pid = None

            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). Cannot start. Lock file: {self.lock_file}"
                )
                return False
            if existing_pid is not None:
                logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.error(f"Lock file {self.lock_file} appeared while acquiring; another instance won")
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except FileNotFoundError:
            pass
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


def check_single_instance(name: str = "scanpilot", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None if another instance is running."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None

"""Project-level locking so only one pipeline runs per project.

The checkpoint and the working tree are owned by a single running pipeline.
The CLI takes this lock before starting a run and refuses to start a second
pipeline against the same project.
"""

import logging
import os
import platform
import socket
from pathlib import Path
from typing import Optional

from .exceptions import ProjectLockedError

logger = logging.getLogger(__name__)

LOCK_FILENAME = "migrapack.lock"


class ProjectLock:
    """File lock under the project's state directory.

    Uses platform-appropriate file locking (fcntl on Unix, msvcrt on Windows).

    Example:
        >>> with ProjectLock(state_dir):
        ...     runner.run()
    """

    def __init__(self, state_dir: Path):
        self.lock_dir = Path(state_dir)
        self.lock_file_path = self.lock_dir / LOCK_FILENAME
        self._lock_fd: Optional[int] = None

        self.pid = os.getpid()
        self.hostname = socket.gethostname()
        self.owner_id = f"{self.pid}@{self.hostname}"

    def acquire(self) -> bool:
        """Acquire the lock without blocking.

        Returns:
            True if acquired, False if another pipeline holds it
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        # No O_TRUNC: the holder's info must survive a failed attempt
        self._lock_fd = os.open(self.lock_file_path, os.O_CREAT | os.O_RDWR)

        if platform.system() == "Windows":
            import msvcrt

            try:
                msvcrt.locking(self._lock_fd, msvcrt.LK_NBLCK, 1)
            except OSError:
                self._log_existing_lock()
                os.close(self._lock_fd)
                self._lock_fd = None
                return False
        else:
            import fcntl

            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                self._log_existing_lock()
                os.close(self._lock_fd)
                self._lock_fd = None
                return False

        os.ftruncate(self._lock_fd, 0)
        os.lseek(self._lock_fd, 0, os.SEEK_SET)
        os.write(self._lock_fd, f"{self.owner_id}\n{os.getcwd()}\n".encode())
        logger.info(f"[LOCK] Acquired project lock {self.lock_file_path} (PID={self.pid})")
        return True

    def _log_existing_lock(self):
        try:
            with open(self.lock_file_path, "r", encoding="utf-8") as f:
                lines = f.readlines()
            holder = lines[0].strip() if lines else "unknown"
        except OSError as e:
            holder = f"unknown ({e})"
        logger.error(
            f"[LOCK] Another pipeline is already running for this project\n"
            f"  Holder: {holder}\n"
            f"  Lock file: {self.lock_file_path}"
        )

    def release(self):
        if self._lock_fd is None:
            return

        if platform.system() == "Windows":
            import msvcrt

            try:
                msvcrt.locking(self._lock_fd, msvcrt.LK_UNLCK, 1)
            except OSError:
                pass  # Lock may already be released
        else:
            import fcntl

            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
            except OSError:
                pass  # Lock may already be released

        try:
            os.close(self._lock_fd)
        finally:
            self._lock_fd = None

        try:
            self.lock_file_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"[LOCK] Could not delete lock file: {e}")
        logger.info(f"[LOCK] Released project lock (PID={self.pid})")

    @property
    def held(self) -> bool:
        return self._lock_fd is not None

    def is_locked(self) -> bool:
        """Heuristic check: the lock file exists (may be stale after a crash)."""
        return self.lock_file_path.exists()

    def __enter__(self):
        if not self.acquire():
            raise ProjectLockedError(
                f"Project lock already held ({self.lock_file_path}). "
                f"Another pipeline is running against this project."
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

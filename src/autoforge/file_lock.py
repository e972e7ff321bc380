"""Exclusive per-project lock files.

The lock is a plain file created with ``O_CREAT | O_EXCL``: whoever creates
it owns the lock. Waiters poll with a small random delay until the file
disappears or the timeout expires. This works the same way on every
platform and across processes sharing the projects directory.
"""

import logging
import os
import random
import socket
import time
from pathlib import Path
from typing import Optional, Union

from .exceptions import LockTimeoutError, StorageAccessError

logger = logging.getLogger(__name__)

POLL_BASE_SECONDS = 0.1
POLL_JITTER_SECONDS = 0.1


class ProjectFileLock:
    """Exclusive create-if-absent lock file.

    Example:
        >>> lock = ProjectFileLock("/data/projects/demo.lock", timeout=5.0)
        >>> with lock:
        ...     # Protected region
        ...     pass
    """

    def __init__(self, lock_path: Union[str, Path], timeout: float = 5.0):
        """Initialize file lock.

        Args:
            lock_path: Path to the lock file
            timeout: Seconds to wait for the lock before giving up
        """
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self._held = False
        self.owner_id = f"{os.getpid()}@{socket.gethostname()}"

    @property
    def is_held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Acquire the lock, polling until ``timeout``.

        Raises:
            LockTimeoutError: If another holder keeps the lock past the timeout
            StorageAccessError: If the lock file cannot be created for another reason
        """
        if self._held:
            raise StorageAccessError(
                f"Lock {self.lock_path} is already held by this instance",
                context={"lock_path": str(self.lock_path)},
            )

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Timeout acquiring lock {self.lock_path} after {self.timeout:.1f}s",
                        context={"lock_path": str(self.lock_path), "holder": self._read_holder()},
                    )
                time.sleep(POLL_BASE_SECONDS + random.random() * POLL_JITTER_SECONDS)
                continue
            except OSError as e:
                raise StorageAccessError(
                    f"Failed to create lock file {self.lock_path}: {e}",
                    context={"lock_path": str(self.lock_path)},
                    cause=e,
                ) from e

            try:
                os.write(fd, f"{self.owner_id}\n".encode())
            finally:
                os.close(fd)
            self._held = True
            logger.debug(f"[Lock] Acquired {self.lock_path.name}")
            return

    def release(self) -> None:
        """Release the lock. Failures are logged, never raised."""
        if not self._held:
            return
        self._held = False
        try:
            os.unlink(self.lock_path)
            logger.debug(f"[Lock] Released {self.lock_path.name}")
        except FileNotFoundError:
            logger.warning(f"[Lock] Lock file {self.lock_path} vanished before release")
        except OSError as e:
            logger.error(f"[Lock] Failed to release lock {self.lock_path}: {e}")

    def _read_holder(self) -> Optional[str]:
        try:
            return self.lock_path.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

"""At most one provisioning run per host.

Every action mutates shared host state (package database, unit files,
services), so concurrent runs are refused rather than coordinated.
"""

import fcntl
import logging
import os
from typing import Optional

from .errors import HostLockError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_PATH = '/run/provisioner.lock'


class HostLock:
    """Exclusive, non-blocking lock file holding the owning run id and pid.

    The kernel releases the lock when the process exits, so a crashed run
    never leaves the host locked; the file content is informational.
    """

    def __init__(self, run_id: str, path: str = DEFAULT_LOCK_PATH):
        self.run_id = run_id
        self.path = path
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            owner = self._read_owner(fd)
            os.close(fd)
            raise HostLockError(
                f"Another provisioning run is active on this host ({owner or 'unknown owner'}, lock {self.path})"
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"run_id={self.run_id} pid={os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired host lock {self.path} for run {self.run_id}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released host lock {self.path}")

    @staticmethod
    def _read_owner(fd: int) -> str:
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            return os.read(fd, 256).decode(errors='ignore').strip()
        except OSError:
            return ''

    def __enter__(self) -> 'HostLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

"""Cross-process install locks keyed by target directory."""

from __future__ import annotations

import asyncio
import logging
import os
import time

from filelock import SoftFileLock, Timeout

from .common.fs import ensure_dir
from .common.logging_utils import extra_context
from .constants import Constants
from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


class FileSystemLock:
    """Advisory lock file living inside the directory it protects.

    The lock is a ``filelock.SoftFileLock``: holding it means the marker file
    exists. A marker older than ``stale_after`` seconds belongs to a crashed
    holder and is reclaimed. Usable as a sync or async context manager; the
    async form waits on a worker thread.
    """

    def __init__(
        self,
        directory: str,
        *,
        timeout: float = Constants.LOCK_TIMEOUT,
        stale_after: float = Constants.LOCK_STALE_AFTER,
        poll_interval: float = Constants.LOCK_POLL_INTERVAL,
        lock_name: str = Constants.LOCK,
    ):
        self.directory = directory
        self.lock_path = os.path.join(directory, lock_name)
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._lock = SoftFileLock(self.lock_path, thread_local=False)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def _reclaim_if_stale(self) -> bool:
        try:
            age = time.time() - os.stat(self.lock_path).st_mtime
        except FileNotFoundError:
            return True
        if age <= self.stale_after:
            return False
        logger.warning(
            "Reclaiming stale lock %s (age %.0fs)",
            self.lock_path,
            age,
            extra=extra_context(event="lock_reclaim", component="locking", target=self.lock_path),
        )
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass
        return True

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        while True:
            # The directory may be removed by a failed install between attempts.
            ensure_dir(self.directory)
            window = max(0.0, min(1.0, deadline - time.monotonic()))
            try:
                self._lock.acquire(timeout=window, poll_interval=self.poll_interval)
                return
            except Timeout:
                if self._reclaim_if_stale():
                    continue
            except FileNotFoundError:
                continue
            if time.monotonic() >= deadline:
                raise LockTimeoutError(self.directory, self.timeout)

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release(force=True)

    def __enter__(self) -> "FileSystemLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def __aenter__(self) -> "FileSystemLock":
        await asyncio.to_thread(self.acquire)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


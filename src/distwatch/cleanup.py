"""Periodic removal of install directories nobody uses any more."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional, Set

from .common.fs import async_rmrf
from .common.logging_utils import extra_context
from .constants import Constants

logger = logging.getLogger(__name__)


class CleanupTask:
    """Sweeps the immediate children of ``directory`` every ``interval`` seconds.

    A child is removed when it is not in the keep set and its mtime is older
    than ``threshold`` seconds. Paths passed to ``save`` are kept for the
    task's lifetime. One task is shared by every poller installing under the
    same root; users ``acquire`` it and ``release`` it when done, and the
    schedule stops with the last release.
    """

    def __init__(
        self,
        directory: str,
        *,
        interval: float = Constants.CLEAN_INTERVAL,
        threshold: float = Constants.CLEAN_THRESHOLD,
        on_error: Optional[Callable[[BaseException], None]] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.directory = os.path.abspath(directory)
        self.interval = interval
        self.threshold = threshold
        self._on_error = on_error
        self._logger = log or logger
        self._saved: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._users = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def save(self, path: str) -> None:
        self._saved.add(os.path.abspath(path))

    def is_saved(self, path: str) -> bool:
        return os.path.abspath(path) in self._saved

    def start(self) -> "CleanupTask":
        """Schedule sweeps on the running loop; the first runs after ``interval``."""
        if not self.running:
            self._stop_event = asyncio.Event()
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def acquire(self) -> "CleanupTask":
        self._users += 1
        return self.start()

    def release(self) -> None:
        self._users = max(0, self._users - 1)
        if self._users == 0:
            self.cancel()

    def cancel(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.sweep()

    def _report(self, err: BaseException) -> None:
        if self._on_error is not None:
            try:
                self._on_error(err)
            except Exception:  # pylint: disable=broad-exception-caught
                self._logger.exception("Cleanup error handler raised")
        else:
            self._logger.error(
                "Cleanup of %s failed: %s",
                self.directory,
                err,
                extra=extra_context(event="cleanup_error", component="cleanup", target=self.directory),
            )

    async def sweep(self) -> List[str]:
        """Run one pass and return the paths that were removed."""
        removed: List[str] = []
        try:
            entries = os.listdir(self.directory)
        except FileNotFoundError:
            return removed
        except OSError as err:
            self._report(err)
            return removed

        cutoff = time.time() - self.threshold
        for entry in entries:
            child = os.path.join(self.directory, entry)
            if child in self._saved:
                continue
            try:
                if os.stat(child).st_mtime >= cutoff:
                    continue
                await async_rmrf(child)
            except FileNotFoundError:
                continue
            except OSError as err:
                self._report(err)
                continue
            removed.append(child)

        if removed:
            self._logger.info(
                "Removed %d stale install directories from %s",
                len(removed),
                self.directory,
                extra=extra_context(event="cleanup", component="cleanup", target=self.directory),
            )
        return removed


_shared_tasks: Dict[str, CleanupTask] = {}
_shared_lock = threading.Lock()


def shared_cleanup_task(
    directory: str,
    *,
    interval: float = Constants.CLEAN_INTERVAL,
    threshold: float = Constants.CLEAN_THRESHOLD,
    on_error: Optional[Callable[[BaseException], None]] = None,
    log: Optional[logging.Logger] = None,
) -> CleanupTask:
    """Return the process-wide task for ``directory``, creating it on first use.

    Every watcher installing under the same directory gets the same task, so
    one keep set covers all of their installs. Settings are taken from the
    first caller.
    """
    key = os.path.abspath(directory)
    with _shared_lock:
        task = _shared_tasks.get(key)
        if task is None:
            task = CleanupTask(
                key, interval=interval, threshold=threshold, on_error=on_error, log=log
            )
            _shared_tasks[key] = task
        return task

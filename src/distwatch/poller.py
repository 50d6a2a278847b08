"""Polling state machine that keeps a dist-tag installed.

``Poller`` is the generic scheduler: it runs an async handler immediately and
then ``period`` seconds after each attempt ends, so slow attempts stretch the
schedule instead of overlapping. ``DistTagPoller`` plugs the
fetch -> resolve -> install cycle into it and keeps the last good
``ModuleDetails`` for readers.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Generic, Iterable, Optional, TypeVar

from .cleanup import CleanupTask
from .common.fs import clean_name
from .common.logging_utils import Timer, extra_context
from .constants import Constants, Stability
from .errors import PollerStoppedError
from .installer import Installer
from .models import DependencyDetails, ModuleDetails, PackageMetadata
from .registry import RegistryClient
from .versioning import resolve_version

T = TypeVar("T")

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], None]


class Poller(Generic[T]):
    """Runs ``handler`` on a fixed delay and remembers its last success."""

    def __init__(
        self,
        handler: Callable[[], Awaitable[T]],
        period: float,
        *,
        on_error: Optional[ErrorHandler] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._handler = handler
        self._period = period
        self._on_error = on_error
        self._logger = log or logger
        self._result: Optional[T] = None
        self._has_result = False
        self._error: Optional[BaseException] = None
        self._first_attempt: Optional[asyncio.Event] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self.attempts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _events(self) -> None:
        if self._first_attempt is None:
            self._first_attempt = asyncio.Event()
        if self._stop_event is None:
            self._stop_event = asyncio.Event()

    def start(self) -> "Poller[T]":
        """Begin polling on the running event loop."""
        if self._stopped:
            raise RuntimeError("Poller has been stopped")
        self._events()
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def stop(self) -> None:
        """Stop scheduling; an attempt already running is allowed to finish."""
        self._stopped = True
        if self._stop_event is not None:
            self._stop_event.set()
        if self.attempts == 0 and not self._has_result:
            self._error = PollerStoppedError("Poller stopped before its first attempt")
            if self._first_attempt is not None:
                self._first_attempt.set()

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._period)
            except asyncio.TimeoutError:
                continue

    async def poll_once(self) -> Optional[T]:
        """Run a single attempt; errors are reported, never raised."""
        self._events()
        assert self._first_attempt is not None
        self.attempts += 1
        try:
            result = await self._handler()
        except Exception as err:  # pylint: disable=broad-exception-caught
            self._error = err
            self._report(err)
            return None
        else:
            self._result = result
            self._has_result = True
            self._error = None
            return result
        finally:
            self._first_attempt.set()

    def _report(self, err: BaseException) -> None:
        if self._on_error is not None:
            try:
                self._on_error(err)
            except Exception:  # pylint: disable=broad-exception-caught
                self._logger.exception("Poll error handler raised")
        else:
            self._logger.error(
                "Poll attempt failed: %s",
                err,
                extra=extra_context(event="poll_error", component="poller", outcome="failure"),
            )

    async def result(self) -> T:
        """Return the last good result, waiting for the first attempt if needed.

        Raises the latest attempt's error when no attempt has succeeded yet.
        """
        self._events()
        assert self._first_attempt is not None
        if not self._has_result and self._error is None:
            await self._first_attempt.wait()
        if self._has_result:
            return self._result  # type: ignore[return-value]
        assert self._error is not None
        raise self._error

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._error


class DistTagPoller:
    """Keeps one dist-tag of one package resolved and installed."""

    def __init__(
        self,
        name: str,
        tag: str,
        *,
        registry: RegistryClient,
        installer: Installer,
        cleanup: CleanupTask,
        period: float = Constants.POLL_INTERVAL,
        dependencies: bool = False,
        child_modules: Optional[Iterable[str]] = None,
        on_error: Optional[ErrorHandler] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.tag = tag
        self._registry = registry
        self._installer = installer
        self._cleanup = cleanup
        self._dependencies = dependencies
        self._child_modules = list(child_modules) if child_modules is not None else None
        self._logger = log or logger
        self._stability: Dict[str, Stability] = {}
        self._current: Optional[ModuleDetails] = None
        self._poller: Poller[ModuleDetails] = Poller(
            self.poll_install, period, on_error=on_error, log=self._logger
        )
        self._cleanup_acquired = False

    @property
    def stability(self) -> Dict[str, Stability]:
        return dict(self._stability)

    @property
    def current(self) -> Optional[ModuleDetails]:
        return self._current

    @property
    def poller(self) -> Poller[ModuleDetails]:
        return self._poller

    def start(self) -> "DistTagPoller":
        if not self._cleanup_acquired:
            self._cleanup.acquire()
            self._cleanup_acquired = True
        self._poller.start()
        return self

    def stop(self) -> None:
        self._poller.stop()
        if self._cleanup_acquired:
            self._cleanup_acquired = False
            self._cleanup.release()

    async def result(self) -> ModuleDetails:
        return await self._poller.result()

    async def poll_once(self) -> Optional[ModuleDetails]:
        return await self._poller.poll_once()

    def mark_stable(self, version: str) -> None:
        self._stability[version] = Stability.STABLE

    def mark_unstable(self, version: str) -> None:
        self._stability[version] = Stability.UNSTABLE

    def prefix_for(self, package_name: str, version: str) -> str:
        return os.path.join(self._cleanup.directory, f"{clean_name(package_name)}_{version}")

    async def poll_install(self) -> ModuleDetails:
        """One attempt: fetch metadata, resolve the tag, install if it moved."""
        info = await self._registry.info(self.name)
        metadata = info.metadata
        dist_tag_version = metadata.dist_tags.get(self.tag)
        if dist_tag_version:
            self._stability.setdefault(dist_tag_version, Stability.STABLE)
        resolution = resolve_version(metadata, self.tag, self._stability)
        version = resolution.version

        current = self._current
        if current is not None and current.version == version:
            if current.previous_version != resolution.previous_version:
                current = replace(current, previous_version=resolution.previous_version)
                self._current = current
            return current

        package_name = metadata.name or self.name
        prefix = self.prefix_for(package_name, version)
        self._cleanup.save(prefix)

        with Timer() as t:
            await self._installer.install(
                package_name,
                version,
                prefix,
                dependencies=self._dependencies,
                child_modules=self._child_modules,
            )

        details = self._details(metadata, package_name, version, resolution.previous_version, prefix)
        self._current = details
        self._logger.info(
            "%s@%s resolved %s to %s",
            package_name,
            self.tag,
            dist_tag_version,
            version,
            extra=extra_context(
                event="poll_installed",
                component="poller",
                outcome="success",
                package=package_name,
                tag=self.tag,
                version=version,
                previous_version=resolution.previous_version,
                duration_ms=t.duration_ms(),
            ),
        )
        return details

    @staticmethod
    def _details(
        metadata: PackageMetadata,
        package_name: str,
        version: str,
        previous_version: str,
        prefix: str,
    ) -> ModuleDetails:
        node_modules_path = os.path.join(prefix, Constants.NODE_MODULES)
        entry = metadata.versions[version]
        dependencies = {
            dependency_name: DependencyDetails(
                version=dependency_version,
                path=os.path.join(node_modules_path, dependency_name),
            )
            for dependency_name, dependency_version in entry.dependencies.items()
        }
        return ModuleDetails(
            node_modules_path=node_modules_path,
            module_path=os.path.join(node_modules_path, package_name),
            version=version,
            previous_version=previous_version,
            dependencies=dependencies,
        )

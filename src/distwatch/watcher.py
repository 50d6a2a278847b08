"""Watcher facade: one poller per dist-tag plus local-disk fallback.

``watch()`` is the entry point for hosting applications::

    watcher = watch("my-package", ["latest"], period=60)
    details = await watcher.get()
    entry = await watcher.resolve_path("dist/index.js")

The watcher never loads code itself. ``load`` hands the resolved path to a
loader supplied by the host.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Sequence

from .cache import LRUCache, PersistentCache, maybe_await
from .cleanup import CleanupTask, shared_cleanup_task
from .common.logging_utils import extra_context
from .config import WatchConfig
from .errors import FallbackResolutionError, InvalidTagError
from .fallback import find_module, get_fallback
from .installer import Installer
from .models import ModuleDetails
from .poller import DistTagPoller, ErrorHandler
from .registry import RegistryClient

logger = logging.getLogger(__name__)


class Watcher:
    """Serves the installed module for each watched dist-tag."""

    def __init__(
        self,
        name: str,
        tags: Sequence[str],
        config: WatchConfig,
        *,
        registry: Optional[RegistryClient] = None,
        installer: Optional[Installer] = None,
        cleanup: Optional[CleanupTask] = None,
        on_error: Optional[ErrorHandler] = None,
        log: Optional[logging.Logger] = None,
        cache: Optional[PersistentCache] = None,
    ):
        if not tags:
            raise InvalidTagError("At least one tag must be watched")
        self.name = name
        self.tags: List[str] = list(dict.fromkeys(tags))
        self.config = config
        self._logger = log or logger
        self._registry = registry or RegistryClient(
            config.registry,
            config.cdn_registry,
            cache=cache,
            info_lifetime=config.info_cache_lifetime,
            timeout=config.request_timeout,
            log=self._logger,
        )
        self._installer = installer or Installer(
            self._registry,
            lock_timeout=config.lock_timeout,
            lock_stale_after=config.lock_stale_after,
            log=self._logger,
        )
        self._cleanup = cleanup or shared_cleanup_task(
            os.path.join(config.install_root, self._registry.label),
            interval=config.clean_interval,
            threshold=config.clean_threshold,
            on_error=on_error,
            log=self._logger,
        )
        self._read_cache: LRUCache[bytes] = LRUCache(config.read_cache_size)
        self._pollers: Dict[str, DistTagPoller] = {
            tag: DistTagPoller(
                name,
                tag,
                registry=self._registry,
                installer=self._installer,
                cleanup=self._cleanup,
                period=config.period,
                dependencies=config.dependencies,
                child_modules=config.child_modules,
                on_error=on_error,
                log=self._logger,
            )
            for tag in self.tags
        }

    @property
    def registry(self) -> RegistryClient:
        return self._registry

    @property
    def cleanup(self) -> CleanupTask:
        return self._cleanup

    def poller(self, tag: Optional[str] = None) -> DistTagPoller:
        return self._pollers[self._select_tag(tag)]

    def start(self) -> "Watcher":
        """Start every poller; needs a running event loop."""
        for poller in self._pollers.values():
            poller.start()
        return self

    def _select_tag(self, tag: Optional[str]) -> str:
        if tag:
            if tag not in self._pollers:
                raise InvalidTagError(f"Invalid tag: {tag}")
            return tag
        if len(self.tags) == 1:
            return self.tags[0]
        if self.config.default_tag in self._pollers:
            return self.config.default_tag
        raise InvalidTagError(f"Please specify tag: one of {', '.join(self.tags)}")

    async def _with_poller(
        self,
        handler: Callable[[ModuleDetails], Any],
        tag: Optional[str],
    ) -> Any:
        poller = self._pollers[self._select_tag(tag)]
        try:
            return await maybe_await(handler(await poller.result()))
        except Exception as err:  # pylint: disable=broad-exception-caught
            self._logger.warning(
                "Poll error for %s, trying fallback: %s",
                self.name,
                err,
                extra=extra_context(
                    event="poll_error_fallback",
                    component="watcher",
                    package=self.name,
                    tag=poller.tag,
                ),
            )
            if not self.config.fallback or not await self._has_local_install():
                raise
            try:
                details = await asyncio.to_thread(
                    get_fallback,
                    self.name,
                    self.config.fallback_paths,
                    self.config.install_root,
                )
                return await maybe_await(handler(details))
            except Exception as fallback_err:  # pylint: disable=broad-exception-caught
                raise FallbackResolutionError(
                    "Fallback failed", error=err, fallback_error=fallback_err
                ) from err

    async def _has_local_install(self) -> bool:
        found = await asyncio.to_thread(
            find_module, self.name, self.config.fallback_paths, self.config.install_root
        )
        return found is not None

    async def get(self, tag: Optional[str] = None) -> ModuleDetails:
        """Current module details, waiting for the first poll if needed."""
        return await self._with_poller(lambda details: details, tag)

    async def resolve_path(self, path: str = "", tag: Optional[str] = None) -> str:
        """Absolute path of ``path`` inside the module, for the host's loader."""
        return await self._with_poller(
            lambda details: os.path.abspath(os.path.join(details.module_path, path)), tag
        )

    async def resolve_dependency_path(
        self, dependency: str, path: str = "", tag: Optional[str] = None
    ) -> str:
        """Absolute path of ``path`` inside an installed dependency."""

        def resolve(details: ModuleDetails) -> str:
            known = details.dependencies.get(dependency)
            base = known.path if known else os.path.join(details.node_modules_path, dependency)
            return os.path.abspath(os.path.join(base, path))

        return await self._with_poller(resolve, tag)

    async def read(self, path: str = "", tag: Optional[str] = None) -> bytes:
        """Bytes of a file inside the module, cached by absolute path."""

        async def read_file(details: ModuleDetails) -> bytes:
            file_path = os.path.abspath(os.path.join(details.module_path, path))
            cached = self._read_cache.get(file_path)
            if cached is not None:
                return cached
            data = await asyncio.to_thread(_read_bytes, file_path)
            self._read_cache.set(file_path, data)
            return data

        return await self._with_poller(read_file, tag)

    async def load(
        self,
        loader: Callable[[str], Any],
        path: str = "",
        tag: Optional[str] = None,
    ) -> Any:
        """Call the host-supplied ``loader`` with the resolved absolute path.

        ``loader`` may be sync or async. Loader errors take the same fallback
        path as poll errors.
        """
        return await self._with_poller(
            lambda details: loader(os.path.abspath(os.path.join(details.module_path, path))),
            tag,
        )

    def mark_stable(self, version: str) -> None:
        for poller in self._pollers.values():
            poller.mark_stable(version)

    def mark_unstable(self, version: str) -> None:
        for poller in self._pollers.values():
            poller.mark_unstable(version)

    def cancel(self) -> None:
        """Stop all pollers; the cleanup task stops once its last user is gone."""
        for poller in self._pollers.values():
            poller.stop()

    async def close(self) -> None:
        self.cancel()
        await self._registry.stop()

    def flush_cache(self) -> None:
        self._registry.clear_cache()
        self._installer.clear()
        self._read_cache.clear()

    async def __aenter__(self) -> "Watcher":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def watch(
    name: str,
    tags: Optional[Sequence[str]] = None,
    config: Optional[WatchConfig] = None,
    *,
    on_error: Optional[ErrorHandler] = None,
    logger: Optional[logging.Logger] = None,  # pylint: disable=redefined-outer-name
    cache: Optional[PersistentCache] = None,
    registry: Optional[RegistryClient] = None,
    cleanup: Optional[CleanupTask] = None,
    **options: Any,
) -> Watcher:
    """Start watching ``tags`` (default: the configured default tag) of ``name``.

    ``options`` override fields of ``config`` (e.g. ``period=60``,
    ``dependencies=True``, ``cdn_registry=...``). Must be called with a
    running event loop.
    """
    config = (config or WatchConfig()).replace(**options)
    watcher = Watcher(
        name,
        list(tags) if tags else [config.default_tag],
        config,
        registry=registry,
        cleanup=cleanup,
        on_error=on_error,
        log=logger,
        cache=cache,
    )
    return watcher.start()

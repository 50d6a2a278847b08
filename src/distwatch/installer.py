"""Flat installer for exact package versions.

Each package lands in ``{prefix}/node_modules/{name}`` and its
``package.json`` is the completion marker: the manifest is moved in last, so
a directory with a manifest is always a complete install. Concurrent requests
for the same install are coalesced in-process and serialized across
processes by a lock file inside the module directory.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tarfile
from typing import Iterable, List, Optional

from .cache import SingleFlight
from .common.fs import clear_directory, make_scratch_dir, sanitize_string, try_rmrf
from .common.logging_utils import Timer, extra_context, safe_url
from .constants import Constants
from .errors import InstallError, InvalidVersionError
from .locking import FileSystemLock
from .registry import RegistryClient
from .versioning import is_valid_dependency_version

logger = logging.getLogger(__name__)


def _extract_tarball(archive: str, destination: str) -> str:
    """Extract a gzip tarball and return the package root inside it."""
    with tarfile.open(archive, "r:gz") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(destination, filter="data")
        else:
            tar.extractall(destination)  # nosec B202 - pre-3.12 interpreters
    package_dir = os.path.join(destination, Constants.PACKAGE)
    if os.path.isdir(package_dir):
        return package_dir
    roots = [
        entry
        for entry in os.listdir(destination)
        if os.path.isdir(os.path.join(destination, entry))
    ]
    if len(roots) == 1:
        return os.path.join(destination, roots[0])
    raise InstallError(f"No package directory found in {os.path.basename(archive)}")


def _move_contents(source: str, target: str) -> None:
    """Move every entry of ``source`` into ``target``, the manifest last."""
    entries = sorted(os.listdir(source), key=lambda e: e == Constants.PACKAGE_JSON)
    for entry in entries:
        destination = os.path.join(target, entry)
        if os.path.lexists(destination):
            if os.path.isdir(destination) and not os.path.islink(destination):
                shutil.rmtree(destination)
            else:
                os.remove(destination)
        shutil.move(os.path.join(source, entry), destination)


class Installer:
    """Installs exact versions, optionally with their direct dependencies."""

    def __init__(
        self,
        registry: RegistryClient,
        *,
        lock_timeout: float = Constants.LOCK_TIMEOUT,
        lock_stale_after: float = Constants.LOCK_STALE_AFTER,
        log: Optional[logging.Logger] = None,
    ):
        self._registry = registry
        self._lock_timeout = lock_timeout
        self._lock_stale_after = lock_stale_after
        self._single_flight = SingleFlight()
        self._logger = log or logger

    @staticmethod
    def module_dir(prefix: str, name: str) -> str:
        return os.path.join(prefix, Constants.NODE_MODULES, name)

    @classmethod
    def is_installed(cls, prefix: str, name: str) -> bool:
        return os.path.isfile(os.path.join(cls.module_dir(prefix, name), Constants.PACKAGE_JSON))

    async def install(
        self,
        name: str,
        version: str,
        prefix: str,
        *,
        dependencies: bool = False,
        child_modules: Optional[Iterable[str]] = None,
    ) -> None:
        """Install ``name@version`` and, if asked, its declared dependencies.

        Every install runs concurrently; the first failure is logged and
        re-raised once all of them have settled.

        Raises:
            InvalidVersionError: a version is not an exact ``x.y.z`` version.
            InstallError: a download, extraction or move failed.
        """
        tasks: List = []
        registry_url = self._registry.registry
        label = sanitize_string(name)

        if dependencies:
            info = await self._registry.info(name)
            entry = info.metadata.versions.get(version)
            if entry is None:
                raise InstallError(
                    f"No version found for {name} @ {version}",
                    package=name,
                    version=version,
                    registry=registry_url,
                )
            dependency_versions = dict(entry.dependencies)
            self._logger.info(
                "Installing dependencies of %s@%s: %s",
                name,
                version,
                ",".join(dependency_versions),
                extra=extra_context(
                    event=f"install_dependencies_{label}",
                    component="installer",
                    package=name,
                    version=version,
                    registry=registry_url,
                ),
            )

            for dependency_name, dependency_version in dependency_versions.items():
                if not is_valid_dependency_version(dependency_version):
                    raise InvalidVersionError(
                        dependency_name, dependency_version, "flat single install"
                    )

            allowed = set(child_modules) if child_modules is not None else None
            for dependency_name, dependency_version in dependency_versions.items():
                if allowed is not None and dependency_name not in allowed:
                    continue
                tasks.append(self.install_single(dependency_name, dependency_version, prefix))

        self._logger.info(
            "Installing %s@%s",
            name,
            version,
            extra=extra_context(
                event=f"install_{label}",
                component="installer",
                package=name,
                version=version,
                registry=registry_url,
            ),
        )
        tasks.append(self.install_single(name, version, prefix))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                self._logger.error(
                    "Install of %s@%s failed: %s",
                    name,
                    version,
                    result,
                    extra=extra_context(
                        event=f"install_{label}_error",
                        component="installer",
                        outcome="failure",
                        package=name,
                        version=version,
                    ),
                )
                raise result

    async def install_single(self, name: str, version: str, prefix: str) -> None:
        """Install one package; identical concurrent calls share one run."""
        return await self._single_flight.run(
            (name, version, prefix), lambda: self._install_single(name, version, prefix)
        )

    async def _install_single(self, name: str, version: str, prefix: str) -> None:
        if not is_valid_dependency_version(version):
            raise InvalidVersionError(name, version, "single install")
        if not prefix:
            raise InstallError("Prefix required for flat install", package=name, version=version)

        info = await self._registry.info(name)
        metadata = info.metadata
        entry = metadata.versions.get(version)
        if entry is None:
            raise InstallError(
                f"No version found for {name} @ {version} - found {', '.join(metadata.versions)}",
                package=name,
                version=version,
                registry=self._registry.registry,
            )
        if not entry.tarball:
            raise InstallError(
                f"Can not find tarball for {metadata.name or name}",
                package=name,
                version=version,
                registry=self._registry.registry,
            )

        try:
            tarball = self._registry.tarball_url(entry.tarball, info.fetched_from_cdn)
        except ValueError as exc:
            raise InstallError(str(exc), package=name, version=version) from exc

        package_name = metadata.name or name
        module_dir = self.module_dir(prefix, package_name)
        if self.is_installed(prefix, package_name):
            return

        failure: Optional[InstallError] = None
        async with FileSystemLock(
            module_dir, timeout=self._lock_timeout, stale_after=self._lock_stale_after
        ):
            if self.is_installed(prefix, package_name):
                return
            try:
                await self._populate(package_name, version, tarball, module_dir)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                await asyncio.to_thread(clear_directory, module_dir, (Constants.LOCK,))
                failure = InstallError(
                    f"Failed to download {safe_url(tarball)}: {exc}",
                    package=package_name,
                    version=version,
                    registry=self._registry.registry,
                )
                failure.__cause__ = exc

        if failure is not None:
            try:
                os.rmdir(module_dir)
            except OSError:
                pass  # Another installer already holds the directory again.
            raise failure

    async def _populate(self, name: str, version: str, tarball: str, module_dir: str) -> None:
        await asyncio.to_thread(clear_directory, module_dir, (Constants.LOCK,))
        scratch = make_scratch_dir(name)
        try:
            with Timer() as t:
                archive = os.path.join(scratch, f"{Constants.PACKAGE}.tar.gz")
                await self._registry.download(tarball, archive)
                package_dir = await asyncio.to_thread(
                    _extract_tarball, archive, os.path.join(scratch, "extract")
                )
                await asyncio.to_thread(_move_contents, package_dir, module_dir)
            manifest = os.path.join(module_dir, Constants.PACKAGE_JSON)
            if not os.path.isfile(manifest):
                raise InstallError(f"Package not found at {manifest}", package=name, version=version)
            self._logger.info(
                "Installed %s@%s into %s",
                name,
                version,
                module_dir,
                extra=extra_context(
                    event="install_complete",
                    component="installer",
                    outcome="success",
                    package=name,
                    version=version,
                    duration_ms=t.duration_ms(),
                ),
            )
        finally:
            await try_rmrf(scratch, self._logger)

    def clear(self) -> None:
        self._single_flight.clear()

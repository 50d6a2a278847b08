"""Registry client for package metadata and tarballs.

Metadata comes from an optional CDN mirror first, then from the primary npm
registry. Results are normalized to ``PackageMetadata`` and cached in memory
(and in the host's persistent cache when one is supplied).
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import urllib.parse
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .cache import CachedLoader, PersistentCache
from .common.fs import sanitize_string
from .common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from .constants import Constants
from .errors import FetchError
from .models import PackageInfo, PackageMetadata

logger = logging.getLogger(__name__)


def _encode_info(info: PackageInfo) -> Dict[str, Any]:
    data = info.metadata.to_dict()
    data["fetchedFromCDNRegistry"] = info.fetched_from_cdn
    return data


def _decode_info(data: Dict[str, Any]) -> PackageInfo:
    return PackageInfo(
        metadata=PackageMetadata.from_dict(data),
        fetched_from_cdn=bool(data.get("fetchedFromCDNRegistry")),
    )


class RegistryClient:
    """Client for an npm-compatible registry and its optional CDN mirror."""

    def __init__(
        self,
        registry: str = Constants.NPM_REGISTRY,
        cdn_registry: Optional[str] = None,
        *,
        cache: Optional[PersistentCache] = None,
        info_lifetime: float = Constants.INFO_MEMORY_CACHE_LIFETIME,
        timeout: float = Constants.REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        log: Optional[logging.Logger] = None,
    ):
        """Initialize the registry client.

        Args:
            registry: Primary registry base URL.
            cdn_registry: Optional CDN mirror base URL, tried first.
            cache: Optional persistent cache backing the in-memory layer.
            info_lifetime: Seconds metadata stays in memory.
            timeout: Total request timeout in seconds.
            session: Pre-built session; the client will not close it.
            log: Logger replacing the module logger.
        """
        self.registry = registry.rstrip("/")
        self.cdn_registry = cdn_registry.rstrip("/") if cdn_registry else None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._logger = log or logger
        self._info_cache: CachedLoader[PackageInfo] = CachedLoader(
            info_lifetime,
            cache,
            encode=_encode_info,
            decode=_decode_info,
            log=self._logger,
        )

    @property
    def label(self) -> str:
        """Directory label for installs: the CDN host, else the registry host."""
        source = self.cdn_registry or self.registry
        return urllib.parse.urlsplit(source).hostname or sanitize_string(source)

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"User-Agent": Constants.USER_AGENT},
            )
            self._owns_session = True

    async def stop(self) -> None:
        """Stop the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def info_cache_key(self, name: str) -> str:
        cdn_label = sanitize_string(self.cdn_registry or "npm")
        return f"{Constants.INFO_CACHE_KEY_PREFIX}_{sanitize_string(name)}_{cdn_label}"

    def cdn_info_url(self, name: str, now: Optional[float] = None) -> str:
        """Build the CDN metadata URL with its cache-bust window."""
        if not self.cdn_registry:
            raise ValueError("No CDN registry configured")
        now = time.time() if now is None else now
        window = math.floor(now / Constants.CDN_REGISTRY_INFO_CACHEBUST_URL_TIME)
        return (
            f"{self.cdn_registry}/{name.replace('@', '', 1)}/"
            f"{Constants.CDN_REGISTRY_INFO_FILENAME}?cache-bust={window}"
        )

    def registry_info_url(self, name: str) -> str:
        return f"{self.registry}/{name}"

    async def info(self, name: str) -> PackageInfo:
        """Return metadata for ``name``, cached for ``info_lifetime`` seconds."""
        return await self._info_cache.load(
            self.info_cache_key(name), lambda: self.fetch_info(name)
        )

    async def fetch_info(self, name: str) -> PackageInfo:
        """Fetch metadata bypassing the caches.

        Raises:
            FetchError: the registry is unreachable or answered non-2xx.
        """
        if self.cdn_registry:
            url = self.cdn_info_url(name)
            try:
                status, body = await self._get(url)
            except FetchError as exc:
                status, body = 0, b""
                self._logger.warning("CDN registry request failed: %s", exc)
            if 200 <= status < 300:
                return PackageInfo(self._parse(url, body), fetched_from_cdn=True)
            self._logger.warning(
                "CDN registry returned status %s for %s, using %s",
                status,
                name,
                self.registry,
                extra=extra_context(
                    event="cdn_registry_failure",
                    component="registry",
                    package=name,
                    status_code=status,
                    target=safe_url(url),
                ),
            )

        url = self.registry_info_url(name)
        status, body = await self._get(url)
        if not 200 <= status < 300:
            raise FetchError(
                f"npm returned status {status or 'unknown'} for {url}",
                url=url,
                status=status,
            )
        return PackageInfo(self._parse(url, body), fetched_from_cdn=False)

    def _parse(self, url: str, body: bytes) -> PackageMetadata:
        try:
            document = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise FetchError(f"Invalid JSON from {url}: {exc}", url=url) from exc
        if not isinstance(document, dict):
            raise FetchError(f"Unexpected metadata document from {url}", url=url)
        return PackageMetadata.from_registry(document)

    async def _get(self, url: str) -> Tuple[int, bytes]:
        """GET ``url`` and return ``(status, body)``."""
        if self._session is None:
            await self.start()
        assert self._session is not None
        safe_target = safe_url(url)
        with Timer() as t:
            try:
                response = await self._session.request(
                    "GET", url, headers={"Accept": "application/json"}
                )
                try:
                    body = await response.read()
                finally:
                    response.release()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise FetchError(f"Request to {safe_target} failed: {exc}", url=url) from exc
        if is_debug_enabled(self._logger):
            self._logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="registry",
                    action="GET",
                    status_code=response.status,
                    duration_ms=t.duration_ms(),
                    target=safe_target,
                ),
            )
        return response.status, body

    def tarball_url(self, tarball: str, fetched_from_cdn: bool) -> str:
        """Point ``tarball`` at the CDN origin when metadata came from the CDN.

        The path is preserved; only scheme and host change.
        """
        if not (self.cdn_registry and fetched_from_cdn) or self.cdn_registry in tarball:
            return tarball
        path = urllib.parse.urlsplit(tarball).path
        origin = urllib.parse.urlsplit(self.cdn_registry)
        if not path or not origin.scheme or not origin.netloc:
            raise ValueError(f"Failed to parse tarball url {tarball}")
        rewritten = urllib.parse.urlunsplit((origin.scheme, origin.netloc, path, "", ""))
        self._logger.info(
            "Tarball location rewritten to CDN: %s",
            safe_url(rewritten),
            extra=extra_context(
                event="tarball_rewrite",
                component="registry",
                target=safe_url(tarball),
            ),
        )
        return rewritten

    async def download(self, url: str, destination: str) -> None:
        """Stream ``url`` into the file ``destination``.

        Raises:
            FetchError: request failure or non-2xx status.
        """
        if self._session is None:
            await self.start()
        assert self._session is not None
        try:
            response = await self._session.request("GET", url)
            try:
                if not 200 <= response.status < 300:
                    raise FetchError(
                        f"Tarball download returned status {response.status} for {safe_url(url)}",
                        url=url,
                        status=response.status,
                    )
                with open(destination, "wb") as handle:
                    async for chunk in response.content.iter_chunked(Constants.DOWNLOAD_CHUNK_SIZE):
                        handle.write(chunk)
            finally:
                response.release()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(f"Tarball download failed for {safe_url(url)}: {exc}", url=url) from exc

    def clear_cache(self) -> None:
        self._info_cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._info_cache.stats()

    async def __aenter__(self) -> "RegistryClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()

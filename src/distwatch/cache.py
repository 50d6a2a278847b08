"""In-memory caches and request coalescing for registry metadata and installs."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from .common.logging_utils import extra_context

T = TypeVar("T")

logger = logging.getLogger(__name__)


@runtime_checkable
class PersistentCache(Protocol):
    """Pluggable cache supplied by the host (e.g. backed by redis).

    Either method may be a coroutine function.
    """

    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> Any:
        ...


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


class TTLCache(Generic[T]):
    """TTL cache for values keyed by string.

    Entries expire ``default_ttl`` seconds after they are set. Expired entries
    are dropped lazily on access and in periodic sweeps.
    """

    def __init__(self, default_ttl: float = 60, max_entries: int = 1000):
        """Initialize the cache.

        Args:
            default_ttl: Default time-to-live in seconds.
            max_entries: Entry count above which the oldest tenth is evicted.
        """
        self._default_ttl = default_ttl
        self._cache: Dict[str, CacheEntry[T]] = {}
        self._max_entries = max_entries
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def get(self, key: str) -> Optional[T]:
        """Return the cached value or None if missing or expired."""
        self._maybe_cleanup()

        entry = self._cache.get(key)
        if entry is None:
            return None

        if entry.is_expired():
            del self._cache[key]
            return None

        return entry.value

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        """Cache a value.

        Args:
            key: Cache key.
            value: Value to cache.
            ttl: Optional TTL override in seconds.
        """
        self._maybe_cleanup()

        effective_ttl = ttl if ttl is not None else self._default_ttl
        if effective_ttl <= 0:
            return
        self._cache[key] = CacheEntry(value=value, expires_at=time.time() + effective_ttl)

        if len(self._cache) > self._max_entries:
            self._evict_oldest(max(1, self._max_entries // 10))

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        expired_count = sum(1 for e in self._cache.values() if e.is_expired())
        return {
            "total_entries": len(self._cache),
            "expired_entries": expired_count,
            "active_entries": len(self._cache) - expired_count,
            "max_entries": self._max_entries,
            "default_ttl": self._default_ttl,
        }

    def _maybe_cleanup(self) -> None:
        """Run cleanup if enough time has passed."""
        now = time.time()
        if now - self._last_cleanup > self._cleanup_interval:
            self._cleanup()
            self._last_cleanup = now

    def _cleanup(self) -> None:
        """Remove expired entries."""
        keys_to_remove = [k for k, v in self._cache.items() if v.is_expired()]
        for key in keys_to_remove:
            del self._cache[key]

    def _evict_oldest(self, count: int) -> None:
        """Evict the oldest entries."""
        sorted_keys = sorted(self._cache.keys(), key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[:count]:
            del self._cache[key]


class LRUCache(Generic[T]):
    """Bounded recency cache; the least recently used entry goes first."""

    def __init__(self, max_entries: int = 20):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._cache: "OrderedDict[str, T]" = OrderedDict()

    def get(self, key: str) -> Optional[T]:
        if key not in self._cache:
            return None
        self._cache.move_to_end(key)
        return self._cache[key]

    def set(self, key: str, value: T) -> None:
        self._cache[key] = value
        self._cache.move_to_end(key)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()


class SingleFlight:
    """Coalesce concurrent calls with the same key into one execution.

    The first caller for a key runs the coroutine; later callers await the
    same future until it settles. Nothing is remembered afterwards, so the
    next call starts a fresh execution.
    """

    def __init__(self) -> None:
        self._in_flight: Dict[Hashable, "asyncio.Future[Any]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        existing = self._in_flight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
                # Mark retrieved so a lone caller does not trigger a loop warning.
                future.exception()
            raise
        else:
            if not future.done():
                future.set_result(result)
            return result
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    def clear(self) -> None:
        self._in_flight.clear()


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CachedLoader(Generic[T]):
    """Memory TTL layer over an optional persistent cache, with coalescing.

    ``load(key, loader)`` answers from memory when fresh, then from the
    persistent cache, and only then calls ``loader``. Results are written back
    to both layers. Persistent cache failures are logged and bypassed.
    ``encode``/``decode`` convert values to and from the persistent form.
    """

    def __init__(
        self,
        lifetime: float,
        persistent: Optional[PersistentCache] = None,
        *,
        encode: Callable[[T], Any] = lambda value: value,
        decode: Callable[[Any], T] = lambda value: value,
        log: Optional[logging.Logger] = None,
    ):
        self._memory: TTLCache[T] = TTLCache(default_ttl=lifetime)
        self._persistent = persistent
        self._encode = encode
        self._decode = decode
        self._single_flight = SingleFlight()
        self._logger = log or logger

    async def load(self, key: str, loader: Callable[[], Awaitable[T]]) -> T:
        cached = self._memory.get(key)
        if cached is not None:
            return cached
        return await self._single_flight.run(key, lambda: self._read_through(key, loader))

    async def _read_through(self, key: str, loader: Callable[[], Awaitable[T]]) -> T:
        value: Optional[T] = None
        if self._persistent is not None:
            try:
                stored = await maybe_await(self._persistent.get(key))
                if stored:
                    value = self._decode(stored)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._logger.warning(
                    "Persistent cache read failed for %s: %s",
                    key,
                    exc,
                    extra=extra_context(event="cache_read_error", component="cache", target=key),
                )

        if value is None:
            value = await loader()
            if self._persistent is not None:
                try:
                    await maybe_await(self._persistent.set(key, self._encode(value)))
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    self._logger.warning(
                        "Persistent cache write failed for %s: %s",
                        key,
                        exc,
                        extra=extra_context(event="cache_write_error", component="cache", target=key),
                    )

        self._memory.set(key, value)
        return value

    def clear(self) -> None:
        self._memory.clear()
        self._single_flight.clear()

    def stats(self) -> Dict[str, Any]:
        return self._memory.stats()

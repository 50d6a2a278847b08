"""Tests for the TTL/LRU caches, request coalescing and the cached loader."""

import asyncio
import time

import pytest

from distwatch.cache import CachedLoader, LRUCache, SingleFlight, TTLCache


class TestTTLCache:
    """Tests for TTLCache."""

    def test_set_and_get(self):
        cache = TTLCache(default_ttl=60)
        cache.set("key", "value")
        assert cache.get("key") == "value"
        assert "key" in cache

    def test_expired_entry_is_dropped(self, monkeypatch):
        """Entries disappear once their TTL has passed."""
        cache = TTLCache(default_ttl=10)
        cache.set("key", "value")
        real_time = time.time
        monkeypatch.setattr(time, "time", lambda: real_time() + 11)
        assert cache.get("key") is None
        assert len(cache) == 0

    def test_zero_ttl_disables_caching(self):
        cache = TTLCache(default_ttl=0)
        cache.set("key", "value")
        assert cache.get("key") is None

    def test_eviction_when_full(self):
        """The oldest entries are evicted beyond max_entries."""
        cache = TTLCache(default_ttl=60, max_entries=10)
        for i in range(11):
            cache.set(f"k{i}", i)
        assert len(cache) == 10
        assert cache.get("k10") == 10

    def test_stats(self):
        cache = TTLCache(default_ttl=60)
        cache.set("a", 1)
        stats = cache.stats()
        assert stats["total_entries"] == 1
        assert stats["active_entries"] == 1
        assert stats["default_ttl"] == 60


class TestLRUCache:
    """Tests for LRUCache."""

    def test_least_recently_used_is_evicted(self):
        cache = LRUCache(max_entries=2)
        cache.set("a", b"1")
        cache.set("b", b"2")
        assert cache.get("a") == b"1"
        cache.set("c", b"3")
        assert "b" not in cache
        assert "a" in cache and "c" in cache

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            LRUCache(max_entries=0)


class TestSingleFlight:
    """Tests for SingleFlight."""

    def test_concurrent_calls_share_one_execution(self):
        """Callers with the same key await the first caller's result."""
        flight = SingleFlight()
        calls = []

        async def work():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "done"

        async def _run():
            return await asyncio.gather(*(flight.run("k", work) for _ in range(5)))

        assert asyncio.run(_run()) == ["done"] * 5
        assert len(calls) == 1
        assert not flight.in_flight("k")

    def test_errors_reach_every_waiter(self):
        flight = SingleFlight()

        async def work():
            await asyncio.sleep(0.01)
            raise RuntimeError("boom")

        async def _run():
            return await asyncio.gather(
                *(flight.run("k", work) for _ in range(3)), return_exceptions=True
            )

        results = asyncio.run(_run())
        assert all(isinstance(r, RuntimeError) for r in results)

    def test_settled_key_runs_again(self):
        """Nothing is remembered once a call settles."""
        flight = SingleFlight()
        calls = []

        async def work():
            calls.append(1)
            return len(calls)

        async def _run():
            first = await flight.run("k", work)
            second = await flight.run("k", work)
            return first, second

        assert asyncio.run(_run()) == (1, 2)

    def test_different_keys_run_independently(self):
        flight = SingleFlight()
        calls = []

        async def work(key):
            calls.append(key)
            await asyncio.sleep(0)
            return key

        async def _run():
            return await asyncio.gather(
                flight.run("a", lambda: work("a")), flight.run("b", lambda: work("b"))
            )

        assert asyncio.run(_run()) == ["a", "b"]
        assert sorted(calls) == ["a", "b"]


class _DictCache:
    def __init__(self):
        self.data = {}
        self.gets = 0
        self.sets = 0

    def get(self, key):
        self.gets += 1
        return self.data.get(key)

    def set(self, key, value):
        self.sets += 1
        self.data[key] = value


class _AsyncDictCache(_DictCache):
    async def get(self, key):  # pylint: disable=invalid-overridden-method
        return super().get(key)

    async def set(self, key, value):  # pylint: disable=invalid-overridden-method
        super().set(key, value)


class _BrokenCache:
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value):
        raise ConnectionError("cache down")


class TestCachedLoader:
    """Tests for the memory plus persistent read-through loader."""

    def test_memory_hit_skips_loader(self):
        loader_calls = []

        async def load():
            loader_calls.append(1)
            return {"v": 1}

        cached = CachedLoader(60)

        async def _run():
            await cached.load("k", load)
            return await cached.load("k", load)

        assert asyncio.run(_run()) == {"v": 1}
        assert len(loader_calls) == 1

    @pytest.mark.parametrize("cache_cls", [_DictCache, _AsyncDictCache])
    def test_persistent_hit_skips_loader(self, cache_cls):
        """A value in the persistent cache is decoded instead of fetched."""
        persistent = cache_cls()
        persistent.data["k"] = {"encoded": 7}

        async def load():  # pragma: no cover - must not be called
            raise AssertionError("loader called")

        cached = CachedLoader(60, persistent, decode=lambda d: d["encoded"])
        assert asyncio.run(cached.load("k", load)) == 7

    def test_loader_result_written_to_persistent(self):
        persistent = _DictCache()

        async def load():
            return 3

        cached = CachedLoader(60, persistent, encode=lambda v: {"encoded": v})
        assert asyncio.run(cached.load("k", load)) == 3
        assert persistent.data == {"k": {"encoded": 3}}

    def test_persistent_failures_are_bypassed(self, caplog):
        """A broken persistent cache degrades to loading directly."""

        async def load():
            return "fresh"

        cached = CachedLoader(60, _BrokenCache())
        assert asyncio.run(cached.load("k", load)) == "fresh"
        assert "Persistent cache read failed" in caplog.text
        assert "Persistent cache write failed" in caplog.text

    def test_concurrent_misses_load_once(self):
        loader_calls = []

        async def load():
            loader_calls.append(1)
            await asyncio.sleep(0.01)
            return "v"

        cached = CachedLoader(60)

        async def _run():
            return await asyncio.gather(*(cached.load("k", load) for _ in range(4)))

        assert asyncio.run(_run()) == ["v"] * 4
        assert len(loader_calls) == 1

    def test_clear_forces_reload(self):
        loader_calls = []

        async def load():
            loader_calls.append(1)
            return len(loader_calls)

        cached = CachedLoader(60)

        async def _run():
            await cached.load("k", load)
            cached.clear()
            return await cached.load("k", load)

        assert asyncio.run(_run()) == 2

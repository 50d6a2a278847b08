"""Tests for the Watcher facade and watch()."""

import asyncio
import os
import threading
import time

import pytest

from distwatch import watch
from distwatch import watcher as watcher_mod
from distwatch.config import WatchConfig
from distwatch.errors import FallbackResolutionError, FetchError, InvalidTagError
from distwatch.watcher import Watcher


def _config(install_root, **overrides):
    return WatchConfig(
        registry="https://registry.example.test",
        install_root=install_root,
        period=60,
        **overrides,
    )


class TestWatcherReads:
    """Tests for reading the installed module."""

    def test_get_and_resolve_paths(self, fake_npm, install_root):
        fake_npm.publish("left-pad", "1.3.0")
        fake_npm.publish(
            "demo-pkg", "1.0.0", dependencies={"left-pad": "1.3.0"}, tag="latest"
        )
        config = _config(install_root, dependencies=True)

        async def _run():
            async with Watcher("demo-pkg", ["latest"], config, registry=fake_npm.client()) as w:
                details = await w.get()
                entry = await w.resolve_path("index.js")
                dependency = await w.resolve_dependency_path("left-pad", "package.json")
                return details, entry, dependency

        details, entry, dependency = asyncio.run(_run())
        assert details.version == "1.0.0"
        assert entry == os.path.join(details.module_path, "index.js")
        assert os.path.isfile(dependency)
        assert dependency.startswith(details.node_modules_path)

    def test_read_is_cached_by_path(self, fake_npm, install_root):
        fake_npm.publish("demo-pkg", "1.0.0", files={"data.txt": "original"}, tag="latest")
        config = _config(install_root)

        async def _run():
            async with Watcher("demo-pkg", ["latest"], config, registry=fake_npm.client()) as w:
                first = await w.read("data.txt")
                with open(await w.resolve_path("data.txt"), "w", encoding="utf-8") as f:
                    f.write("changed")
                cached = await w.read("data.txt")
                w.flush_cache()
                fresh = await w.read("data.txt")
                return first, cached, fresh

        assert asyncio.run(_run()) == (b"original", b"original", b"changed")

    @pytest.mark.parametrize("is_async", [False, True])
    def test_load_passes_absolute_path_to_loader(self, fake_npm, install_root, is_async):
        fake_npm.publish("demo-pkg", "1.0.0", tag="latest")
        config = _config(install_root)
        seen = []

        def sync_loader(path):
            seen.append(path)
            return "module"

        async def async_loader(path):
            seen.append(path)
            return "module"

        async def _run():
            async with Watcher("demo-pkg", ["latest"], config, registry=fake_npm.client()) as w:
                return await w.load(async_loader if is_async else sync_loader, "index.js")

        assert asyncio.run(_run()) == "module"
        assert os.path.isabs(seen[0])
        assert seen[0].endswith(os.path.join("node_modules", "demo-pkg", "index.js"))

    def test_mark_unstable_applies_to_every_tag(self, fake_npm, install_root):
        fake_npm.publish("demo-pkg", "1.0.0")
        fake_npm.publish("demo-pkg", "1.1.0", tag="latest")
        fake_npm.tag("demo-pkg", "next", "1.1.0")
        config = _config(install_root)

        async def _run():
            async with Watcher(
                "demo-pkg", ["latest", "next"], config, registry=fake_npm.client()
            ) as w:
                await w.get("latest")
                await w.get("next")
                w.mark_unstable("1.1.0")
                latest = await w.poller("latest").poll_once()
                nxt = await w.poller("next").poll_once()
                return latest.version, nxt.version

        assert asyncio.run(_run()) == ("1.0.0", "1.0.0")


class TestWatcherTags:
    """Tests for tag selection."""

    def test_default_tag_used_when_watched(self, fake_npm, install_root):
        fake_npm.publish("demo-pkg", "1.0.0", tag="latest")
        fake_npm.publish("demo-pkg", "2.0.0", tag="next")
        config = _config(install_root)

        async def _run():
            async with Watcher(
                "demo-pkg", ["next", "latest"], config, registry=fake_npm.client()
            ) as w:
                return (await w.get()).version, (await w.get("next")).version

        assert asyncio.run(_run()) == ("1.0.0", "2.0.0")

    def test_ambiguous_tag_raises(self, fake_npm, install_root):
        config = _config(install_root)
        watcher = Watcher("demo-pkg", ["next", "beta"], config, registry=fake_npm.client())
        with pytest.raises(InvalidTagError, match="Please specify tag"):
            asyncio.run(watcher.get())

    def test_unknown_tag_raises_without_fallback(self, fake_npm, install_root):
        config = _config(install_root)
        watcher = Watcher("demo-pkg", ["latest"], config, registry=fake_npm.client())
        with pytest.raises(InvalidTagError, match="Invalid tag"):
            asyncio.run(watcher.get("canary"))

    def test_empty_tag_list_rejected(self, install_root):
        with pytest.raises(InvalidTagError):
            Watcher("demo-pkg", [], _config(install_root))


class TestWatcherFallback:
    """Tests for falling back to a local installation."""

    def _broken_registry(self, fake_npm):
        fake_npm.session.routes[f"{fake_npm.registry}/demo-pkg"] = (503, b"")
        return fake_npm.client()

    def test_poll_error_uses_local_install(self, fake_npm, install_root, tmp_path, module_writer):
        app = tmp_path / "app"
        module_dir = module_writer(str(app / "node_modules"), "demo-pkg", "0.9.0")
        config = _config(install_root, fallback_paths=[str(app)])

        async def _run():
            async with Watcher(
                "demo-pkg", ["latest"], config, registry=self._broken_registry(fake_npm)
            ) as w:
                return await w.get(), await w.resolve_path("index.js")

        details, entry = asyncio.run(_run())
        assert details.version == "0.9.0"
        assert details.module_path == module_dir
        assert entry == os.path.join(module_dir, "index.js")

    def test_disabled_fallback_raises_original(self, fake_npm, install_root, tmp_path, module_writer):
        app = tmp_path / "app"
        module_writer(str(app / "node_modules"), "demo-pkg", "0.9.0")
        config = _config(install_root, fallback=False, fallback_paths=[str(app)])

        async def _run():
            async with Watcher(
                "demo-pkg", ["latest"], config, registry=self._broken_registry(fake_npm)
            ) as w:
                return await w.get()

        with pytest.raises(FetchError):
            asyncio.run(_run())

    def test_no_local_install_raises_original(self, fake_npm, install_root, tmp_path):
        config = _config(install_root, fallback_paths=[str(tmp_path / "empty")])

        async def _run():
            async with Watcher(
                "demo-pkg", ["latest"], config, registry=self._broken_registry(fake_npm)
            ) as w:
                return await w.get()

        with pytest.raises(FetchError):
            asyncio.run(_run())

    def test_failed_fallback_reports_both_errors(self, fake_npm, install_root, tmp_path, module_writer):
        app = tmp_path / "app"
        module_writer(str(app / "node_modules"), "demo-pkg", "0.9.0", {"missing-dep": "1.0.0"})
        config = _config(install_root, fallback_paths=[str(app)])

        async def _run():
            async with Watcher(
                "demo-pkg", ["latest"], config, registry=self._broken_registry(fake_npm)
            ) as w:
                return await w.get()

        with pytest.raises(FallbackResolutionError) as exc_info:
            asyncio.run(_run())
        assert isinstance(exc_info.value.error, FetchError)
        assert "Fallback failed" in str(exc_info.value)
        assert "missing-dep" in str(exc_info.value)

    def test_read_error_falls_back(self, fake_npm, install_root, tmp_path, module_writer):
        """A file missing from the live install is read from the local copy."""
        fake_npm.publish("demo-pkg", "1.0.0", tag="latest")
        app = tmp_path / "app"
        module_dir = module_writer(str(app / "node_modules"), "demo-pkg", "0.9.0")
        with open(os.path.join(module_dir, "only-local.txt"), "w", encoding="utf-8") as f:
            f.write("local")
        config = _config(install_root, fallback_paths=[str(app)])

        async def _run():
            async with Watcher("demo-pkg", ["latest"], config, registry=fake_npm.client()) as w:
                return await w.read("only-local.txt")

        assert asyncio.run(_run()) == b"local"

    def test_local_install_lookup_runs_off_the_loop(
        self, fake_npm, install_root, tmp_path, monkeypatch
    ):
        seen = []

        def fake_find_module(name, paths=None, exclude_root=None):
            seen.append(threading.current_thread() is threading.main_thread())

        monkeypatch.setattr(watcher_mod, "find_module", fake_find_module)
        config = _config(install_root, fallback_paths=[str(tmp_path / "empty")])

        async def _run():
            async with Watcher(
                "demo-pkg", ["latest"], config, registry=self._broken_registry(fake_npm)
            ) as w:
                return await w.get()

        with pytest.raises(FetchError):
            asyncio.run(_run())
        assert seen == [False]


class TestWatch:
    """Tests for the watch() entry point."""

    def test_watch_applies_options_and_starts(self, fake_npm, install_root):
        fake_npm.publish("demo-pkg", "1.0.0", tag="latest")

        async def _run():
            watcher = watch(
                "demo-pkg",
                registry=fake_npm.client(),
                install_root=install_root,
                period=120,
            )
            try:
                details = await watcher.get()
                return watcher.config.period, watcher.tags, details.version
            finally:
                await watcher.close()

        assert asyncio.run(_run()) == (120, ["latest"], "1.0.0")

    def test_watch_rejects_unknown_options(self, install_root):
        async def _run():
            watch("demo-pkg", install_root=install_root, colour="blue")

        with pytest.raises(TypeError, match="colour"):
            asyncio.run(_run())

    def test_close_stops_pollers_and_cleanup(self, fake_npm, install_root):
        fake_npm.publish("demo-pkg", "1.0.0", tag="latest")
        config = _config(install_root)

        async def _run():
            w = Watcher("demo-pkg", ["latest"], config, registry=fake_npm.client()).start()
            await w.get()
            await w.close()
            return w.poller().poller.stopped, w.cleanup.running

        assert asyncio.run(_run()) == (True, False)

    def test_watchers_on_one_root_share_cleanup(self, fake_npm, install_root):
        """A sweep started by one watcher keeps every other watcher's installs."""
        fake_npm.publish("pkg-a", "1.0.0", tag="latest")
        fake_npm.publish("pkg-b", "1.0.0", tag="latest")
        config = _config(install_root)
        first = Watcher("pkg-a", ["latest"], config, registry=fake_npm.client())
        second = Watcher("pkg-b", ["latest"], config, registry=fake_npm.client())

        async def _run():
            details = await first.poller().poll_once()
            prefix = os.path.dirname(details.node_modules_path)
            stamp = time.time() - 2 * config.clean_threshold
            os.utime(prefix, (stamp, stamp))
            removed = await second.cleanup.sweep()
            return prefix, removed

        prefix, removed = asyncio.run(_run())
        assert first.cleanup is second.cleanup
        assert removed == []
        assert os.path.isdir(prefix)

    def test_shared_cleanup_runs_until_last_watcher_closes(self, fake_npm, install_root):
        fake_npm.publish("pkg-a", "1.0.0", tag="latest")
        fake_npm.publish("pkg-b", "1.0.0", tag="latest")
        config = _config(install_root)

        async def _run():
            first = Watcher("pkg-a", ["latest"], config, registry=fake_npm.client()).start()
            second = Watcher("pkg-b", ["latest"], config, registry=fake_npm.client()).start()
            await first.get()
            await second.get()
            await first.close()
            after_first = second.cleanup.running
            await second.close()
            return after_first, second.cleanup.running

        assert asyncio.run(_run()) == (True, False)

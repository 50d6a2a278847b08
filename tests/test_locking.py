"""Tests for the install directory lock."""

import asyncio
import os
import threading
import time

import pytest

from distwatch.errors import LockTimeoutError
from distwatch.locking import FileSystemLock


class TestFileSystemLock:
    """Tests for FileSystemLock."""

    def test_creates_directory_and_marker(self, tmp_path):
        """Acquiring creates the directory and the lock file inside it."""
        target = tmp_path / "node_modules" / "demo-pkg"
        lock = FileSystemLock(str(target), timeout=1)
        with lock:
            assert os.path.isfile(lock.lock_path)
            assert lock.is_locked
        assert not os.path.exists(lock.lock_path)
        assert target.is_dir()

    def test_second_holder_times_out(self, tmp_path):
        first = FileSystemLock(str(tmp_path), timeout=1)
        second = FileSystemLock(str(tmp_path), timeout=0.2, poll_interval=0.01)
        with first:
            started = time.monotonic()
            with pytest.raises(LockTimeoutError) as exc_info:
                second.acquire()
            assert time.monotonic() - started < 2
        assert exc_info.value.path == str(tmp_path)

    def test_waiter_gets_lock_after_release(self, tmp_path):
        """A waiting holder proceeds as soon as the first one releases."""
        first = FileSystemLock(str(tmp_path), timeout=1)
        second = FileSystemLock(str(tmp_path), timeout=5, poll_interval=0.01)
        first.acquire()
        timer = threading.Timer(0.1, first.release)
        timer.start()
        try:
            second.acquire()
            assert second.is_locked
        finally:
            timer.join()
            second.release()

    def test_stale_marker_is_reclaimed(self, tmp_path, caplog):
        """A marker left by a crashed holder is removed after stale_after."""
        lock_path = tmp_path / ".distwatch.lock"
        lock_path.write_text("")
        old = time.time() - 3600
        os.utime(lock_path, (old, old))

        lock = FileSystemLock(str(tmp_path), timeout=2, stale_after=60, poll_interval=0.01)
        with lock:
            assert lock.is_locked
        assert "Reclaiming stale lock" in caplog.text

    def test_fresh_marker_is_respected(self, tmp_path):
        (tmp_path / ".distwatch.lock").write_text("")
        lock = FileSystemLock(str(tmp_path), timeout=0.2, stale_after=60, poll_interval=0.01)
        with pytest.raises(LockTimeoutError):
            lock.acquire()

    def test_async_context_manager(self, tmp_path):
        lock = FileSystemLock(str(tmp_path / "pkg"), timeout=1)

        async def _run():
            async with lock:
                return lock.is_locked

        assert asyncio.run(_run()) is True
        assert not lock.is_locked

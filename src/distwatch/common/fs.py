"""Filesystem helpers for install directories.

Blocking helpers are plain functions; the async wrappers push them onto a
worker thread so the event loop keeps serving other pollers.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]+")


def sanitize_string(value: str) -> str:
    """Collapse anything outside ``[a-zA-Z0-9]`` to underscores."""
    return _UNSAFE_CHARS.sub("_", value)


def clean_name(name: str) -> str:
    """Directory-safe package name (``@scope/pkg`` -> ``@scope-pkg``)."""
    return name.replace("/", "-")


def ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def rmrf(path: str) -> None:
    """Remove a file or directory tree; a missing path is not an error."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def clear_directory(path: str, keep: Iterable[str] = ()) -> None:
    """Remove every entry of ``path`` except the names in ``keep``."""
    preserved = set(keep)
    if not os.path.isdir(path):
        return
    for entry in os.listdir(path):
        if entry in preserved:
            continue
        rmrf(os.path.join(path, entry))


def make_scratch_dir(label: str) -> str:
    return tempfile.mkdtemp(prefix=f"distwatch_{sanitize_string(label)}_")


async def async_rmrf(path: str) -> None:
    await asyncio.to_thread(rmrf, path)


async def try_rmrf(path: str, log: Optional[logging.Logger] = None) -> bool:
    """Best-effort recursive delete. Failures are logged, never raised."""
    try:
        await async_rmrf(path)
        return True
    except OSError as exc:
        (log or logger).warning("Failed to remove %s: %s", path, exc)
        return False

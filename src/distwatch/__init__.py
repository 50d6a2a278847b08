"""distwatch: keep an npm dist-tag installed on local disk.

Typical use from an asyncio application::

    from distwatch import watch

    watcher = watch("my-package", ["latest"], period=60)
    module_path = await watcher.resolve_path()
"""

from .cache import PersistentCache
from .config import WatchConfig
from .constants import DistTag, Stability
from .errors import (
    ChannelNotFoundError,
    DistWatchError,
    FallbackResolutionError,
    FetchError,
    InstallError,
    InvalidTagError,
    InvalidVersionError,
    LockTimeoutError,
    NoEligibleVersionError,
    NoStableFallbackError,
    PollerStoppedError,
)
from .fallback import get_fallback
from .models import DependencyDetails, ModuleDetails
from .versioning import resolve_version
from .watcher import Watcher, watch

__all__ = [
    "ChannelNotFoundError",
    "DependencyDetails",
    "DistTag",
    "DistWatchError",
    "FallbackResolutionError",
    "FetchError",
    "InstallError",
    "InvalidTagError",
    "InvalidVersionError",
    "LockTimeoutError",
    "ModuleDetails",
    "NoEligibleVersionError",
    "NoStableFallbackError",
    "PersistentCache",
    "PollerStoppedError",
    "Stability",
    "WatchConfig",
    "Watcher",
    "get_fallback",
    "resolve_version",
    "watch",
]

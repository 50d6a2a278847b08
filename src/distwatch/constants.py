"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the command line.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    RESOLVE_ERROR = 2


class DistTag(Enum):
    """Well-known dist-tags.

    Args:
        Enum (string): Channel names published by npm registries.
    """

    LATEST = "latest"
    NEXT = "next"


class Stability(Enum):
    """Runtime stability marking for a version.

    Args:
        Enum (string): Stable versions may be installed, unstable ones are skipped.
    """

    STABLE = "stable"
    UNSTABLE = "unstable"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    NPM_REGISTRY = "https://registry.npmjs.org"
    CDN_REGISTRY_INFO_FILENAME = "info.json"
    CDN_REGISTRY_INFO_CACHEBUST_URL_TIME = 60  # seconds per cache-bust window

    LIVE_MODULES_DIR_NAME = "__live_modules__"
    NODE_MODULES = "node_modules"
    PACKAGE = "package"
    PACKAGE_JSON = "package.json"
    LOCK = ".distwatch.lock"
    INFO_CACHE_KEY_PREFIX = "distwatch_npm_info"

    POLL_INTERVAL = 300  # seconds between poll attempts
    INFO_MEMORY_CACHE_LIFETIME = 60  # seconds registry metadata stays in memory
    CLEAN_INTERVAL = 60 * 60  # seconds between cleanup sweeps
    CLEAN_THRESHOLD = 24 * 60 * 60  # seconds before an unused install is removed
    LOCK_TIMEOUT = 120  # seconds to wait for an install lock
    LOCK_STALE_AFTER = 10 * 60  # seconds before a held lock is treated as abandoned
    LOCK_POLL_INTERVAL = 0.05
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    READ_CACHE_SIZE = 20
    DOWNLOAD_CHUNK_SIZE = 64 * 1024

    USER_AGENT = "distwatch/1.0"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_PREFIX = "DISTWATCH_"
    VERSION_PATTERN = r"^\d+\.\d+\.\d+$"

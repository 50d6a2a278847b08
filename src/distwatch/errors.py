"""Exception hierarchy for version resolution, fetching and installation."""

from __future__ import annotations

from typing import Optional


class DistWatchError(Exception):
    """Base class for all distwatch errors."""


class ChannelNotFoundError(DistWatchError):
    """The requested dist-tag is not published for the package."""

    def __init__(self, package: str, tag: str, dist_tags: Optional[dict] = None):
        self.package = package
        self.tag = tag
        self.dist_tags = dict(dist_tags or {})
        super().__init__(f"No {tag} tag found for {package} - {self.dist_tags}")


class NoEligibleVersionError(DistWatchError):
    """No version satisfies the major-line, ahead-of-tag and stability rules."""

    def __init__(self, package: str, candidates=(), message: Optional[str] = None):
        self.package = package
        self.candidates = list(candidates)
        super().__init__(
            message
            or f"No eligible versions found for module {package} -- from [ {', '.join(self.candidates)} ]"
        )


class NoStableFallbackError(NoEligibleVersionError):
    """The dist-tag version is unstable and nothing earlier can replace it."""

    def __init__(self, package: str, version: str, candidates=()):
        self.version = version
        super().__init__(
            package,
            candidates,
            f"{package}@{version} is marked unstable and no previous stable version to fall back on",
        )


class FetchError(DistWatchError):
    """Registry or CDN request failed or returned a non-2xx status."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        self.url = url
        self.status = status
        super().__init__(message)


class InvalidVersionError(DistWatchError, ValueError):
    """A version string is not an exact MAJOR.MINOR.PATCH version."""

    def __init__(self, package: str, version: str, context: str = "install"):
        self.package = package
        self.version = version
        super().__init__(f"Invalid version for {context}: {package}@{version}")


class InstallError(DistWatchError):
    """Download, extraction or move of a package failed."""

    def __init__(
        self,
        message: str,
        package: Optional[str] = None,
        version: Optional[str] = None,
        registry: Optional[str] = None,
    ):
        self.package = package
        self.version = version
        self.registry = registry
        super().__init__(message)


class LockTimeoutError(DistWatchError):
    """An install lock could not be acquired in time."""

    def __init__(self, path: str, timeout: float):
        self.path = path
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on {path}")


class InvalidTagError(DistWatchError, ValueError):
    """A tag was requested that the watcher is not polling."""


class PollerStoppedError(DistWatchError):
    """A poller was stopped before it made a single attempt."""


class FallbackResolutionError(DistWatchError):
    """Live polling failed and no usable local installation was found."""

    def __init__(
        self,
        message: str,
        error: Optional[BaseException] = None,
        fallback_error: Optional[BaseException] = None,
    ):
        self.error = error
        self.fallback_error = fallback_error
        if error is not None and fallback_error is not None:
            message = f"{error}\n\nFallback failed:\n\n{fallback_error}"
        super().__init__(message)

"""Dist-tag resolution with runtime stability overrides.

An operator can mark a freshly published version as unstable while the
process runs; every later poll then falls back to the best earlier version on
the same major line without waiting for the registry tag to move.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping

import semantic_version

from .constants import Constants, Stability
from .errors import ChannelNotFoundError, NoEligibleVersionError, NoStableFallbackError
from .models import PackageMetadata

_VERSION_RE = re.compile(Constants.VERSION_PATTERN)


@dataclass(frozen=True)
class VersionResolution:
    """Outcome of resolving a dist-tag."""
    version: str
    previous_version: str
    dist_tag_version: str


def is_valid_dependency_version(version: str) -> bool:
    """Only plain ``MAJOR.MINOR.PATCH`` versions can be installed."""
    return bool(version) and bool(_VERSION_RE.match(version))


def major_version(version: str) -> int:
    return int(version.split(".", 1)[0])


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 as ``left`` is lower, equal or higher than ``right``."""
    lv, rv = semantic_version.Version(left), semantic_version.Version(right)
    return (lv > rv) - (lv < rv)


def sort_versions(versions, reverse: bool = True) -> List[str]:
    """Filter to valid versions and sort them, highest first by default."""
    valid = [v for v in versions if is_valid_dependency_version(v)]
    return sorted(valid, key=semantic_version.Version, reverse=reverse)


def resolve_version(
    metadata: PackageMetadata,
    tag: str,
    stability: Mapping[str, Stability],
) -> VersionResolution:
    """Resolve ``tag`` to the version that should be installed.

    Eligible versions share the dist-tag version's major line, are not ahead
    of it and are not marked unstable. When the dist-tag version itself is
    unstable the result is the previous version: the highest stable eligible
    version below the tag, or the highest eligible version if none is lower.

    Raises:
        ChannelNotFoundError: ``tag`` is not in the package's dist-tags.
        NoEligibleVersionError: nothing on the major line can be installed.
        NoStableFallbackError: the tag's version is unstable with no fallback.
    """
    dist_tag_version = metadata.dist_tags.get(tag)
    if not dist_tag_version:
        raise ChannelNotFoundError(metadata.name, tag, metadata.dist_tags)

    module_versions = sort_versions(metadata.versions.keys())

    def is_unstable(version: str) -> bool:
        return stability.get(version, Stability.STABLE) == Stability.UNSTABLE

    tag_unstable = is_unstable(dist_tag_version)
    if not is_valid_dependency_version(dist_tag_version):
        raise NoEligibleVersionError(metadata.name, module_versions)
    tag_major = major_version(dist_tag_version)

    eligible_versions = [
        ver
        for ver in module_versions
        if major_version(ver) == tag_major
        and compare_versions(ver, dist_tag_version) <= 0
        and not is_unstable(ver)
    ]

    if not eligible_versions:
        if tag_unstable:
            raise NoStableFallbackError(metadata.name, dist_tag_version, module_versions)
        raise NoEligibleVersionError(metadata.name, module_versions)

    stable_versions = [ver for ver in eligible_versions if not is_unstable(ver)]
    if not stable_versions:
        raise NoEligibleVersionError(metadata.name, module_versions)

    previous_versions = [
        ver for ver in stable_versions if compare_versions(dist_tag_version, ver) > 0
    ]
    previous_version = previous_versions[0] if previous_versions else eligible_versions[0]

    version = dist_tag_version
    if tag_unstable:
        if not previous_version:
            raise NoStableFallbackError(metadata.name, dist_tag_version, module_versions)
        version = previous_version

    return VersionResolution(
        version=version,
        previous_version=previous_version,
        dist_tag_version=dist_tag_version,
    )

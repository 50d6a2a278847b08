"""Data models for registry metadata and installed modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class VersionEntry:
    """Install-relevant subset of one published version."""
    dependencies: Mapping[str, str]
    tarball: str


@dataclass(frozen=True)
class PackageMetadata:
    """Normalized package document: versions and dist-tags only."""
    name: str
    versions: Mapping[str, VersionEntry]
    dist_tags: Mapping[str, str]

    @classmethod
    def from_registry(cls, document: Mapping[str, Any]) -> "PackageMetadata":
        """Build metadata from a raw registry (or CDN) JSON document.

        Every field other than dependencies and the tarball URL is dropped.
        """
        versions: Dict[str, VersionEntry] = {}
        for version, data in (document.get("versions") or {}).items():
            data = data or {}
            dist = data.get("dist") or {}
            versions[version] = VersionEntry(
                dependencies=dict(data.get("dependencies") or {}),
                tarball=dist.get("tarball") or "",
            )
        return cls(
            name=document.get("name") or "",
            versions=versions,
            dist_tags=dict(document.get("dist-tags") or {}),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PackageMetadata":
        """Inverse of ``to_dict``; the dict uses the registry's own shape."""
        return cls.from_registry(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "versions": {
                version: {
                    "dependencies": dict(entry.dependencies),
                    "dist": {"tarball": entry.tarball},
                }
                for version, entry in self.versions.items()
            },
            "dist-tags": dict(self.dist_tags),
        }


@dataclass(frozen=True)
class PackageInfo:
    """Metadata plus where it was served from."""
    metadata: PackageMetadata
    fetched_from_cdn: bool = False


@dataclass(frozen=True)
class DependencyDetails:
    version: str
    path: str


@dataclass(frozen=True)
class ModuleDetails:
    """A fully installed module as handed to the hosting application."""
    node_modules_path: str
    module_path: str
    version: str
    previous_version: str
    dependencies: Mapping[str, DependencyDetails] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeModulesPath": self.node_modules_path,
            "modulePath": self.module_path,
            "version": self.version,
            "previousVersion": self.previous_version,
            "dependencies": {
                name: {"version": dep.version, "path": dep.path}
                for name, dep in self.dependencies.items()
            },
        }

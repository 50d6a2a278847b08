"""Locate a pre-installed copy of a package outside the managed install root.

Resolution follows the node_modules lookup rules: starting from a directory,
check ``<dir>/node_modules/<name>`` and walk up towards the filesystem root.
"""

from __future__ import annotations

import json
import os
from typing import Dict, Iterable, Optional, Sequence, Tuple

from .constants import Constants
from .errors import FallbackResolutionError
from .models import DependencyDetails, ModuleDetails


def _is_within(path: str, root: Optional[str]) -> bool:
    if not root:
        return False
    path, root = os.path.realpath(path), os.path.realpath(root)
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _ancestors(start: str) -> Iterable[str]:
    current = os.path.abspath(start)
    while True:
        yield current
        parent = os.path.dirname(current)
        if parent == current:
            return
        current = parent


def find_module(
    name: str,
    paths: Optional[Sequence[str]] = None,
    exclude_root: Optional[str] = None,
) -> Optional[Tuple[str, str]]:
    """Return ``(node_modules_dir, module_dir)`` for ``name`` or None.

    Candidates without a ``package.json`` or inside ``exclude_root`` are
    skipped.
    """
    for start in paths or [os.getcwd()]:
        for directory in _ancestors(start):
            node_modules = os.path.join(directory, Constants.NODE_MODULES)
            candidate = os.path.join(node_modules, name)
            if not os.path.isfile(os.path.join(candidate, Constants.PACKAGE_JSON)):
                continue
            if _is_within(candidate, exclude_root):
                continue
            return node_modules, candidate
    return None


def resolve_module_directory(name: str, paths=None, exclude_root=None) -> Optional[str]:
    found = find_module(name, paths, exclude_root)
    return found[1] if found else None


def _read_manifest(module_path: str) -> Dict:
    with open(os.path.join(module_path, Constants.PACKAGE_JSON), "r", encoding="utf-8") as f:
        return json.load(f)


def get_fallback(
    name: str,
    paths: Optional[Sequence[str]] = None,
    exclude_root: Optional[str] = None,
) -> ModuleDetails:
    """Build ``ModuleDetails`` from a local installation's own manifest.

    Raises:
        FallbackResolutionError: the module, its manifest or one of its
            dependencies cannot be found or read.
    """
    found = find_module(name, paths, exclude_root)
    if found is None:
        raise FallbackResolutionError(f"Can not find module path for fallback for {name}")
    node_modules_path, module_path = found

    try:
        pkg = _read_manifest(module_path)
    except (OSError, ValueError) as exc:
        raise FallbackResolutionError(
            f"Can not read manifest for fallback for {name}: {exc}"
        ) from exc

    version = pkg.get("version") or ""
    dependencies: Dict[str, DependencyDetails] = {}
    for dependency_name in (pkg.get("dependencies") or {}):
        dependency_path = resolve_module_directory(dependency_name, [module_path])
        if not dependency_path:
            raise FallbackResolutionError(
                f"Can not resolve dependency for fallback: {dependency_name} / {module_path}"
            )
        try:
            dependency_pkg = _read_manifest(dependency_path)
        except (OSError, ValueError) as exc:
            raise FallbackResolutionError(
                f"Can not read manifest of {dependency_name} for fallback: {exc}"
            ) from exc
        dependencies[dependency_name] = DependencyDetails(
            version=dependency_pkg.get("version") or "",
            path=dependency_path,
        )

    return ModuleDetails(
        node_modules_path=node_modules_path,
        module_path=module_path,
        version=version,
        previous_version=version,
        dependencies=dependencies,
    )

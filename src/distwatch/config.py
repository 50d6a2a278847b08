"""Watcher configuration from defaults, environment, config files and CLI args.

Precedence, lowest to highest: ``Constants`` defaults, config file,
``DISTWATCH_*`` environment variables, explicit overrides / CLI arguments.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .constants import Constants, DistTag

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _default_install_root() -> str:
    return os.path.join(os.path.expanduser("~"), Constants.LIVE_MODULES_DIR_NAME)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class WatchConfig:
    """Configuration for a watcher and the pollers it creates."""

    registry: str = Constants.NPM_REGISTRY
    cdn_registry: Optional[str] = None
    period: float = Constants.POLL_INTERVAL
    dependencies: bool = False
    child_modules: Optional[List[str]] = None
    fallback: bool = True
    fallback_paths: Optional[List[str]] = None
    default_tag: str = DistTag.LATEST.value
    install_root: str = field(default_factory=_default_install_root)
    clean_interval: float = Constants.CLEAN_INTERVAL
    clean_threshold: float = Constants.CLEAN_THRESHOLD
    info_cache_lifetime: float = Constants.INFO_MEMORY_CACHE_LIFETIME
    lock_timeout: float = Constants.LOCK_TIMEOUT
    lock_stale_after: float = Constants.LOCK_STALE_AFTER
    request_timeout: float = Constants.REQUEST_TIMEOUT
    read_cache_size: int = Constants.READ_CACHE_SIZE

    # Environment variable suffix -> (field, parser)
    ENV_FIELDS = {
        "REGISTRY": ("registry", str),
        "CDN_REGISTRY": ("cdn_registry", str),
        "PERIOD": ("period", float),
        "DEPENDENCIES": ("dependencies", _parse_bool),
        "CHILD_MODULES": ("child_modules", _parse_list),
        "FALLBACK": ("fallback", _parse_bool),
        "FALLBACK_PATHS": ("fallback_paths", lambda v: v.split(os.pathsep)),
        "DEFAULT_TAG": ("default_tag", str),
        "INSTALL_ROOT": ("install_root", str),
        "CLEAN_INTERVAL": ("clean_interval", float),
        "CLEAN_THRESHOLD": ("clean_threshold", float),
        "LOCK_TIMEOUT": ("lock_timeout", float),
        "REQUEST_TIMEOUT": ("request_timeout", float),
    }

    def __post_init__(self) -> None:
        if self.period <= 0:
            raise ValueError("period must be positive")
        if self.read_cache_size < 1:
            raise ValueError("read_cache_size must be at least 1")
        self.registry = self.registry.rstrip("/")
        if self.cdn_registry:
            self.cdn_registry = self.cdn_registry.rstrip("/")

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in dataclasses.fields(cls)]

    def replace(self, **overrides: Any) -> "WatchConfig":
        """Return a copy with ``overrides`` applied; None values are ignored.

        Raises:
            TypeError: an override names an unknown option.
        """
        unknown = set(overrides) - set(self.field_names())
        if unknown:
            raise TypeError(f"Unknown watch options: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WatchConfig":
        """Build from a plain mapping, accepting an optional ``distwatch`` section."""
        section = data.get("distwatch", data) if isinstance(data, Mapping) else {}
        known = set(cls.field_names())
        values = {}
        for key, value in (section or {}).items():
            normalized = str(key).replace("-", "_")
            if normalized not in known:
                logger.warning("Ignoring unknown config option: %s", key)
                continue
            values[normalized] = value
        return cls(**values)

    @classmethod
    def from_file(cls, path: str) -> "WatchConfig":
        """Load a YAML (``.yml``/``.yaml``) or JSON config file."""
        with open(path, "r", encoding="utf-8") as f:
            if path.endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_mapping(data)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "WatchConfig":
        """Apply ``DISTWATCH_*`` environment overrides on top of this config."""
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for suffix, (name, parser) in self.ENV_FIELDS.items():
            raw = environ.get(f"{Constants.ENV_PREFIX}{suffix}")
            if raw is None or raw == "":
                continue
            overrides[name] = parser(raw)
        return self.replace(**overrides)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WatchConfig":
        return cls().with_env(environ)

    @classmethod
    def from_args(cls, args: Any) -> "WatchConfig":
        """Create config from CLI arguments.

        Args:
            args: Parsed CLI arguments namespace.

        Returns:
            WatchConfig instance.
        """
        config_path = getattr(args, "CONFIG", None)
        config = cls.from_file(config_path) if config_path else cls()
        config = config.with_env()

        overrides: Dict[str, Any] = {
            "registry": getattr(args, "REGISTRY", None),
            "cdn_registry": getattr(args, "CDN_REGISTRY", None),
            "period": getattr(args, "PERIOD", None),
            "install_root": getattr(args, "INSTALL_ROOT", None),
            "child_modules": getattr(args, "CHILD_MODULES", None) or None,
        }
        if getattr(args, "DEPENDENCIES", False):
            overrides["dependencies"] = True
        if getattr(args, "NO_FALLBACK", False):
            overrides["fallback"] = False
        return config.replace(**overrides)

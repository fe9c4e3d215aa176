"""
Quest Engine - Configuration Loader

Configuration is layered, lowest to highest precedence:

  base      config/engine.yaml
  overlay   config/{env}.yaml, picked by QE_ENV (default "dev")
  env       QE_* variables, plus QE_CONFIG__section__key for anything unmapped

Sections are merged key by key; a list or scalar in a higher layer
replaces the lower one outright. A file that does not parse to a mapping
is a ValidationError, never silently ignored.

Usage:
    from engine.config_loader import load_config, get_config

    config = load_config(env="test", project_root=".")
    config.get("monitor.poll_interval_ms", 500)
"""

from __future__ import annotations

import copy
import logging
import os
import threading
import yaml
from pathlib import Path
from typing import Any

from engine.errors import ValidationError

logger = logging.getLogger("quest_engine.config")

DEFAULT_BASE_FILES = ["config/engine.yaml"]
KNOWN_SECTIONS = frozenset({"orchestrator", "monitor", "acquisition", "audit", "logging"})
META_KEY = "_config_meta"


def _read_layer(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"Config file {path} is not valid YAML: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(
            f"Config file {path} must hold a mapping, got {type(data).__name__}")
    return data


class ConfigLoader:
    """Merged view over every config layer for one environment."""

    def __init__(
        self,
        env: str = "dev",
        project_root: str = ".",
        base_files: list[str] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = base_files or list(DEFAULT_BASE_FILES)
        self._merged: dict[str, Any] | None = None
        self._sources: list[str] = []

    def _layers(self):
        """Yield (label, data) for each layer that is present, in merge order."""
        for name in self.base_files:
            path = self.project_root / name
            if path.is_file():
                yield f"base:{name}", _read_layer(path)
        overlay = f"config/{self.env}.yaml"
        if (self.project_root / overlay).is_file():
            yield f"overlay:{overlay}", _read_layer(self.project_root / overlay)
        overrides = _load_env_overrides()
        if overrides:
            yield f"env_vars({len(overrides)} keys)", overrides

    def load(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        sources: list[str] = []
        for label, data in self._layers():
            merged = _deep_merge(merged, data)
            sources.append(label)

        unknown = sorted(k for k in merged if k not in KNOWN_SECTIONS)
        if unknown:
            logger.warning("Ignoring unknown config sections: %s", unknown)

        merged[META_KEY] = {
            "env": self.env,
            "sources": sources,
            "project_root": str(self.project_root),
        }
        self._merged, self._sources = merged, sources
        logger.info("Config ready (env=%s) from %s", self.env, ", ".join(sources) or "defaults")
        return merged

    def _data(self) -> dict[str, Any]:
        if self._merged is None:
            self.load()
        return self._merged

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Look up "section.key"; any missing segment yields the default."""
        node: Any = self._data()
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def section(self, name: str) -> dict[str, Any]:
        value = self._data().get(name)
        return copy.deepcopy(value) if isinstance(value, dict) else {}

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._data())

    @property
    def sources(self) -> list[str]:
        self._data()
        return list(self._sources)

    def reload(self) -> dict[str, Any]:
        self._merged = None
        return self.load()


# ── Merging ──────────────────────────────────────────────────────────

def _deep_merge(base: dict, overlay: dict) -> dict:
    """Return a new dict with overlay merged over base; inputs are untouched."""
    merged = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        below = merged.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(below, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ── Environment overrides ────────────────────────────────────────────

ENV_PREFIX = "QE_"
GENERIC_PREFIX = "QE_CONFIG__"

_ENV_MAPPINGS: dict[str, str] = {
    "QE_MAX_RETRIES": "orchestrator.max_retries",
    "QE_MONITOR_INTERVAL_MS": "monitor.poll_interval_ms",
    "QE_ACQUIRE_MAX_ATTEMPTS": "acquisition.max_attempts",
    "QE_ACQUIRE_ORDER_TIMEOUT_S": "acquisition.order_timeout_s",
    "QE_ACQUIRE_TOTAL_TIMEOUT_S": "acquisition.total_timeout_s",
    "QE_ACQUIRE_FALLBACK_PRICE": "acquisition.fallback_price",
    "QE_AUDIT_ENABLED": "audit.enabled",
    "QE_AUDIT_DIR": "audit.directory",
    "QE_LOG_LEVEL": "logging.level",
    "QE_LOG_FORMAT": "logging.format",
}


def _nest(dotted: str, value: Any) -> dict[str, Any]:
    """Expand a dotted path into nested single-key dicts."""
    nested: Any = value
    for part in reversed(dotted.split(".")):
        nested = {part: nested}
    return nested


def _load_env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, raw in sorted(os.environ.items()):
        if not name.startswith(ENV_PREFIX):
            continue
        if name in _ENV_MAPPINGS:
            path = _ENV_MAPPINGS[name]
        elif name.startswith(GENERIC_PREFIX) and len(name) > len(GENERIC_PREFIX):
            path = name[len(GENERIC_PREFIX):].lower().replace("__", ".")
        else:
            continue
        overrides = _deep_merge(overrides, _nest(path, _auto_convert(raw)))
    return overrides


_TRUE = {"true", "yes", "on"}
_FALSE = {"false", "no", "off"}


def _auto_convert(value: str) -> Any:
    """Environment strings to bool/int/float where they parse; "1"/"0" stay ints."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


# ── Process-wide access ──────────────────────────────────────────────

_cached: ConfigLoader | None = None
_cache_lock = threading.Lock()


def get_config(env: str | None = None, project_root: str | None = None) -> ConfigLoader:
    """Shared loader, built on first use from the arguments or QE_ENV / QE_PROJECT_ROOT."""
    global _cached
    with _cache_lock:
        if _cached is None:
            _cached = load_config(
                env=env or os.environ.get("QE_ENV", "dev"),
                project_root=project_root or os.environ.get("QE_PROJECT_ROOT", "."),
            )
        return _cached


def load_config(
    env: str = "dev",
    project_root: str = ".",
    base_files: list[str] | None = None,
) -> ConfigLoader:
    """A fresh loader that bypasses the shared cache."""
    loader = ConfigLoader(env=env, project_root=project_root, base_files=base_files)
    loader.load()
    return loader


def reset_config() -> None:
    global _cached
    with _cache_lock:
        _cached = None

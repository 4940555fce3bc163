"""Configuration loader — YAML file + env override."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from taskpulse.core.config.schema import Config

USER_CONFIG = Path("~/.taskpulse/config.yaml")


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Config:
    """
    Load configuration.

    Resolution order for config file:
        1. Explicit ``config_path`` argument
        2. ``TASKPULSE_CONFIG`` env variable
        3. ``./config.yaml`` in cwd
        4. ``~/.taskpulse/config.yaml``

    ``overrides`` (e.g. CLI flags) are merged over the YAML data section by
    section, so ``{"database": {"path": ...}}`` keeps other YAML keys.

    Values priority (handled by pydantic-settings):
        env vars  >  .env file  >  overrides  >  YAML  >  defaults
    """
    data = _load_yaml(_resolve_path(config_path))
    if overrides:
        data = _merge(data, overrides)
    return Config(**data)


def _resolve_path(config_path: str | Path | None = None) -> Path | None:
    """Resolve config file path."""
    if config_path:
        return Path(config_path)

    env = os.environ.get("TASKPULSE_CONFIG")
    if env:
        return Path(env)

    for candidate in (Path("config.yaml"), USER_CONFIG.expanduser()):
        if candidate.exists():
            return candidate
    return None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    """Load YAML file, return empty dict if not found."""
    if not path or not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged

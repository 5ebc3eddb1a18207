"""YAML configuration loader.

Overlays a ``bridge:`` section from a YAML file on top of the values
produced by BridgeConfig.from_env(). Keys mirror the dataclass fields.

Example YAML:
    bridge:
      max_sessions: 8
      session_timeout_seconds: 2700
      session_warning_seconds: 300
      store_path: ~/.threadbridge/sessions.json
      agent_command: claude
      skip_permissions: false
      workspace_mode: prompt
      log_level: DEBUG
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

_PATH_KEYS = {"store_path", "log_file"}


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Coerce a YAML scalar to the type of the existing field value."""
    if value is None:
        return None
    if name in _PATH_KEYS:
        return str(Path(str(value)).expanduser())
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes"}
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def apply_overrides(config: BridgeConfig, section: dict[str, Any]) -> BridgeConfig:
    """Apply a mapping of field overrides to ``config`` in place."""
    known = {f.name for f in fields(BridgeConfig)}
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown bridge config key: %s", key)
            continue
        setattr(config, key, _coerce(key, value, getattr(config, key)))
    return config


def load_yaml_config(path: str | Path, base: BridgeConfig | None = None) -> BridgeConfig:
    """Load a YAML file and return the merged configuration.

    A missing or unparseable file logs a warning and yields the base
    (env-derived) configuration unchanged.
    """
    config = base if base is not None else BridgeConfig.from_env()
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        logger.warning("load_yaml_config: %s not found, using env config", config_path)
        return config
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning(
            "load_yaml_config: YAML parse error in %s: %s", config_path, exc,
        )
        return config

    section = data.get("bridge") if isinstance(data, dict) else None
    if not isinstance(section, dict):
        logger.info("load_yaml_config: no bridge section in %s", config_path)
        return config

    apply_overrides(config, section)
    config.validate()
    logger.info(
        "load_yaml_config: loaded %d key(s) from %s", len(section), config_path,
    )
    return config

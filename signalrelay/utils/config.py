"""
Configuration loading for :class:`signalrelay.RelayConfig`.

Values are layered: dataclass defaults, then an optional YAML file, then
environment variables.  CLI flags are applied on top by the entry points.
"""

from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .. import RelayConfig

LOG = logging.getLogger(__name__)

ENV_STATIC_DIR = "SIGNALRELAY_STATIC_DIR"
ENV_PORT = "PORT"


class ConfigError(ValueError):
    """Raised when a configuration file cannot be interpreted."""


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _coerce(config: RelayConfig, values: Dict[str, Any]) -> None:
    known = {item.name for item in fields(RelayConfig)}
    for key, value in values.items():
        if key not in known:
            LOG.warning("Ignoring unknown configuration key %r", key)
            continue
        if key in {"port", "send_queue_size"}:
            try:
                value = int(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
        elif key == "ice_servers":
            if isinstance(value, str):
                value = [value]
            value = [str(item) for item in (value or [])]
        elif value is not None:
            value = str(value)
        setattr(config, key, value)


def load_config(path: Optional[Union[str, Path]] = None, *, environ: Optional[Dict[str, str]] = None) -> RelayConfig:
    config = RelayConfig()
    if path is not None:
        config_path = Path(path).expanduser()
        if config_path.exists():
            _coerce(config, _read_yaml(config_path))
        else:
            LOG.warning("Configuration file %s not found; using defaults", config_path)

    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    if env.get(ENV_PORT):
        overrides["port"] = env[ENV_PORT]
    if env.get(ENV_STATIC_DIR):
        overrides["static_dir"] = env[ENV_STATIC_DIR]
    _coerce(config, overrides)
    return config

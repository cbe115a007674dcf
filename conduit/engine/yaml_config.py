"""YAML configuration loader.

Loads a single YAML file whose ``engine`` section overrides the
environment-derived defaults of EngineConfig.

Example YAML:
    engine:
      claude_command: /opt/claude/bin/claude
      wire_format: stream-json
      model: claude-sonnet-4-5
      default_permission_mode: acceptEdits
      stop_grace_seconds: 2
      log_level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# Fields that YAML may set, with the coercion applied to raw values.
_FIELD_TYPES: dict[str, Any] = {
    "claude_command": str,
    "wire_format": str,
    "model": lambda v: str(v) if v else None,
    "default_permission_mode": str,
    "stop_grace_seconds": float,
    "stderr_tail_lines": int,
    "read_chunk_size": int,
    "retired_state_limit": int,
    "subscriber_queue_size": int,
    "discovery_timeout_seconds": float,
    "discover_permission_modes": bool,
    "log_level": str,
}

_NULLABLE_FIELDS = {"model"}


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load and parse a YAML config file.

    Values in the ``engine`` mapping replace the matching fields of
    *base* (``EngineConfig.from_env()`` when omitted). Unknown keys are
    logged and ignored.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    if base is None:
        base = EngineConfig.from_env()

    engine_raw = raw.get("engine") or {}
    if not isinstance(engine_raw, dict):
        raise ValueError(f"{path}: 'engine' must be a mapping")

    overrides: dict[str, Any] = {}
    for key, value in engine_raw.items():
        coerce = _FIELD_TYPES.get(key)
        if coerce is None:
            logger.warning(
                "load_yaml_config: ignoring unknown engine key '%s' in %s",
                key, path.name,
            )
            continue
        if value is None:
            if key in _NULLABLE_FIELDS:
                overrides[key] = None
            else:
                logger.warning(
                    "load_yaml_config: engine key '%s' is empty in %s; keeping %r",
                    key, path.name, getattr(base, key),
                )
            continue
        try:
            overrides[key] = coerce(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"{path}: invalid value for engine.{key}: {value!r}"
            ) from exc

    config = dataclasses.replace(base, **overrides)
    config.validate()
    logger.info(
        "Parsed YAML config %s: %d engine override(s)",
        path.name, len(overrides),
    )
    return config

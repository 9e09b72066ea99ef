"""YAML configuration loader.

Loads an optional YAML file layered on top of the env-derived
EngineConfig. Keys map one-to-one onto EngineConfig fields; unknown keys
are logged and ignored.

Example YAML:
    engine:
      cli_command: claude
      default_model: opus
      permission_mode: acceptEdits
      extra_args: ["--max-turns", "40"]
      stop_grace_seconds: 3
      data_dir: ~/.visual-agent
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import DEFAULT_DATA_DIR, EngineConfig

logger = logging.getLogger(__name__)

LOCAL_CONFIG_NAME = ".visual-agent.yaml"


def discover_config_path(cwd: Path | None = None) -> Path | None:
    """Return the first existing config file: local first, then global."""
    base = Path(cwd) if cwd is not None else Path.cwd()
    candidates = [
        base / LOCAL_CONFIG_NAME,
        DEFAULT_DATA_DIR / "config.yaml",
    ]
    for candidate in candidates:
        if candidate.is_file():
            logger.info("Auto-discovered config: %s", candidate)
            return candidate
    logger.debug(
        "No config file found (tried %s); using defaults",
        ", ".join(str(c) for c in candidates),
    )
    return None


def _coerce(name: str, value: Any) -> Any:
    if name == "extra_args":
        if isinstance(value, str):
            return shlex.split(value)
        return [str(v) for v in value or []]
    if name == "data_dir":
        return Path(str(value)).expanduser()
    if name == "stop_grace_seconds":
        return float(value)
    if name == "event_queue_size":
        return int(value)
    if name == "verbose":
        return bool(value)
    if name in ("default_model", "permission_mode"):
        return str(value) if value else None
    return str(value)


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load *path* and apply its ``engine`` section over *base*."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    section = raw.get("engine", raw)
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'engine' must be a mapping")

    known = {f.name for f in fields(EngineConfig)}
    overrides: dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown key %r in %s", key, path.name)
            continue
        overrides[key] = _coerce(key, value)

    config = replace(base or EngineConfig(), **overrides)
    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return config

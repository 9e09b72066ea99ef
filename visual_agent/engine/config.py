"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via VA_* env vars or a
YAML file (see yaml_config.py).
"""
from __future__ import annotations

import inspect
import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Listener for one transport channel, called as listener(turn, payload).
# May be a plain function or a coroutine function.
Listener = Callable[..., "Awaitable[None] | None"]

DEFAULT_DATA_DIR = Path.home() / ".visual-agent"


async def deliver(
    listener: Listener | None,
    *args: Any,
    channel: str = "event",
) -> bool:
    """Call *listener* with *args*, absorbing any failure.

    Returns False when the listener raised. A consumer that has gone
    away must never break the reader loop.
    """
    if listener is None:
        return False
    try:
        result = listener(*args)
        if inspect.isawaitable(result):
            await result
        return True
    except Exception:
        logger.debug("Dropped %s delivery to failing listener", channel, exc_info=True)
        return False


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Turn engine configuration."""

    # Agent CLI invocation
    cli_command: str = "claude"
    # Model alias passed via --model when the caller gives none.
    default_model: str | None = "sonnet"
    # Forwarded as --permission-mode when set.
    permission_mode: str | None = None
    extra_args: list[str] = field(default_factory=list)
    # Include --verbose; the CLI requires it for stream-json in print mode.
    verbose: bool = True

    # Seconds between the stop signal and a hard kill.
    stop_grace_seconds: float = 5.0

    # Transport
    event_queue_size: int = 5000

    # Storage for settings.json and sessions.json
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # Logging
    log_level: str = "INFO"

    @property
    def settings_path(self) -> Path:
        return Path(self.data_dir) / "settings.json"

    @property
    def sessions_path(self) -> Path:
        return Path(self.data_dir) / "sessions.json"

    @property
    def log_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from VA_* environment variables."""
        va_vars = {k: v for k, v in os.environ.items() if k.startswith("VA_")}
        if va_vars:
            logger.info(
                "EngineConfig.from_env: VA_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(va_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no VA_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            cli_command=os.getenv("VA_CLI_COMMAND", defaults.cli_command),
            default_model=os.getenv("VA_DEFAULT_MODEL", defaults.default_model or "") or None,
            permission_mode=os.getenv("VA_PERMISSION_MODE") or None,
            extra_args=shlex.split(os.getenv("VA_EXTRA_ARGS", "")),
            verbose=_env_flag("VA_VERBOSE", defaults.verbose),
            stop_grace_seconds=float(os.getenv(
                "VA_STOP_GRACE", str(defaults.stop_grace_seconds)
            )),
            event_queue_size=int(os.getenv(
                "VA_QUEUE_SIZE", str(defaults.event_queue_size)
            )),
            data_dir=Path(os.getenv("VA_DATA_DIR", str(defaults.data_dir))).expanduser(),
            log_level=os.getenv("VA_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "EngineConfig.from_env: cli=%s model=%s data_dir=%s log_level=%s",
            config.cli_command, config.default_model,
            config.data_dir, config.log_level,
        )
        return config

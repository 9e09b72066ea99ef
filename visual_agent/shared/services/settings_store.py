"""Key-value user settings stored in ~/.visual-agent/settings.json.

Holds small UI-level values such as the selected model alias
(``claude-model``) and the last chosen project directory
(``last-project-dir``). Settings are global rather than per-project.

Reads and writes never raise: a missing or corrupt file reads as empty,
and a failed write is logged and dropped.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from visual_agent.engine.config import DEFAULT_DATA_DIR
from visual_agent.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

SETTINGS_PATH = DEFAULT_DATA_DIR / "settings.json"

MODEL_KEY = "claude-model"
LAST_PROJECT_KEY = "last-project-dir"


class SettingsStore:
    """JSON-backed settings with get/set by key."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            if not self._path.exists():
                return {}
            data = read_json(self._path)
        except Exception:
            logger.warning("Failed to read settings from %s; using defaults", self._path)
            return {}
        if not isinstance(data, dict):
            logger.warning("Settings file %s is not an object; ignoring", self._path)
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for *key*, or *default*."""
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> bool:
        """Store *value* under *key*. Returns False when the write failed."""
        data = self._load()
        data[key] = value
        try:
            atomic_write_json(self._path, data)
        except Exception:
            logger.warning("Failed to save setting %r to %s", key, self._path, exc_info=True)
            return False
        logger.debug("Saved setting %r", key)
        return True

    def all(self) -> dict[str, Any]:
        return self._load()

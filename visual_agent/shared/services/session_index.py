"""Session list persisted to ~/.visual-agent/sessions.json.

Only summaries are stored (title, project, counts, cost, timestamps).
Transcripts live in memory and are never written to disk.

Every operation absorbs I/O and decode failures: reads fall back to an
empty list, writes are logged and dropped.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from visual_agent.engine.config import DEFAULT_DATA_DIR
from visual_agent.shared.models.session import SessionSummary
from visual_agent.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

SESSIONS_PATH = DEFAULT_DATA_DIR / "sessions.json"

_UPDATABLE_FIELDS = frozenset({"title", "project_name", "message_count", "total_cost"})


class SessionIndex:
    """Save, load, list and delete SessionSummary records by id."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else SESSIONS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> list[SessionSummary]:
        try:
            if not self._path.exists():
                return []
            raw = read_json(self._path)
        except Exception:
            logger.warning("Failed to read session list %s; treating as empty", self._path)
            return []
        if not isinstance(raw, list):
            logger.warning("Session list %s is not an array; treating as empty", self._path)
            return []
        summaries: list[SessionSummary] = []
        for item in raw:
            try:
                summaries.append(SessionSummary.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed session entry: %r", item)
        return summaries

    def _write_all(self, summaries: list[SessionSummary]) -> bool:
        try:
            atomic_write_json(self._path, [s.to_dict() for s in summaries])
        except Exception:
            logger.warning("Failed to write session list %s", self._path, exc_info=True)
            return False
        return True

    def list(self) -> list[SessionSummary]:
        """All summaries, most recently updated first."""
        return sorted(self._read_all(), key=lambda s: s.updated_at, reverse=True)

    def load(self, session_id: str) -> SessionSummary | None:
        for summary in self._read_all():
            if summary.id == session_id:
                return summary
        return None

    def save(self, summary: SessionSummary) -> bool:
        """Insert or replace the summary with the same id."""
        summaries = [s for s in self._read_all() if s.id != summary.id]
        summaries.append(summary)
        logger.debug("Saving session %s (%s)", summary.id[:8], summary.title)
        return self._write_all(summaries)

    def delete(self, session_id: str) -> bool:
        summaries = self._read_all()
        kept = [s for s in summaries if s.id != session_id]
        if len(kept) == len(summaries):
            return False
        return self._write_all(kept)

    def update_metadata(self, session_id: str, **fields: Any) -> SessionSummary | None:
        """Update selected fields and bump ``updated_at``.

        Unknown field names are ignored. Returns the updated summary, or
        None if no session has that id.
        """
        summaries = self._read_all()
        for summary in summaries:
            if summary.id != session_id:
                continue
            for name, value in fields.items():
                if name in _UPDATABLE_FIELDS:
                    setattr(summary, name, value)
                else:
                    logger.debug("Ignoring unknown session field %r", name)
            summary.updated_at = int(time.time() * 1000)
            self._write_all(summaries)
            return summary
        return None

"""Keyed snapshots of conversation view models.

The cache sits next to the reducer: switching conversations saves the
outgoing live view and restores (or blanks) the incoming one. Snapshots
are only ever removed by evict(), which the controller calls when a
conversation is deleted.
"""

from __future__ import annotations

import logging

from visual_agent.handlers.reducer import SessionReducer
from visual_agent.shared.models.session import SessionSnapshot

logger = logging.getLogger(__name__)


class SessionCache:
    def __init__(self, reducer: SessionReducer) -> None:
        self._reducer = reducer
        self._snapshots: dict[str, SessionSnapshot] = {}
        self._active_key: str | None = None

    @property
    def active_key(self) -> str | None:
        return self._active_key

    def save(self, session_key: str) -> SessionSnapshot:
        """Capture the live view under *session_key*, overwriting any prior one."""
        snapshot = SessionSnapshot.capture(session_key, self._reducer.view)
        self._snapshots[session_key] = snapshot
        return snapshot

    def switch(self, session_key: str | None) -> None:
        """Make *session_key* the live conversation.

        The outgoing conversation is saved first. An unknown key (or None)
        leaves a blank idle view.
        """
        outgoing = self._active_key
        if outgoing is not None:
            self.save(outgoing)

        snapshot = self._snapshots.get(session_key) if session_key is not None else None
        if snapshot is not None:
            self._reducer.restore(snapshot.view)
        else:
            self._reducer.reset()
        self._active_key = session_key
        logger.debug(
            "Switched session %s -> %s (restored=%s)",
            (outgoing or "-")[:8], (session_key or "-")[:8], snapshot is not None,
        )

    def evict(self, session_key: str) -> None:
        """Drop the snapshot for a deleted conversation.

        If it is the live one, it is detached so a later switch does not
        save it back.
        """
        self._snapshots.pop(session_key, None)
        if self._active_key == session_key:
            self._active_key = None

    def get(self, session_key: str) -> SessionSnapshot | None:
        return self._snapshots.get(session_key)

    def put(self, snapshot: SessionSnapshot) -> None:
        self._snapshots[snapshot.session_key] = snapshot

    def keys(self) -> list[str]:
        return list(self._snapshots)

    def __contains__(self, session_key: object) -> bool:
        return session_key in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

"""Live conversation state and the frozen snapshots the cache keeps."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from visual_agent.shared.models.message import ChatMessage, ToolUseInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(Enum):
    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    DONE = "done"
    ERROR = "error"


# Statuses in which a turn is still producing output.
BUSY_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.THINKING,
    SessionStatus.EXECUTING,
})


@dataclass
class ViewModel:
    """Everything the presentation layer shows for one conversation.

    ``streaming_entry_id`` names the transcript entry currently being
    extended by chunk events, or None once it has been finalized.
    ``cancelled`` is set by a user stop and makes the rest of the turn
    a no-op.
    ``finalized`` is set once a result or fatal error has ended the turn;
    later chunk and init events are ignored until the next turn begins.
    """

    transcript: list[ChatMessage] = field(default_factory=list)
    conversation_token: str | None = None
    status: SessionStatus = SessionStatus.IDLE
    total_cost: float = 0.0
    active_tools: list[ToolUseInfo] = field(default_factory=list)
    streaming_entry_id: str | None = None
    cancelled: bool = False
    finalized: bool = False

    @property
    def is_busy(self) -> bool:
        return self.status in BUSY_STATUSES

    def copy(self) -> ViewModel:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transcript": [m.to_dict() for m in self.transcript],
            "conversation_token": self.conversation_token,
            "status": self.status.value,
            "total_cost": self.total_cost,
            "active_tools": [t.to_dict() for t in self.active_tools],
            "streaming_entry_id": self.streaming_entry_id,
        }


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable capture of a ViewModel under an application session key.

    The view is deep-copied on capture and again on every read, so later
    mutation of the live model (or of a restored copy) never reaches it.
    """

    session_key: str
    _view: ViewModel = field(repr=False)
    captured_at: datetime = field(default_factory=_utcnow, compare=False)

    @classmethod
    def capture(cls, session_key: str, view: ViewModel) -> SessionSnapshot:
        return cls(session_key=session_key, _view=view.copy())

    @property
    def view(self) -> ViewModel:
        return self._view.copy()

    @property
    def status(self) -> SessionStatus:
        return self._view.status


def _epoch_millis() -> int:
    return int(_utcnow().timestamp() * 1000)


@dataclass
class SessionSummary:
    """Session-list entry: one conversation as the sidebar shows it."""

    id: str
    title: str
    project_name: str = ""
    message_count: int = 0
    total_cost: float = 0.0
    created_at: int = field(default_factory=_epoch_millis)
    updated_at: int = field(default_factory=_epoch_millis)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "project_name": self.project_name,
            "message_count": self.message_count,
            "total_cost": self.total_cost,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSummary:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            project_name=str(data.get("project_name", "")),
            message_count=int(data.get("message_count", 0)),
            total_cost=float(data.get("total_cost", 0.0)),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
        )

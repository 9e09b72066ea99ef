"""Transcript entry and tool invocation models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ToolStatus(Enum):
    # The CLI stream never reports a tool leaving this state.
    RUNNING = "running"


@dataclass
class ToolUseInfo:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "status": self.status.value,
        }


@dataclass
class ChatMessage:
    role: MessageRole
    content: str
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False
    tool_use: list[ToolUseInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "is_streaming": self.is_streaming,
            "tool_use": [tool.to_dict() for tool in self.tool_use],
        }

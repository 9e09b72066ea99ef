"""Event types decoded from the agent CLI's output stream.

Each event corresponds to one stream-json record, parsed into a typed
dataclass so the reducer never touches raw dicts.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from visual_agent.shared.models.message import ToolStatus, ToolUseInfo

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


@dataclass
class AgentEvent:
    """Base event from the agent process."""
    event_type: str = ""


@dataclass
class Init(AgentEvent):
    event_type: str = "init"
    conversation_token: str = ""


@dataclass
class AssistantChunk(AgentEvent):
    event_type: str = "assistant_chunk"
    message_id: str | None = None
    text_delta: str | None = None
    tool_invocations: list[ToolUseInfo] = field(default_factory=list)


@dataclass
class Result(AgentEvent):
    event_type: str = "result"
    outcome: str = OUTCOME_SUCCESS
    cost: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


@dataclass
class Fatal(AgentEvent):
    event_type: str = "fatal"
    message: str = ""


@dataclass
class TurnOutcome:
    """Payload of the completion signal that ends every turn."""
    returncode: int | None = None
    cancelled: bool = False
    last_event: AgentEvent | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "returncode": self.returncode,
            "cancelled": self.cancelled,
            "last_event": (
                event_to_dict(self.last_event) if self.last_event else None
            ),
        }


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "init": Init,
    "assistant_chunk": AssistantChunk,
    "result": Result,
    "fatal": Fatal,
}


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if f == "tool_invocations":
            val = [tool.to_dict() for tool in val]
        d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a serialized event dict back to its typed dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "tool_invocations" in filtered:
        filtered["tool_invocations"] = [
            ToolUseInfo(
                id=str(t.get("id", "")),
                name=str(t.get("name", "")),
                input=dict(t.get("input") or {}),
                status=ToolStatus(t.get("status", ToolStatus.RUNNING.value)),
            )
            for t in filtered["tool_invocations"]
        ]
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)

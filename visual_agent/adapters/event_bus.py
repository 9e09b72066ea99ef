"""Async event bus bridging orchestrator listeners to the UI-side consumer.

The orchestrator's reader tasks call the bus's channel listeners; the
bus wraps each payload in a TransportMessage envelope and queues it for
the single consumer loop (ChatBridge.run). Envelopes carry the
conversation id and turn id so the consumer can route background
conversations and drop stale turns.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from visual_agent.adapters.events import (
    AgentEvent,
    TurnOutcome,
    dict_to_event,
    event_to_dict,
)

if TYPE_CHECKING:
    from visual_agent.engine.orchestrator import AgentProcessOrchestrator, Turn

logger = logging.getLogger(__name__)

CHANNEL_EVENT = "event"
CHANNEL_ERROR = "error"
CHANNEL_COMPLETE = "complete"


@dataclass
class TransportMessage:
    """One payload on its way from a reader task to the consumer."""
    channel: str
    conversation_id: str
    turn_id: int
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        if self.channel == CHANNEL_EVENT and isinstance(self.payload, AgentEvent):
            payload: Any = event_to_dict(self.payload)
        elif self.channel == CHANNEL_COMPLETE and isinstance(self.payload, TurnOutcome):
            payload = self.payload.to_dict()
        elif isinstance(self.payload, BaseException):
            payload = {
                "error": type(self.payload).__name__,
                "message": str(self.payload),
            }
        else:
            payload = self.payload
        return {
            "channel": self.channel,
            "conversation_id": self.conversation_id,
            "turn_id": self.turn_id,
            "payload": payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransportMessage:
        channel = data.get("channel", CHANNEL_EVENT)
        payload = data.get("payload")
        if channel == CHANNEL_EVENT and isinstance(payload, dict):
            payload = dict_to_event(payload)
        elif channel == CHANNEL_COMPLETE and isinstance(payload, dict):
            last = payload.get("last_event")
            payload = TurnOutcome(
                returncode=payload.get("returncode"),
                cancelled=bool(payload.get("cancelled", False)),
                last_event=dict_to_event(last) if isinstance(last, dict) else None,
            )
        return cls(
            channel=channel,
            conversation_id=str(data.get("conversation_id", "")),
            turn_id=int(data.get("turn_id", 0)),
            payload=payload,
        )


class EventBus:
    """Async queue bridging orchestrator listeners to one consumer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TransportMessage] = asyncio.Queue(
            maxsize=maxsize
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def publish(self, message: TransportMessage) -> None:
        """Queue *message*; dropped silently once the bus is closed."""
        if self._closed:
            return
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(message), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping %s for conv=%s (queue size: %d)",
                message.channel,
                message.conversation_id[:8],
                self._queue.qsize(),
            )

    # Channel listeners, called by the orchestrator as listener(turn, payload)

    async def _on_event(self, turn: Turn, event: AgentEvent) -> None:
        await self.publish(TransportMessage(
            CHANNEL_EVENT, turn.conversation_id, turn.turn_id, event,
        ))

    async def _on_error(self, turn: Turn, error: Exception) -> None:
        await self.publish(TransportMessage(
            CHANNEL_ERROR, turn.conversation_id, turn.turn_id, error,
        ))

    async def _on_complete(self, turn: Turn, outcome: TurnOutcome) -> None:
        await self.publish(TransportMessage(
            CHANNEL_COMPLETE, turn.conversation_id, turn.turn_id, outcome,
        ))

    def attach(self, orchestrator: AgentProcessOrchestrator, conversation_id: str) -> None:
        """Route all three channels of *conversation_id* into this bus.

        Replaces whatever was subscribed before.
        """
        orchestrator.subscribe(
            conversation_id,
            on_event=self._on_event,
            on_error=self._on_error,
            on_complete=self._on_complete,
        )

    async def consume(self) -> AsyncIterator[TransportMessage]:
        """Yield messages as they arrive. Stops on close()."""
        while not self._closed:
            try:
                message = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
                yield message
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def get_nowait(self) -> TransportMessage | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover messages and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False

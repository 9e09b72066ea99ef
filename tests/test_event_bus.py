from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from visual_agent.adapters.event_bus import (
    CHANNEL_COMPLETE,
    CHANNEL_ERROR,
    CHANNEL_EVENT,
    EventBus,
    TransportMessage,
)
from visual_agent.adapters.events import (
    AssistantChunk,
    Init,
    Result,
    TurnOutcome,
    dict_to_event,
    event_to_dict,
)
from visual_agent.engine.errors import ProcessError
from visual_agent.shared.models.message import ToolUseInfo


def _turn(conversation_id: str = "conv-1", turn_id: int = 7) -> SimpleNamespace:
    return SimpleNamespace(conversation_id=conversation_id, turn_id=turn_id)


@pytest.mark.asyncio
async def test_channel_listeners_wrap_payloads_in_envelopes() -> None:
    bus = EventBus()
    turn = _turn()
    await bus._on_event(turn, Init(conversation_token="abc"))
    await bus._on_error(turn, ProcessError("boom", 1))
    await bus._on_complete(turn, TurnOutcome(returncode=1))

    messages = [bus.get_nowait() for _ in range(3)]
    assert [m.channel for m in messages] == [CHANNEL_EVENT, CHANNEL_ERROR, CHANNEL_COMPLETE]
    assert all(m.conversation_id == "conv-1" and m.turn_id == 7 for m in messages)
    assert messages[0].payload == Init(conversation_token="abc")
    assert bus.get_nowait() is None


@pytest.mark.asyncio
async def test_publish_after_close_is_dropped_silently() -> None:
    bus = EventBus()
    bus.close()
    await bus.publish(TransportMessage(CHANNEL_EVENT, "c", 1, Init(conversation_token="x")))
    assert bus.qsize() == 0


@pytest.mark.asyncio
async def test_consume_yields_until_closed() -> None:
    bus = EventBus()
    for i in range(3):
        await bus.publish(TransportMessage(CHANNEL_EVENT, "c", i, None))

    received: list[int] = []

    async def consumer() -> None:
        async for message in bus.consume():
            received.append(message.turn_id)
            if len(received) == 3:
                bus.close()

    await asyncio.wait_for(consumer(), timeout=5)
    assert received == [0, 1, 2]


@pytest.mark.asyncio
async def test_reset_drains_and_reopens() -> None:
    bus = EventBus()
    await bus.publish(TransportMessage(CHANNEL_EVENT, "c", 1, None))
    bus.close()
    bus.reset()
    assert not bus.closed
    assert bus.qsize() == 0
    await bus.publish(TransportMessage(CHANNEL_EVENT, "c", 2, None))
    assert bus.qsize() == 1


def test_attach_subscribes_all_three_channels() -> None:
    bus = EventBus()
    orchestrator = MagicMock()
    bus.attach(orchestrator, "conv-9")
    orchestrator.subscribe.assert_called_once_with(
        "conv-9",
        on_event=bus._on_event,
        on_error=bus._on_error,
        on_complete=bus._on_complete,
    )


def test_envelope_serialization() -> None:
    chunk = AssistantChunk(
        message_id="m1",
        text_delta="hi",
        tool_invocations=[ToolUseInfo(id="t1", name="ls", input={"path": "."})],
    )
    event_msg = TransportMessage(CHANNEL_EVENT, "c", 3, chunk).to_dict()
    assert event_msg["payload"]["event"] == "assistant_chunk"
    assert event_msg["payload"]["tool_invocations"][0] == {
        "id": "t1", "name": "ls", "input": {"path": "."}, "status": "running",
    }

    error_msg = TransportMessage(CHANNEL_ERROR, "c", 3, ProcessError("bad", 2)).to_dict()
    assert error_msg["payload"] == {
        "error": "ProcessError",
        "message": "Agent exited with code 2: bad",
    }

    outcome = TurnOutcome(returncode=0, last_event=Result(cost=0.5))
    done_msg = TransportMessage(CHANNEL_COMPLETE, "c", 3, outcome).to_dict()
    assert done_msg["payload"]["last_event"]["event"] == "result"

    restored = TransportMessage.from_dict(done_msg)
    assert restored.payload == outcome
    assert TransportMessage.from_dict(event_msg).payload == chunk


def test_event_dict_round_trip_keeps_type() -> None:
    event = Init(conversation_token="tok")
    data = event_to_dict(event)
    assert data == {"event": "init", "conversation_token": "tok"}
    assert dict_to_event(data) == event

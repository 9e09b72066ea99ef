from __future__ import annotations

import json

import pytest

from visual_agent.adapters.events import (
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    AssistantChunk,
    Fatal,
    Init,
    Result,
)
from visual_agent.engine.errors import ProtocolError
from visual_agent.engine.stream_parser import decode_line


def _line(record: dict) -> str:
    return json.dumps(record) + "\n"


def test_init_record_yields_token() -> None:
    event = decode_line(_line({"type": "system", "subtype": "init", "session_id": "abc"}))
    assert event == Init(conversation_token="abc")


def test_other_system_subtypes_are_skipped() -> None:
    assert decode_line(_line({"type": "system", "subtype": "compact_boundary"})) is None


def test_init_without_session_id_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_line(_line({"type": "system", "subtype": "init"}))


def test_assistant_text_blocks_are_concatenated() -> None:
    event = decode_line(_line({
        "type": "assistant",
        "message": {
            "id": "msg_1",
            "content": [
                {"type": "text", "text": "Found "},
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "3 files"},
            ],
        },
    }))
    assert isinstance(event, AssistantChunk)
    assert event.message_id == "msg_1"
    assert event.text_delta == "Found 3 files"
    assert event.tool_invocations == []


def test_assistant_tool_use_blocks() -> None:
    event = decode_line(_line({
        "type": "assistant",
        "message": {
            "id": "msg_2",
            "content": [
                {"type": "tool_use", "id": "t1", "name": "ls", "input": {"path": "."}},
                {"type": "tool_use", "id": "t2", "name": "Read", "input": "not-a-dict"},
            ],
        },
    }))
    assert isinstance(event, AssistantChunk)
    assert event.text_delta is None
    assert [t.id for t in event.tool_invocations] == ["t1", "t2"]
    assert event.tool_invocations[0].input == {"path": "."}
    assert event.tool_invocations[1].input == {}
    assert event.tool_invocations[0].status.value == "running"


def test_assistant_without_text_or_tools_is_skipped() -> None:
    line = _line({
        "type": "assistant",
        "message": {"id": "m", "content": [{"type": "thinking", "thinking": "..."}]},
    })
    assert decode_line(line) is None


def test_assistant_without_message_is_protocol_error() -> None:
    with pytest.raises(ProtocolError) as exc_info:
        decode_line(_line({"type": "assistant"}))
    assert "message" in exc_info.value.reason


def test_result_success_and_cost() -> None:
    event = decode_line(_line({
        "type": "result", "subtype": "success", "total_cost_usd": 0.002,
    }))
    assert event == Result(outcome=OUTCOME_SUCCESS, cost=0.002)
    assert event.succeeded


def test_result_other_subtype_is_failure() -> None:
    event = decode_line(_line({"type": "result", "subtype": "error_max_turns"}))
    assert isinstance(event, Result)
    assert event.outcome == OUTCOME_FAILURE
    assert event.cost == 0.0


def test_result_success_flagged_is_error_is_failure() -> None:
    event = decode_line(_line({
        "type": "result", "subtype": "success", "is_error": True, "total_cost_usd": 0.1,
    }))
    assert event.outcome == OUTCOME_FAILURE
    assert event.cost == pytest.approx(0.1)


def test_result_with_non_numeric_cost_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_line(_line({"type": "result", "subtype": "success", "total_cost_usd": "lots"}))


def test_error_record_is_fatal() -> None:
    event = decode_line(_line({"type": "error", "message": "rate limited"}))
    assert event == Fatal(message="rate limited")


def test_error_record_with_nested_error_object() -> None:
    event = decode_line(_line({"type": "error", "error": {"message": "overloaded"}}))
    assert event == Fatal(message="overloaded")


def test_immaterial_records_are_skipped() -> None:
    assert decode_line(_line({"type": "user", "message": {"content": []}})) is None
    assert decode_line(_line({"type": "stream_event"})) is None


@pytest.mark.parametrize("line", ["", "\n", "   \r\n"])
def test_blank_lines_are_skipped(line: str) -> None:
    assert decode_line(line) is None


def test_bytes_input_is_decoded() -> None:
    raw = _line({"type": "system", "subtype": "init", "session_id": "tok"}).encode()
    assert decode_line(raw) == Init(conversation_token="tok")


def test_malformed_json_is_protocol_error_with_preview() -> None:
    garbage = "{not json" + "x" * 300
    with pytest.raises(ProtocolError) as exc_info:
        decode_line(garbage)
    err = exc_info.value
    assert err.line == garbage
    assert "invalid JSON" in err.reason
    assert len(str(err)) < 200


def test_non_object_json_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_line("[1, 2, 3]")

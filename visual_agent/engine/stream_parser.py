"""Decode single stream-json lines from the agent CLI into AgentEvents.

Record types that matter to a turn:
  system/init  carries the resumable session id
  assistant    text and tool_use content blocks
  result       final outcome and cost
  error        fatal message from the CLI

Anything else (user/tool_result echoes, partial stream events, other
system subtypes) decodes to None and is skipped.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from visual_agent.adapters.events import (
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    AgentEvent,
    AssistantChunk,
    Fatal,
    Init,
    Result,
)
from visual_agent.shared.models.message import ToolUseInfo

from .errors import ProtocolError

logger = logging.getLogger(__name__)


def decode_line(line: str | bytes) -> AgentEvent | None:
    """Decode one output line.

    Returns None for blank lines and immaterial record types. Raises
    ProtocolError when the line is not a JSON object or a material
    record is missing required fields.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    stripped = line.strip()
    if not stripped:
        return None

    try:
        record = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise ProtocolError(stripped, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(record, dict):
        raise ProtocolError(stripped, "record is not an object")

    rtype = record.get("type")

    if rtype == "system":
        if record.get("subtype") != "init":
            return None
        token = record.get("session_id")
        if not isinstance(token, str) or not token:
            raise ProtocolError(stripped, "init record without session_id")
        return Init(conversation_token=token)

    if rtype == "assistant":
        return _decode_assistant(record, stripped)

    if rtype == "result":
        return _decode_result(record, stripped)

    if rtype == "error":
        message = record.get("message") or record.get("error") or stripped
        if isinstance(message, dict):
            message = message.get("message") or json.dumps(message)
        return Fatal(message=str(message))

    return None


def _decode_assistant(record: dict[str, Any], raw: str) -> AssistantChunk | None:
    message = record.get("message")
    if not isinstance(message, dict):
        raise ProtocolError(raw, "assistant record without message object")
    content = message.get("content") or []
    if not isinstance(content, list):
        raise ProtocolError(raw, "assistant content is not a list")

    text_parts: list[str] = []
    tools: list[ToolUseInfo] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        btype = block.get("type")
        if btype == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                text_parts.append(text)
        elif btype == "tool_use":
            tool_input = block.get("input")
            tools.append(ToolUseInfo(
                id=str(block.get("id", "")),
                name=str(block.get("name", "")),
                input=tool_input if isinstance(tool_input, dict) else {},
            ))

    if not text_parts and not tools:
        # thinking-only or empty blocks
        return None

    message_id = message.get("id")
    return AssistantChunk(
        message_id=str(message_id) if message_id else None,
        text_delta="".join(text_parts) or None,
        tool_invocations=tools,
    )


def _decode_result(record: dict[str, Any], raw: str) -> Result:
    subtype = record.get("subtype")
    # The CLI can report subtype "success" together with is_error for
    # API-level failures; treat that as a failure.
    succeeded = subtype == OUTCOME_SUCCESS and not record.get("is_error", False)
    cost_raw = record.get("total_cost_usd") or 0
    try:
        cost = float(cost_raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(raw, f"non-numeric total_cost_usd {cost_raw!r}") from exc
    return Result(
        outcome=OUTCOME_SUCCESS if succeeded else OUTCOME_FAILURE,
        cost=cost,
    )

from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from pathlib import Path

import pytest

from visual_agent.adapters.bridge import ChatBridge, make_title
from visual_agent.adapters.event_bus import CHANNEL_COMPLETE, CHANNEL_EVENT, TransportMessage
from visual_agent.adapters.events import AssistantChunk
from visual_agent.engine.config import EngineConfig
from visual_agent.engine.errors import ProjectNotSelectedError, TurnInProgressError
from visual_agent.shared.models.message import MessageRole
from visual_agent.shared.models.session import SessionStatus, ViewModel
from visual_agent.shared.services.settings_store import LAST_PROJECT_KEY, MODEL_KEY

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")

_PRELUDE = """\
import json, sys, time

def emit(record):
    print(json.dumps(record), flush=True)

def say(text):
    emit({"type": "assistant", "message": {"id": "m", "content": [
        {"type": "text", "text": text}]}})

"""

# Echoes its argv back as the assistant text; resumes the token it was given.
ECHO = """\
args = sys.argv[1:]
token = args[args.index("--resume") + 1] if "--resume" in args else "tok-1"
emit({"type": "system", "subtype": "init", "session_id": token})
say(json.dumps(args))
emit({"type": "result", "subtype": "success", "total_cost_usd": 0.01})
"""

SLOW = """\
emit({"type": "system", "subtype": "init", "session_id": "tok-slow"})
say("working")
time.sleep(30)
say("never seen")
emit({"type": "result", "subtype": "success", "total_cost_usd": 9.0})
"""

DELAYED = """\
emit({"type": "system", "subtype": "init", "session_id": "tok-bg"})
time.sleep(0.5)
say("background done")
emit({"type": "result", "subtype": "success", "total_cost_usd": 0.02})
"""

CRASH = """\
sys.stderr.write("boom\\n")
sys.exit(3)
"""


def _write_cli(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-claude"
    script.write_text(f"#!{sys.executable}\n" + _PRELUDE + textwrap.dedent(body))
    script.chmod(0o755)
    return str(script)


def _bridge(tmp_path: Path, cli: str, *, project: bool = True) -> ChatBridge:
    config = EngineConfig(
        cli_command=cli,
        data_dir=tmp_path / "data",
        stop_grace_seconds=2.0,
    )
    bridge = ChatBridge(config)
    if project:
        bridge.settings.set(LAST_PROJECT_KEY, str(tmp_path))
    return bridge


async def _settle(bridge: ChatBridge, turn) -> None:
    await asyncio.wait_for(turn.wait(), timeout=15)
    await bridge.drain()


async def _drain_until(bridge: ChatBridge, predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        await bridge.drain()
        if predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


def _argv(view: ViewModel) -> list[str]:
    return json.loads(view.transcript[-1].content)


def test_make_title() -> None:
    assert make_title("  list   the\nfiles ") == "list the files"
    long = "x" * 60
    assert make_title(long) == "x" * 40 + "..."


@pytest.mark.asyncio
async def test_first_send_creates_session_and_folds_turn(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    assert bridge.active_session is None

    turn = await bridge.send_message("  list   the files ")
    key = bridge.active_session
    assert key == turn.conversation_id
    await _settle(bridge, turn)

    view = bridge.view
    assert view.status is SessionStatus.DONE
    assert view.conversation_token == "tok-1"
    assert view.total_cost == 0.01
    assert [m.role for m in view.transcript] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert view.transcript[0].content == "list the files"
    assert "--resume" not in _argv(view)

    (summary,) = bridge.sessions()
    assert summary.id == key
    assert summary.title == "list the files"
    assert summary.project_name == tmp_path.name
    assert summary.message_count == 1
    assert summary.total_cost == 0.01


@pytest.mark.asyncio
async def test_second_send_resumes_and_counts(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    await _settle(bridge, await bridge.send_message("first"))
    key = bridge.active_session

    await _settle(bridge, await bridge.send_message("second"))
    argv = _argv(bridge.view)
    assert argv[argv.index("--resume") + 1] == "tok-1"
    assert bridge.active_session == key
    assert len(bridge.view.transcript) == 4

    (summary,) = bridge.sessions()
    assert summary.message_count == 2
    assert summary.title == "first"


@pytest.mark.asyncio
async def test_send_requires_project_and_prompt(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO), project=False)
    with pytest.raises(ProjectNotSelectedError):
        await bridge.send_message("hello")
    with pytest.raises(ValueError):
        await bridge.send_message("   ", project_dir=str(tmp_path))
    assert bridge.sessions() == []
    assert bridge.view == ViewModel()


@pytest.mark.asyncio
async def test_model_precedence(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    assert bridge.model == "sonnet"

    bridge.set_model("opus")
    assert bridge.settings.get(MODEL_KEY) == "opus"
    await _settle(bridge, await bridge.send_message("one"))
    argv = _argv(bridge.view)
    assert argv[argv.index("--model") + 1] == "opus"

    await _settle(bridge, await bridge.send_message("two", model="haiku"))
    argv = _argv(bridge.view)
    assert argv[argv.index("--model") + 1] == "haiku"


@pytest.mark.asyncio
async def test_stop_goes_idle_and_ignores_the_rest(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, SLOW))
    turn = await bridge.send_message("long job")
    await _drain_until(bridge, lambda: any(m.content == "working" for m in bridge.view.transcript))

    with pytest.raises(TurnInProgressError):
        await bridge.send_message("again")

    assert bridge.stop() is True
    assert bridge.view.status is SessionStatus.IDLE
    assert bridge.view.active_tools == []

    outcome = await asyncio.wait_for(turn.wait(), timeout=15)
    await bridge.drain()
    assert outcome.cancelled
    view = bridge.view
    assert view.status is SessionStatus.IDLE
    assert [m.content for m in view.transcript] == ["long job", "working"]
    assert not any(m.is_streaming for m in view.transcript)
    assert not bridge.is_running()
    assert bridge.stop() is False


@pytest.mark.asyncio
async def test_background_turn_folds_into_snapshot(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, DELAYED))
    turn = await bridge.send_message("run in background")
    key = bridge.active_session

    bridge.new_chat()
    assert bridge.active_session is None
    await _settle(bridge, turn)

    assert bridge.view == ViewModel()
    snapshot = bridge.cache.get(key)
    assert snapshot.status is SessionStatus.DONE
    assert snapshot.view.transcript[-1].content == "background done"
    assert bridge.index.load(key).total_cost == 0.02

    view = bridge.select_session(key)
    assert view.status is SessionStatus.DONE
    assert view.conversation_token == "tok-bg"


@pytest.mark.asyncio
async def test_stale_turn_messages_are_dropped(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    turn = await bridge.send_message("hi")
    await _settle(bridge, turn)
    before = bridge.view

    await bridge.process(TransportMessage(
        CHANNEL_EVENT, turn.conversation_id, turn.turn_id - 1,
        AssistantChunk(message_id="old", text_delta="ghost"),
    ))
    assert bridge.view is before


@pytest.mark.asyncio
async def test_messages_for_unknown_sessions_are_dropped(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    await bridge.process(TransportMessage(
        CHANNEL_EVENT, "nobody", 1, AssistantChunk(text_delta="lost"),
    ))
    assert bridge.view == ViewModel()
    assert bridge.cache.keys() == []


@pytest.mark.asyncio
async def test_process_failure_surfaces_as_error_entry(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, CRASH))
    await _settle(bridge, await bridge.send_message("crash please"))
    view = bridge.view
    assert view.status is SessionStatus.ERROR
    errors = [m for m in view.transcript if m.content.startswith("Error: ")]
    assert len(errors) == 1
    assert "boom" in errors[0].content


@pytest.mark.asyncio
async def test_missing_cli_surfaces_as_error_entry(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, str(tmp_path / "no-such-claude"))
    await _settle(bridge, await bridge.send_message("hello"))
    assert bridge.view.status is SessionStatus.ERROR
    assert "not found" in bridge.view.transcript[-1].content


@pytest.mark.asyncio
async def test_delete_active_session(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    await _settle(bridge, await bridge.send_message("hi"))
    key = bridge.active_session

    assert bridge.delete_session(key) is True
    assert bridge.active_session is None
    assert bridge.view == ViewModel()
    assert key not in bridge.cache
    assert bridge.sessions() == []
    assert bridge.delete_session(key) is False


@pytest.mark.asyncio
async def test_observers_see_every_channel(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    seen: list[str] = []
    bridge.add_observer(lambda message: seen.append(message.channel))
    await _settle(bridge, await bridge.send_message("hi"))
    assert seen.count(CHANNEL_EVENT) == 3
    assert seen[-1] == CHANNEL_COMPLETE


@pytest.mark.asyncio
async def test_wait_for_turn_with_running_consumer(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO))
    consumer = asyncio.create_task(bridge.run())
    try:
        turn = await bridge.send_message("hi")
        await asyncio.wait_for(bridge.wait_for_turn(turn), timeout=15)
        assert bridge.view.status is SessionStatus.DONE
        # Already folded: returns at once
        await asyncio.wait_for(bridge.wait_for_turn(turn), timeout=1)
    finally:
        await bridge.shutdown()
        await asyncio.wait_for(consumer, timeout=5)


@pytest.mark.asyncio
async def test_select_folder(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path, _write_cli(tmp_path, ECHO), project=False)
    project = tmp_path / "repo"
    project.mkdir()

    assert await bridge.select_folder() is None
    assert await bridge.select_folder(lambda: None) is None
    assert await bridge.select_folder(lambda: str(tmp_path / "missing")) is None
    assert bridge.project_dir is None

    async def picker() -> str:
        return str(project)

    chosen = await bridge.select_folder(picker)
    assert chosen == str(project.resolve())
    assert bridge.project_dir == chosen
    assert bridge.state()["project_dir"] == chosen

"""Runs the agent CLI once per conversational turn.

Each execute() spawns a fresh process in its own process group, reads
its stdout as stream-json lines and hands decoded events to the
conversation's listeners. Three channels per conversation:

    event     -- AgentEvent, in stream order
    error     -- ProtocolError (stream continues) or ProcessError
    complete  -- TurnOutcome, exactly once per turn, always last

Listeners are keyed by conversation id with at most one subscriber per
channel; registering again replaces the previous one. Listeners are
looked up at delivery time, so a replacement takes effect mid-turn.

Listener signature: ``listener(turn, payload)``; plain functions and
coroutine functions are both accepted.
"""
from __future__ import annotations

import asyncio
import collections
import logging
import os
import signal
from dataclasses import dataclass, field

from visual_agent.adapters.events import AgentEvent, TurnOutcome

from .config import EngineConfig, Listener, deliver
from .errors import ProcessError, ProtocolError, TurnInProgressError
from .providers.base import Provider, TurnRequest
from .providers.claude_provider import ClaudeProvider
from .stream_parser import decode_line

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 40


@dataclass
class ListenerSet:
    on_event: Listener | None = None
    on_error: Listener | None = None
    on_complete: Listener | None = None


@dataclass
class Turn:
    """One execute()-to-completion cycle."""

    turn_id: int
    conversation_id: str
    request: TurnRequest
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    cancelled: bool = False
    last_event: AgentEvent | None = None
    returncode: int | None = None
    stderr_tail: collections.deque = field(
        default_factory=lambda: collections.deque(maxlen=_STDERR_TAIL_LINES),
        repr=False,
    )
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _reader: asyncio.Task | None = field(default=None, repr=False)
    _kill_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.finished.is_set()

    async def wait(self) -> TurnOutcome:
        await self.finished.wait()
        return self.outcome()

    def outcome(self) -> TurnOutcome:
        return TurnOutcome(
            returncode=self.returncode,
            cancelled=self.cancelled,
            last_event=self.last_event,
        )


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    A single stream-json record (an assistant message quoting a large
    file, say) can exceed the 64 KiB StreamReader limit. When the
    buffer fills before a newline appears, drain it and keep going.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            # EOF before newline
            chunks.append(exc.partial)
            return b"".join(chunks)


class AgentProcessOrchestrator:
    """Owns the in-flight agent processes of one top-level context.

    Create one per application context and pass it to whatever issues
    turns; nothing here is global.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        stop_grace_seconds: float = 5.0,
    ) -> None:
        self._provider = provider
        self._stop_grace_seconds = stop_grace_seconds
        self._listeners: dict[str, ListenerSet] = {}
        self._turns: dict[str, Turn] = {}
        self._turn_counter = 0

    @classmethod
    def from_config(cls, config: EngineConfig) -> AgentProcessOrchestrator:
        provider = ClaudeProvider(
            command=config.cli_command,
            default_model=config.default_model,
            permission_mode=config.permission_mode,
            extra_args=config.extra_args,
            verbose=config.verbose,
        )
        return cls(provider, stop_grace_seconds=config.stop_grace_seconds)

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def last_turn_id(self) -> int:
        """Id of the most recently started turn; 0 before any."""
        return self._turn_counter

    # ── Listener registration ───────────────────────────────────────

    def _slot(self, conversation_id: str) -> ListenerSet:
        return self._listeners.setdefault(conversation_id, ListenerSet())

    def on_event(self, conversation_id: str, listener: Listener | None) -> None:
        self._slot(conversation_id).on_event = listener

    def on_error(self, conversation_id: str, listener: Listener | None) -> None:
        self._slot(conversation_id).on_error = listener

    def on_complete(self, conversation_id: str, listener: Listener | None) -> None:
        self._slot(conversation_id).on_complete = listener

    def subscribe(
        self,
        conversation_id: str,
        *,
        on_event: Listener | None = None,
        on_error: Listener | None = None,
        on_complete: Listener | None = None,
    ) -> None:
        """Replace all three channel subscribers for a conversation."""
        self._listeners[conversation_id] = ListenerSet(
            on_event=on_event,
            on_error=on_error,
            on_complete=on_complete,
        )

    def unsubscribe(self, conversation_id: str) -> None:
        self._listeners.pop(conversation_id, None)

    def listeners(self, conversation_id: str) -> ListenerSet:
        return self._listeners.get(conversation_id, ListenerSet())

    # ── Turn lifecycle ──────────────────────────────────────────────

    def is_running(self, conversation_id: str) -> bool:
        turn = self._turns.get(conversation_id)
        return turn is not None and not turn.done

    def current_turn(self, conversation_id: str) -> Turn | None:
        return self._turns.get(conversation_id)

    async def execute(
        self,
        conversation_id: str,
        prompt: str,
        cwd: str,
        conversation_token: str | None = None,
        model: str | None = None,
    ) -> Turn:
        """Start one turn and return without waiting for it to finish.

        Raises TurnInProgressError if the conversation already has a live
        turn. Every other failure is reported on the error channel,
        followed by completion.
        """
        if self.is_running(conversation_id):
            raise TurnInProgressError(conversation_id)

        self._turn_counter += 1
        request = TurnRequest(
            prompt=prompt,
            cwd=cwd,
            conversation_token=conversation_token,
            model=model,
        )
        turn = Turn(
            turn_id=self._turn_counter,
            conversation_id=conversation_id,
            request=request,
        )
        # Reserve the slot before the first await so a racing execute()
        # for the same conversation sees it.
        self._turns[conversation_id] = turn

        cmd = self._provider.build_command(request)
        logger.info(
            "Turn %d conv=%s starting %s cwd=%s resume=%s model=%s",
            turn.turn_id, conversation_id[:8], cmd[0], cwd,
            (conversation_token or "-")[:8], model or "-",
        )
        try:
            # Array-based exec, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError as exc:
            if isinstance(exc, FileNotFoundError) and exc.filename in (None, cmd[0]):
                detail = f"'{cmd[0]}' CLI not found. Install it or set VA_CLI_COMMAND."
            else:
                detail = f"Failed to start agent in {cwd}: {exc}"
            logger.error("Turn %d conv=%s spawn failed: %s", turn.turn_id, conversation_id[:8], detail)
            await self._emit_error(turn, ProcessError(detail))
            await self._finish(turn)
            return turn

        turn.process = proc
        logger.info("Turn %d conv=%s spawned pid=%s", turn.turn_id, conversation_id[:8], proc.pid)
        if turn.cancelled:
            # stop() arrived while we were spawning
            self._signal(turn)
        turn._reader = asyncio.create_task(
            self._pump(turn),
            name=f"visual-agent-turn-{turn.turn_id}",
        )
        return turn

    def stop(self, conversation_id: str) -> bool:
        """Request termination of the conversation's in-flight process.

        Fire-and-forget: returns immediately. Events already in the pipe
        may still be delivered before completion.
        """
        turn = self._turns.get(conversation_id)
        if turn is None or turn.done:
            return False
        turn.cancelled = True
        if turn.process is None:
            return True
        return self._signal(turn)

    async def wait(self, conversation_id: str) -> TurnOutcome | None:
        turn = self._turns.get(conversation_id)
        if turn is None:
            return None
        return await turn.wait()

    async def shutdown(self) -> None:
        """Stop every in-flight turn and wait for their readers to finish."""
        turns = [t for t in self._turns.values() if not t.done]
        for turn in turns:
            self.stop(turn.conversation_id)
        if turns:
            await asyncio.gather(*(t.finished.wait() for t in turns))

    # ── Internals ───────────────────────────────────────────────────

    def _signal(self, turn: Turn) -> bool:
        proc = turn.process
        if proc is None or proc.returncode is not None:
            return False
        interrupted = False
        try:
            # Ctrl+C semantics for the whole process group
            if hasattr(os, "killpg"):
                try:
                    os.killpg(proc.pid, signal.SIGINT)
                    interrupted = True
                except ProcessLookupError:
                    return False
                except PermissionError:
                    interrupted = False
            if not interrupted:
                proc.terminate()
                interrupted = True
        except ProcessLookupError:
            return interrupted
        logger.info(
            "Turn %d conv=%s stop requested (pid=%s)",
            turn.turn_id, turn.conversation_id[:8], proc.pid,
        )
        if turn._kill_handle is None and self._stop_grace_seconds > 0:
            loop = asyncio.get_running_loop()
            turn._kill_handle = loop.call_later(
                self._stop_grace_seconds, self._kill_if_alive, turn,
            )
        return interrupted

    def _kill_if_alive(self, turn: Turn) -> None:
        proc = turn.process
        if proc is None or proc.returncode is not None:
            return
        logger.warning(
            "Turn %d conv=%s ignored stop for %.1fs; killing pid=%s",
            turn.turn_id, turn.conversation_id[:8], self._stop_grace_seconds, proc.pid,
        )
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    async def _drain_stderr(self, turn: Turn) -> None:
        stream = turn.process.stderr if turn.process else None
        if stream is None:
            return
        while True:
            line = await read_line_unbounded(stream)
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                turn.stderr_tail.append(text)
                logger.debug("Turn %d stderr: %s", turn.turn_id, text[:300])

    async def _pump(self, turn: Turn) -> None:
        proc = turn.process
        if proc is None or proc.stdout is None:
            logger.error("Turn %d conv=%s has no stdout pipe", turn.turn_id, turn.conversation_id[:8])
            await self._emit_error(turn, ProcessError("Agent process has no output stream"))
            await self._finish(turn)
            return
        stderr_task = asyncio.create_task(
            self._drain_stderr(turn),
            name=f"visual-agent-stderr-{turn.turn_id}",
        )
        try:
            while True:
                line = await read_line_unbounded(proc.stdout)
                if not line:
                    break
                await self._dispatch_line(turn, line)

            await proc.wait()
            await stderr_task
            turn.returncode = proc.returncode
            logger.info(
                "Turn %d conv=%s exited rc=%s cancelled=%s",
                turn.turn_id, turn.conversation_id[:8], proc.returncode, turn.cancelled,
            )
            if proc.returncode != 0 and not turn.cancelled:
                detail = "\n".join(turn.stderr_tail).strip() or "agent emitted no stderr"
                await self._emit_error(turn, ProcessError(detail, proc.returncode))
        except Exception as exc:
            logger.exception("Turn %d conv=%s reader failed", turn.turn_id, turn.conversation_id[:8])
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            turn.returncode = proc.returncode
            await self._emit_error(turn, ProcessError(f"Lost agent output stream: {exc}"))
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            try:
                await stderr_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Turn %d stderr reader failed: %s", turn.turn_id, exc)
            await self._finish(turn)

    async def _dispatch_line(self, turn: Turn, line: bytes) -> None:
        try:
            event = decode_line(line)
        except ProtocolError as exc:
            logger.debug("Turn %d protocol error: %s", turn.turn_id, exc)
            await self._emit_error(turn, exc)
            return
        if event is None:
            return
        turn.last_event = event
        await deliver(
            self.listeners(turn.conversation_id).on_event,
            turn, event, channel="event",
        )

    async def _emit_error(self, turn: Turn, error: Exception) -> None:
        await deliver(
            self.listeners(turn.conversation_id).on_error,
            turn, error, channel="error",
        )

    async def _finish(self, turn: Turn) -> None:
        if turn._kill_handle is not None:
            turn._kill_handle.cancel()
            turn._kill_handle = None
        if self._turns.get(turn.conversation_id) is turn:
            del self._turns[turn.conversation_id]
        try:
            await deliver(
                self.listeners(turn.conversation_id).on_complete,
                turn, turn.outcome(), channel="complete",
            )
        finally:
            turn.finished.set()

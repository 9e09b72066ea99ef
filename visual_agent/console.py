"""Terminal front end: a line-oriented chat REPL rendered with rich.

Assistant text is printed as it streams in; tool invocations show up
as dim one-liners. Ctrl+C while a turn is running stops it; at the
prompt it exits.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

from rich.console import Console
from rich.markdown import Markdown as RichMarkdown
from rich.table import Table
from rich.text import Text

from visual_agent.adapters.bridge import ChatBridge
from visual_agent.adapters.event_bus import (
    CHANNEL_COMPLETE,
    CHANNEL_ERROR,
    CHANNEL_EVENT,
    TransportMessage,
)
from visual_agent.adapters.events import AssistantChunk, TurnOutcome
from visual_agent.engine.errors import (
    ProjectNotSelectedError,
    ProtocolError,
    TurnInProgressError,
)
from visual_agent.shared.models.message import MessageRole
from visual_agent.shared.models.session import SessionStatus

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  /new               start a new conversation
  /sessions          list conversations
  /switch N|ID       switch to a conversation
  /delete N|ID       delete a conversation
  /model [ALIAS]     show or set the model (sonnet, opus, haiku, ...)
  /cd PATH           select the project folder
  /help              show this help
  /quit              exit
"""

STATUS_STYLES: dict[SessionStatus, str] = {
    SessionStatus.IDLE: "dim",
    SessionStatus.THINKING: "yellow",
    SessionStatus.EXECUTING: "cyan",
    SessionStatus.DONE: "green",
    SessionStatus.ERROR: "bold red",
}


class ConsoleApp:
    """REPL over a ChatBridge."""

    def __init__(
        self,
        bridge: ChatBridge,
        console: Console | None = None,
        input_func: Callable[[str], str] | None = None,
    ) -> None:
        self._bridge = bridge
        self._console = console or Console()
        self._input = input_func or self._console.input
        self._at_line_start = True
        bridge.add_observer(self._on_message)

    # ── Rendering ──

    def _on_message(self, message: TransportMessage) -> None:
        if message.conversation_id != self._bridge.active_session:
            return
        if self._bridge.view.cancelled:
            return
        if message.channel == CHANNEL_EVENT and isinstance(message.payload, AssistantChunk):
            chunk = message.payload
            for tool in chunk.tool_invocations:
                self._ensure_newline()
                self._console.print(Text(f"  ⚙ {tool.name}", style="dim cyan"))
            if chunk.text_delta:
                self._console.print(chunk.text_delta, end="", markup=False, highlight=False)
                self._at_line_start = chunk.text_delta.endswith("\n")
        elif message.channel == CHANNEL_ERROR and not isinstance(message.payload, ProtocolError):
            self._ensure_newline()
            self._console.print(Text(f"Error: {message.payload}", style="bold red"))
        elif message.channel == CHANNEL_COMPLETE and isinstance(message.payload, TurnOutcome):
            self._ensure_newline()
            self._print_status()

    def _ensure_newline(self) -> None:
        if not self._at_line_start:
            self._console.print()
            self._at_line_start = True

    def _print_status(self) -> None:
        view = self._bridge.view
        line = Text()
        line.append(view.status.value, style=STATUS_STYLES.get(view.status, ""))
        if view.total_cost:
            line.append(f"  ${view.total_cost:.4f}", style="dim")
        self._console.print(line)

    def render_transcript(self) -> None:
        """Print the whole live transcript (after switching sessions)."""
        for entry in self._bridge.view.transcript:
            if entry.role is MessageRole.USER:
                self._console.print(Text(f"> {entry.content}", style="bold"))
            else:
                self._console.print(RichMarkdown(entry.content or ""))
                for tool in entry.tool_use:
                    self._console.print(Text(f"  ⚙ {tool.name}", style="dim cyan"))

    def render_sessions(self) -> None:
        sessions = self._bridge.sessions()
        if not sessions:
            self._console.print("No conversations yet.", style="dim")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Project")
        table.add_column("Msgs", justify="right")
        table.add_column("Cost", justify="right")
        active = self._bridge.active_session
        for i, summary in enumerate(sessions, start=1):
            marker = "*" if summary.id == active else ""
            table.add_row(
                f"{marker}{i}",
                summary.title,
                summary.project_name,
                str(summary.message_count),
                f"${summary.total_cost:.4f}",
            )
        self._console.print(table)

    # ── Commands ──

    def _resolve_session(self, ref: str) -> str | None:
        sessions = self._bridge.sessions()
        if ref.isdigit():
            index = int(ref) - 1
            return sessions[index].id if 0 <= index < len(sessions) else None
        matches = [s.id for s in sessions if s.id.startswith(ref)]
        return matches[0] if len(matches) == 1 else None

    async def handle_line(self, line: str) -> bool:
        """Handle one input line. Returns False when the user quits."""
        text = line.strip()
        if not text:
            return True
        if not text.startswith("/"):
            await self.send(text)
            return True

        command, _, arg = text.partition(" ")
        arg = arg.strip()
        if command in ("/quit", "/exit"):
            return False
        if command == "/help":
            self._console.print(HELP_TEXT, markup=False)
        elif command == "/new":
            self._bridge.new_chat()
            self._console.print("New conversation.", style="dim")
        elif command == "/sessions":
            self.render_sessions()
        elif command in ("/switch", "/delete"):
            key = self._resolve_session(arg) if arg else None
            if key is None:
                self._console.print(f"No conversation matches {arg!r}.", style="red")
            elif command == "/switch":
                self._bridge.select_session(key)
                self.render_transcript()
            else:
                self._bridge.delete_session(key)
                self._console.print("Deleted.", style="dim")
        elif command == "/model":
            if arg:
                self._bridge.set_model(arg)
            self._console.print(f"Model: {self._bridge.model}")
        elif command == "/cd":
            chosen = await self._bridge.select_folder(lambda: arg or None)
            if chosen:
                self._console.print(f"Project: {chosen}")
            else:
                self._console.print(f"Not a directory: {arg!r}", style="red")
        else:
            self._console.print(f"Unknown command {command}. Try /help.", style="red")
        return True

    async def send(self, prompt: str) -> None:
        try:
            turn = await self._bridge.send_message(prompt)
        except ProjectNotSelectedError as exc:
            self._console.print(f"{exc} Use /cd PATH.", style="red")
            return
        except TurnInProgressError as exc:
            self._console.print(str(exc), style="red")
            return

        self._at_line_start = True
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._interrupt)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False
        try:
            await self._bridge.wait_for_turn(turn)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

    def _interrupt(self) -> None:
        if self._bridge.stop():
            self._ensure_newline()
            self._console.print("Stopped.", style="yellow")

    async def run(self) -> None:
        self._console.print(Text("visual-agent", style="bold"), Text("(type /help for commands)", style="dim"))
        if self._bridge.project_dir:
            self._console.print(f"Project: {self._bridge.project_dir}", style="dim")
        consumer = asyncio.create_task(self._bridge.run())
        try:
            while True:
                try:
                    line = await asyncio.to_thread(self._input, "> ")
                except (EOFError, KeyboardInterrupt):
                    break
                if not await self.handle_line(line):
                    break
        finally:
            await self._bridge.shutdown()
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

"""Chat controller between the frontends and the turn engine.

One ChatBridge per top-level application context. It owns the
orchestrator, the event bus, the live reducer, the session cache and the
two JSON stores, and implements the user actions: send, stop, new chat,
select and delete session.

Routing rules for transport messages (see process()):

* messages from a turn older than the conversation's latest are dropped;
* the active conversation folds into the live reducer;
* any other conversation folds into its cached snapshot, so a turn left
  running in the background is still up to date when switched back to.
"""
from __future__ import annotations

import asyncio
import collections
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from visual_agent.adapters.event_bus import (
    CHANNEL_COMPLETE,
    CHANNEL_ERROR,
    CHANNEL_EVENT,
    EventBus,
    TransportMessage,
)
from visual_agent.adapters.events import AgentEvent, TurnOutcome
from visual_agent.engine.config import EngineConfig, deliver
from visual_agent.engine.errors import (
    ProcessError,
    ProjectNotSelectedError,
    ProtocolError,
    TransportError,
    TurnInProgressError,
)
from visual_agent.engine.orchestrator import AgentProcessOrchestrator, Turn
from visual_agent.handlers.reducer import SessionReducer
from visual_agent.handlers.session_cache import SessionCache
from visual_agent.shared.models.session import (
    SessionSnapshot,
    SessionStatus,
    SessionSummary,
    ViewModel,
)
from visual_agent.shared.services.session_index import SessionIndex
from visual_agent.shared.services.settings_store import (
    LAST_PROJECT_KEY,
    MODEL_KEY,
    SettingsStore,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 40

# Returns a directory path, or None when the user cancels.
FolderPicker = Callable[[], "Awaitable[str | None] | str | None"]
MessageObserver = Callable[[TransportMessage], "Awaitable[None] | None"]


def make_title(prompt: str) -> str:
    """Session title from the first prompt of a conversation."""
    text = " ".join(prompt.split())
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


class ChatBridge:
    """Wires orchestrator, bus, reducer and cache for one application context."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        orchestrator: AgentProcessOrchestrator | None = None,
        bus: EventBus | None = None,
        settings: SettingsStore | None = None,
        index: SessionIndex | None = None,
        folder_picker: FolderPicker | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_env()
        self.orchestrator = orchestrator or AgentProcessOrchestrator.from_config(self.config)
        self.bus = bus or EventBus(maxsize=self.config.event_queue_size)
        self.reducer = SessionReducer()
        self.cache = SessionCache(self.reducer)
        self.settings = settings or SettingsStore(self.config.settings_path)
        self.index = index or SessionIndex(self.config.sessions_path)
        self._folder_picker = folder_picker
        # Messages from turns below this id are stale, per conversation
        self._min_turn: dict[str, int] = {}
        self._observers: list[MessageObserver] = []
        self._folded_turns: collections.deque[int] = collections.deque(maxlen=64)
        self._turn_waiters: dict[int, asyncio.Future] = {}

    # ── Accessors ───────────────────────────────────────────────────

    @property
    def active_session(self) -> str | None:
        return self.cache.active_key

    @property
    def view(self) -> ViewModel:
        return self.reducer.view

    @property
    def model(self) -> str | None:
        return self.settings.get(MODEL_KEY) or self.config.default_model

    @property
    def project_dir(self) -> str | None:
        return self.settings.get(LAST_PROJECT_KEY)

    def sessions(self) -> list[SessionSummary]:
        return self.index.list()

    def is_running(self, session_key: str | None = None) -> bool:
        key = session_key if session_key is not None else self.cache.active_key
        return key is not None and self.orchestrator.is_running(key)

    def state(self) -> dict[str, Any]:
        return {
            "active_session": self.cache.active_key,
            "running": self.is_running(),
            "model": self.model,
            "project_dir": self.project_dir,
            "view": self.reducer.view.to_dict(),
        }

    def add_observer(self, observer: MessageObserver) -> None:
        """Call *observer* with each transport message after it is folded."""
        self._observers.append(observer)

    def remove_observer(self, observer: MessageObserver) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    # ── User actions ────────────────────────────────────────────────

    async def send_message(
        self,
        prompt: str,
        project_dir: str | None = None,
        model: str | None = None,
        conversation_token: str | None = None,
    ) -> Turn:
        """Start a turn in the active conversation, creating one if needed.

        The turn resumes the conversation token held by the live view
        unless *conversation_token* is given.

        Raises ValueError for an empty prompt, ProjectNotSelectedError
        when no project directory is known, TurnInProgressError when the
        active conversation is still busy.
        """
        text = prompt.strip()
        if not text:
            raise ValueError("prompt is empty")
        project_dir = project_dir or self.project_dir
        if not project_dir:
            raise ProjectNotSelectedError()

        key = self.cache.active_key
        if key is not None and self.orchestrator.is_running(key):
            raise TurnInProgressError(key)

        if key is None:
            key = str(uuid.uuid4())
            summary = SessionSummary(
                id=key,
                title=make_title(text),
                project_name=Path(project_dir).name,
                message_count=1,
            )
            self.index.save(summary)
            self.cache.switch(key)
            logger.info("New session %s: %s", key[:8], summary.title)
        else:
            existing = self.index.load(key)
            count = (existing.message_count if existing else 0) + 1
            updated = self.index.update_metadata(
                key,
                message_count=count,
                total_cost=self.reducer.view.total_cost,
            )
            if updated is None:
                self.index.save(SessionSummary(
                    id=key,
                    title=make_title(text),
                    project_name=Path(project_dir).name,
                    message_count=count,
                    total_cost=self.reducer.view.total_cost,
                ))

        token = conversation_token or self.reducer.view.conversation_token
        chosen_model = model or self.model
        self.reducer.begin_turn(text)
        self._min_turn[key] = self.orchestrator.last_turn_id + 1
        self.bus.attach(self.orchestrator, key)
        turn = await self.orchestrator.execute(
            key,
            text,
            project_dir,
            conversation_token=token,
            model=chosen_model,
        )
        self._min_turn[key] = turn.turn_id
        return turn

    def stop(self) -> bool:
        """Stop the active conversation's turn.

        The view goes idle at once; the process is signalled afterwards
        and whatever it still emits is ignored.
        """
        key = self.cache.active_key
        if key is None:
            return False
        running = self.orchestrator.is_running(key)
        if not running and not self.reducer.view.is_busy:
            return False
        self.reducer.stop()
        logger.info("Stop requested for session %s", key[:8])
        if running:
            return self.orchestrator.stop(key)
        return True

    def new_chat(self) -> None:
        self.cache.switch(None)

    def select_session(self, session_key: str) -> ViewModel:
        self.cache.switch(session_key)
        return self.reducer.view

    def delete_session(self, session_key: str) -> bool:
        """Forget a conversation: its process, snapshot and list entry."""
        if self.orchestrator.is_running(session_key):
            self.orchestrator.stop(session_key)
        self.orchestrator.unsubscribe(session_key)
        if self.cache.active_key == session_key:
            self.cache.switch(None)
        self.cache.evict(session_key)
        self._min_turn.pop(session_key, None)
        removed = self.index.delete(session_key)
        logger.info("Deleted session %s (listed=%s)", session_key[:8], removed)
        return removed

    def set_model(self, alias: str) -> None:
        self.settings.set(MODEL_KEY, alias)

    async def select_folder(self, picker: FolderPicker | None = None) -> str | None:
        """Ask the picker for a project directory and remember it."""
        picker = picker or self._folder_picker
        if picker is None:
            return None
        chosen = picker()
        if inspect.isawaitable(chosen):
            chosen = await chosen
        if not chosen:
            return None
        path = Path(chosen).expanduser()
        if not path.is_dir():
            logger.warning("Selected folder does not exist: %s", path)
            return None
        resolved = str(path.resolve())
        self.settings.set(LAST_PROJECT_KEY, resolved)
        return resolved

    # ── Transport consumption ───────────────────────────────────────

    async def run(self) -> None:
        """Consume the bus until it is closed."""
        async for message in self.bus.consume():
            await self.process(message)

    async def drain(self) -> None:
        """Process whatever is queued right now without waiting."""
        while (message := self.bus.get_nowait()) is not None:
            await self.process(message)

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
        await self.drain()
        self.bus.close()

    async def wait_for_turn(self, turn: Turn) -> None:
        """Wait until the completion of *turn* has been processed."""
        if turn.turn_id in self._folded_turns:
            return
        waiter = self._turn_waiters.get(turn.turn_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._turn_waiters[turn.turn_id] = waiter
        await waiter

    def _mark_folded(self, turn_id: int) -> None:
        self._folded_turns.append(turn_id)
        waiter = self._turn_waiters.pop(turn_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def process(self, message: TransportMessage) -> None:
        try:
            await self._route(message)
        finally:
            if message.channel == CHANNEL_COMPLETE:
                self._mark_folded(message.turn_id)

    async def _route(self, message: TransportMessage) -> None:
        cid = message.conversation_id
        if message.turn_id < self._min_turn.get(cid, 0):
            logger.debug(
                "Dropping stale %s from turn %d for %s",
                message.channel, message.turn_id, cid[:8],
            )
            return

        if cid == self.cache.active_key:
            self._fold(self.reducer, message)
        else:
            snapshot = self.cache.get(cid)
            if snapshot is None:
                logger.debug("Dropping %s for unknown session %s", message.channel, cid[:8])
                return
            scratch = SessionReducer(snapshot.view)
            self._fold(scratch, message)
            self.cache.put(SessionSnapshot.capture(cid, scratch.view))

        if message.channel == CHANNEL_COMPLETE:
            self._record_completion(cid)

        for observer in list(self._observers):
            await deliver(observer, message, channel=message.channel)

    def _fold(self, reducer: SessionReducer, message: TransportMessage) -> None:
        payload = message.payload
        if message.channel == CHANNEL_EVENT:
            if isinstance(payload, AgentEvent):
                reducer.apply(payload)
        elif message.channel == CHANNEL_ERROR:
            self._fold_error(reducer, message.conversation_id, payload)
        elif message.channel == CHANNEL_COMPLETE:
            reducer.handle_complete(payload if isinstance(payload, TurnOutcome) else None)
        else:
            logger.debug("Unknown channel %r", message.channel)

    def _fold_error(self, reducer: SessionReducer, cid: str, error: Any) -> None:
        if isinstance(error, ProtocolError):
            logger.warning("Session %s: %s", cid[:8], error)
            return
        if isinstance(error, TransportError):
            logger.debug("Session %s transport error: %s", cid[:8], error)
            return
        if reducer.view.status is SessionStatus.ERROR and isinstance(error, ProcessError):
            # The stream already reported the failure
            logger.info("Session %s: %s", cid[:8], error)
            return
        logger.error("Session %s: %s", cid[:8], error)
        reducer.fail(str(error))

    def _record_completion(self, cid: str) -> None:
        snapshot = None if cid == self.cache.active_key else self.cache.get(cid)
        view = self.reducer.view if snapshot is None else snapshot.view
        self.index.update_metadata(cid, total_cost=view.total_cost)


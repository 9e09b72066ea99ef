"""Session state reducer.

Folds the ordered AgentEvent stream of one conversation into its
ViewModel. Every transition builds a new ViewModel and swaps it in whole,
so transcript, status, tools and cost always reflect the same event.

The entry currently being extended by chunk events is tracked by id in
``ViewModel.streaming_entry_id`` and finalized explicitly on result,
fatal, completion and stop. A result or fatal event closes the turn:
chunks and init records after it are ignored until begin_turn().
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable

from visual_agent.adapters.events import (
    AgentEvent,
    AssistantChunk,
    Fatal,
    Init,
    Result,
    TurnOutcome,
)
from visual_agent.shared.models.message import ChatMessage, MessageRole
from visual_agent.shared.models.session import SessionStatus, ViewModel

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ViewModel], None]


def _finalize_streaming(view: ViewModel) -> ViewModel:
    """Return *view* with its streaming entry (if any) marked final."""
    if view.streaming_entry_id is None:
        return view
    transcript = [
        dataclasses.replace(m, is_streaming=False)
        if m.id == view.streaming_entry_id else m
        for m in view.transcript
    ]
    return dataclasses.replace(view, transcript=transcript, streaming_entry_id=None)


class SessionReducer:
    """Owns the live ViewModel of the active conversation."""

    def __init__(
        self,
        view: ViewModel | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self._view = view if view is not None else ViewModel()
        self._on_change = on_change

    @property
    def view(self) -> ViewModel:
        return self._view

    def set_listener(self, on_change: ChangeListener | None) -> None:
        self._on_change = on_change

    def _swap(self, view: ViewModel) -> ViewModel:
        self._view = view
        if self._on_change is not None:
            try:
                self._on_change(view)
            except Exception:
                logger.debug("View change listener failed", exc_info=True)
        return view

    # ── Event folding ───────────────────────────────────────────────

    def apply(self, event: AgentEvent) -> ViewModel:
        """Fold one event. Unknown event types leave the view unchanged."""
        if isinstance(event, Init):
            return self.handle_init(event)
        if isinstance(event, AssistantChunk):
            return self.handle_chunk(event)
        if isinstance(event, Result):
            return self.handle_result(event)
        if isinstance(event, Fatal):
            return self.handle_fatal(event)
        logger.debug("Ignoring unknown event %r", getattr(event, "event_type", event))
        return self._view

    def handle_init(self, event: Init) -> ViewModel:
        if self._view.cancelled or self._view.finalized:
            return self._view
        return self._swap(dataclasses.replace(
            self._view,
            conversation_token=event.conversation_token or self._view.conversation_token,
            status=SessionStatus.THINKING,
        ))

    def handle_chunk(self, event: AssistantChunk) -> ViewModel:
        view = self._view
        if view.cancelled or view.finalized:
            return view
        tools = list(event.tool_invocations)
        if not event.text_delta and not tools:
            return view

        transcript = list(view.transcript)
        streaming_id = view.streaming_entry_id
        index = next(
            (i for i, m in enumerate(transcript) if m.id == streaming_id),
            None,
        ) if streaming_id is not None else None

        if index is None:
            entry = ChatMessage(
                role=MessageRole.ASSISTANT,
                content=event.text_delta or "",
                is_streaming=True,
                tool_use=tools,
            )
            transcript.append(entry)
            streaming_id = entry.id
        else:
            entry = transcript[index]
            transcript[index] = dataclasses.replace(
                entry,
                content=entry.content + (event.text_delta or ""),
                tool_use=entry.tool_use + tools,
            )

        changes = {"transcript": transcript, "streaming_entry_id": streaming_id}
        if tools:
            # Replace, never merge, the active tool list
            changes["active_tools"] = tools
            changes["status"] = SessionStatus.EXECUTING
        return self._swap(dataclasses.replace(view, **changes))

    def handle_result(self, event: Result) -> ViewModel:
        if self._view.cancelled:
            return self._view
        view = _finalize_streaming(self._view)
        return self._swap(dataclasses.replace(
            view,
            status=SessionStatus.DONE if event.succeeded else SessionStatus.ERROR,
            total_cost=event.cost,
            active_tools=[],
            finalized=True,
        ))

    def handle_fatal(self, event: Fatal) -> ViewModel:
        if self._view.cancelled:
            return self._view
        view = _finalize_streaming(self._view)
        entry = ChatMessage(role=MessageRole.ASSISTANT, content=f"Error: {event.message}")
        return self._swap(dataclasses.replace(
            view,
            transcript=view.transcript + [entry],
            status=SessionStatus.ERROR,
            active_tools=[],
            finalized=True,
        ))

    def fail(self, message: str) -> ViewModel:
        """Fold a process-layer failure the same way as a Fatal event."""
        return self.handle_fatal(Fatal(message=message))

    def handle_complete(self, outcome: TurnOutcome | None = None) -> ViewModel:
        """Completion signal: the turn is over whatever happened."""
        view = self._view
        if view.cancelled:
            return view
        closed = _finalize_streaming(view)
        status = SessionStatus.DONE if view.is_busy else view.status
        if closed is view and status is view.status and not view.active_tools:
            return view
        return self._swap(dataclasses.replace(closed, status=status, active_tools=[]))

    # ── Local commands ──────────────────────────────────────────────

    def begin_turn(self, prompt: str) -> ChatMessage:
        """Record the user's prompt and move to thinking."""
        view = _finalize_streaming(self._view)
        entry = ChatMessage(role=MessageRole.USER, content=prompt)
        self._swap(dataclasses.replace(
            view,
            transcript=view.transcript + [entry],
            status=SessionStatus.THINKING,
            active_tools=[],
            cancelled=False,
            finalized=False,
        ))
        return entry

    def stop(self) -> ViewModel:
        """User stop: idle immediately, ahead of process termination.

        Whatever the process still emits for this turn is ignored.
        """
        view = _finalize_streaming(self._view)
        return self._swap(dataclasses.replace(
            view,
            status=SessionStatus.IDLE,
            active_tools=[],
            cancelled=True,
        ))

    def reset(self) -> ViewModel:
        """Blank idle view for a new conversation."""
        return self._swap(ViewModel())

    # ── Cache support ───────────────────────────────────────────────

    def capture(self) -> ViewModel:
        return self._view.copy()

    def restore(self, view: ViewModel) -> ViewModel:
        return self._swap(view.copy())

"""Exception hierarchy for the turn engine.

A user stop has no exception here: cancellation is reported through
``TurnOutcome.cancelled``.
"""
from __future__ import annotations


class VisualAgentError(Exception):
    """Base exception for all visual-agent errors."""


class ProtocolError(VisualAgentError):
    """A line on the agent's output stream could not be decoded."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:117] + "..."
        super().__init__(f"Malformed event record ({reason}): {preview}")


class ProcessError(VisualAgentError):
    """The agent process could not be spawned or exited abnormally."""
    def __init__(self, detail: str, returncode: int | None = None):
        self.detail = detail
        self.returncode = returncode
        if returncode is None:
            super().__init__(detail)
        else:
            super().__init__(f"Agent exited with code {returncode}: {detail}")


class TransportError(VisualAgentError):
    """Delivery to a torn-down consumer failed. Logged and dropped."""


class TurnInProgressError(VisualAgentError):
    """execute() was called while the conversation already has a live turn."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"Conversation {conversation_id} already has a turn in flight"
        )


class ProjectNotSelectedError(VisualAgentError):
    """A prompt was sent before any working directory was chosen."""
    def __init__(self) -> None:
        super().__init__("Select a project folder before sending a prompt.")

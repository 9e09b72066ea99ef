"""Abstract base for agent CLI providers.

A provider knows how to turn one conversational turn into an argv for
its CLI. The orchestrator owns spawning, reading and cancellation; the
provider only shapes the command line.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
import logging
import shutil

logger = logging.getLogger(__name__)


@dataclass
class TurnRequest:
    """Parameters of one execute() call."""
    prompt: str
    cwd: str
    conversation_token: str | None = None
    model: str | None = None


class Provider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude')."""

    @abc.abstractmethod
    def build_command(self, request: TurnRequest) -> list[str]:
        """Return the argv that runs *request* and streams JSON lines."""

    def is_available(self) -> bool:
        """Check if the provider's CLI is installed."""
        return shutil.which(self.command) is not None

    @property
    @abc.abstractmethod
    def command(self) -> str:
        """The resolved CLI binary."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s for provider %s",
                command, fallback, self.name,
            )
            return fallback
        return command or fallback or ""

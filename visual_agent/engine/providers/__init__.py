"""Agent CLI providers."""
from .base import Provider, TurnRequest
from .claude_provider import ClaudeProvider

__all__ = [
    "Provider",
    "TurnRequest",
    "ClaudeProvider",
]

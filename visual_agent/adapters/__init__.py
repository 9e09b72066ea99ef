"""Adapters package - Bridge between the engine and UI frontends.

Holds the event types, the transport bus, and the ChatBridge controller
that connects the orchestrator to the console and HTTP frontends.
"""
from __future__ import annotations

__all__ = [
    "ChatBridge",
    "EventBus",
    "TransportMessage",
]

from visual_agent.adapters.event_bus import EventBus, TransportMessage


def __getattr__(name: str):
    # bridge imports the engine, which imports adapters.events
    if name == "ChatBridge":
        from visual_agent.adapters.bridge import ChatBridge
        return ChatBridge
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Visual Agent engine: runs the agent CLI per turn and decodes its stream."""
from .config import EngineConfig
from .errors import (
    ProcessError,
    ProjectNotSelectedError,
    ProtocolError,
    TransportError,
    TurnInProgressError,
    VisualAgentError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "AgentProcessOrchestrator",
    "Turn",
    "decode_line",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    "discover_config_path",
    # Providers (lazy import)
    "Provider",
    "ClaudeProvider",
    # Errors
    "ProcessError",
    "ProjectNotSelectedError",
    "ProtocolError",
    "TransportError",
    "TurnInProgressError",
    "VisualAgentError",
]


def __getattr__(name: str):
    if name == "AgentProcessOrchestrator":
        from .orchestrator import AgentProcessOrchestrator
        return AgentProcessOrchestrator
    if name == "Turn":
        from .orchestrator import Turn
        return Turn
    if name == "decode_line":
        from .stream_parser import decode_line
        return decode_line
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "discover_config_path":
        from .yaml_config import discover_config_path
        return discover_config_path
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "ClaudeProvider":
        from .providers.claude_provider import ClaudeProvider
        return ClaudeProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

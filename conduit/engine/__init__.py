"""Session engine: process supervision, stream decoding and session state."""
from .models import (
    ActiveBinding,
    ErrorInfo,
    PartialBlock,
    PermissionMode,
    Session,
    StreamPhase,
    StreamState,
    ToolCall,
)
from .config import EngineConfig
from .errors import (
    AlreadyBoundError,
    BusyError,
    ConduitError,
    ContextBindingConflictError,
    InvalidPermissionModeError,
    NotBoundError,
    NotRunningError,
    SessionActiveElsewhereError,
    SessionNotFoundError,
    SpawnError,
)

__all__ = [
    # Components (lazy import to avoid circular deps)
    "CommandFacade",
    "ConflictResolver",
    "ProcessSupervisor",
    "SessionStateStore",
    "StreamDecoder",
    "StreamJsonTranscoder",
    # Models
    "ActiveBinding",
    "ErrorInfo",
    "PartialBlock",
    "PermissionMode",
    "Session",
    "StreamPhase",
    "StreamState",
    "ToolCall",
    # Config
    "EngineConfig",
    "load_yaml_config",
    # Launchers (lazy import)
    "ProcessLauncher",
    "ClaudeLauncher",
    # Registry (lazy import)
    "InMemorySessionRegistry",
    # Errors
    "AlreadyBoundError",
    "BusyError",
    "ConduitError",
    "ContextBindingConflictError",
    "InvalidPermissionModeError",
    "NotBoundError",
    "NotRunningError",
    "SessionActiveElsewhereError",
    "SessionNotFoundError",
    "SpawnError",
]


def __getattr__(name: str):
    if name == "CommandFacade":
        from .facade import CommandFacade
        return CommandFacade
    if name == "ConflictResolver":
        from .conflicts import ConflictResolver
        return ConflictResolver
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "SessionStateStore":
        from .state_store import SessionStateStore
        return SessionStateStore
    if name == "StreamDecoder":
        from .decoder import StreamDecoder
        return StreamDecoder
    if name == "StreamJsonTranscoder":
        from .transcode import StreamJsonTranscoder
        return StreamJsonTranscoder
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ProcessLauncher":
        from .providers.base import ProcessLauncher
        return ProcessLauncher
    if name == "ClaudeLauncher":
        from .providers.claude_provider import ClaudeLauncher
        return ClaudeLauncher
    if name == "InMemorySessionRegistry":
        from .session_registry import InMemorySessionRegistry
        return InMemorySessionRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Core data models for the session engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports. Everything handed to callers is frozen;
the state store keeps its own mutable records and publishes
snapshots built from them.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Permission modes are discovered from the assistant binary at runtime,
# so they stay plain strings rather than an Enum.
PermissionMode = str

DEFAULT_PERMISSION_MODES: list[PermissionMode] = [
    "default",
    "plan",
    "acceptEdits",
    "bypassPermissions",
    "delegate",
    "dontAsk",
]


class StreamPhase(str, Enum):
    """Decoder phases. See phases.py for transition rules."""
    IDLE = "idle"
    THINKING = "thinking"
    EMITTING_TEXT = "emitting_text"
    IN_TOOL_BLOCK = "in_tool_block"
    ERROR = "error"


def make_session_id() -> str:
    return str(uuid.uuid4())


def make_process_id() -> str:
    return uuid.uuid4().hex[:16]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Session:
    """A persisted conversation, owned by the session registry."""
    session_id: str
    project_path: str
    project_name: str = ""
    last_message_at: datetime | None = None
    preview_message: str | None = None
    created_at: datetime | None = None
    message_count: int = 0
    git_branch: str | None = None


@dataclass(frozen=True)
class ErrorInfo:
    """Why a stream ended badly."""
    message: str
    kind: str = "crash"  # "crash", "spawn", "result", "decode"
    exit_code: int | None = None
    stderr: str = ""


@dataclass(frozen=True)
class PartialBlock:
    """A structured block that was opened but not closed."""
    kind: str
    tool_id: str = ""
    name: str = ""
    body: str = ""


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation seen on the stream, with its result once known."""
    tool_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    result: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class ActiveBinding:
    """A session currently driven by one running process in one context."""
    session_id: str
    process_id: str
    context_id: str
    is_streaming: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    project_path: str = ""
    permission_mode: PermissionMode = "default"


@dataclass(frozen=True)
class StreamState:
    """Immutable snapshot of one process's decode/streaming state."""
    process_id: str
    session_id: str = ""
    text_buffer: str = ""
    thinking_started_at: datetime | None = None
    thinking_text: str = ""
    open_tool_block: PartialBlock | None = None
    cost_so_far: float | None = None
    last_error: ErrorInfo | None = None
    phase: StreamPhase = StreamPhase.IDLE
    is_streaming: bool = False
    tool_calls: tuple[ToolCall, ...] = ()
    turns_completed: int = 0
    retired: bool = False

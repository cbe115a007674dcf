"""Stream event types produced by the decoder.

Each event is a small dataclass tagged with ``event_type`` so it can
be matched structurally or serialized to a plain dict for JSON
consumers (the CLI's ``--json`` mode, event callbacks).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from conduit.engine.models import ErrorInfo


@dataclass
class StreamEvent:
    """Base event decoded from one process's output."""
    event_type: str = ""


@dataclass
class TextDelta(StreamEvent):
    event_type: str = "text_delta"
    text: str = ""


@dataclass
class ThinkingStarted(StreamEvent):
    event_type: str = "thinking_started"


@dataclass
class ThinkingDelta(StreamEvent):
    event_type: str = "thinking_delta"
    text: str = ""


@dataclass
class ToolUseBegin(StreamEvent):
    """A tool block that never closed; ``partial`` marks it incomplete."""
    event_type: str = "tool_use_begin"
    tool_id: str = ""
    name: str = ""
    partial_input: str = ""
    partial: bool = True


@dataclass
class ToolUseComplete(StreamEvent):
    event_type: str = "tool_use_complete"
    tool_id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult(StreamEvent):
    event_type: str = "tool_result"
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False
    partial: bool = False


@dataclass
class CostUpdate(StreamEvent):
    event_type: str = "cost_update"
    cost_usd: float = 0.0


@dataclass
class Completed(StreamEvent):
    event_type: str = "completed"
    is_error: bool = False
    subtype: str = ""
    errors: list[str] = field(default_factory=list)


@dataclass
class Fatal(StreamEvent):
    event_type: str = "fatal"
    error: ErrorInfo | None = None


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "text_delta": TextDelta,
    "thinking_started": ThinkingStarted,
    "thinking_delta": ThinkingDelta,
    "tool_use_begin": ToolUseBegin,
    "tool_use_complete": ToolUseComplete,
    "tool_result": ToolResult,
    "cost_update": CostUpdate,
    "completed": Completed,
    "fatal": Fatal,
}


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, ErrorInfo):
            val = {
                "message": val.message,
                "kind": val.kind,
                "exit_code": val.exit_code,
                "stderr": val.stderr,
            }
        d[f] = val
    # Use "event" key instead of "event_type" for consistency with callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> StreamEvent:
    """Convert a callback dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, StreamEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    if isinstance(filtered.get("error"), dict):
        filtered["error"] = ErrorInfo(**filtered["error"])
    return cls(**filtered)

"""Decoder phase state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──┬──> THINKING ──────────────────────┐
           │                                   │
           ├──> EMITTING_TEXT ──┬──> THINKING  ├──> IDLE
           │                    │              │
           │                    └──> IN_TOOL_BLOCK
           │                                   │
           └──> IN_TOOL_BLOCK ─────────────────┘

    Any state ──> ERROR  (terminal)
"""
from __future__ import annotations

from .models import StreamPhase

VALID_TRANSITIONS: dict[StreamPhase, set[StreamPhase]] = {
    StreamPhase.IDLE: {
        StreamPhase.THINKING,
        StreamPhase.EMITTING_TEXT,
        StreamPhase.IN_TOOL_BLOCK,
        StreamPhase.ERROR,
    },
    StreamPhase.THINKING: {
        StreamPhase.IDLE,
        StreamPhase.ERROR,
    },
    StreamPhase.EMITTING_TEXT: {
        StreamPhase.THINKING,
        StreamPhase.IN_TOOL_BLOCK,
        StreamPhase.IDLE,
        StreamPhase.ERROR,
    },
    StreamPhase.IN_TOOL_BLOCK: {
        StreamPhase.IDLE,
        StreamPhase.ERROR,
    },
    StreamPhase.ERROR: set(),
}


def validate_transition(current: StreamPhase, target: StreamPhase) -> None:
    """Validate a phase transition. Raises ValueError if invalid.

    Staying in the same phase is always allowed except in ERROR.
    """
    if current == target and current != StreamPhase.ERROR:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid phase transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )

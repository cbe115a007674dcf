"""Single source of truth for bindings and per-process stream state.

Bindings map a running process to the session it drives and the
context (window) that owns it. Stream state is folded from decoder
events and published as immutable snapshots.

Mutations on one process id are serialised by a lock for that id;
different processes never contend.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from conduit.adapters.event_bus import SnapshotBus, Subscription
from conduit.adapters.events import (
    Completed,
    CostUpdate,
    Fatal,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingStarted,
    ToolResult,
    ToolUseBegin,
    ToolUseComplete,
)

from .config import EngineConfig
from .errors import (
    AlreadyBoundError,
    BusyError,
    ContextBindingConflictError,
    NotBoundError,
    NotRunningError,
)
from .models import (
    ActiveBinding,
    ErrorInfo,
    PartialBlock,
    PermissionMode,
    StreamPhase,
    StreamState,
    ToolCall,
    _utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class _LiveState:
    """Mutable per-process record. Only snapshots leave the store."""
    process_id: str
    session_id: str
    text_buffer: str = ""
    thinking_started_at: datetime | None = None
    thinking_text: str = ""
    open_tool_block: PartialBlock | None = None
    cost_so_far: float | None = None
    last_error: ErrorInfo | None = None
    phase: StreamPhase = StreamPhase.IDLE
    is_streaming: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)
    turns_completed: int = 0

    def snapshot(self, retired: bool = False) -> StreamState:
        return StreamState(
            process_id=self.process_id,
            session_id=self.session_id,
            text_buffer=self.text_buffer,
            thinking_started_at=self.thinking_started_at,
            thinking_text=self.thinking_text,
            open_tool_block=self.open_tool_block,
            cost_so_far=self.cost_so_far,
            last_error=self.last_error,
            phase=self.phase,
            is_streaming=self.is_streaming,
            tool_calls=tuple(self.tool_calls),
            turns_completed=self.turns_completed,
            retired=retired,
        )


class SessionStateStore:
    """Bindings, stream state and snapshot subscriptions."""

    def __init__(
        self,
        *,
        retired_limit: int = 64,
        queue_size: int = 256,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._bindings: dict[str, ActiveBinding] = {}
        self._states: dict[str, _LiveState] = {}
        self._by_session: dict[str, set[str]] = {}
        self._by_context: dict[tuple[str, str], str] = {}
        self._retired: OrderedDict[str, StreamState] = OrderedDict()
        self._retired_limit = retired_limit
        self._locks: dict[str, asyncio.Lock] = {}
        self._clock = clock or _utcnow
        self._bus = SnapshotBus(maxsize=queue_size)

    @classmethod
    def from_config(cls, config: EngineConfig) -> SessionStateStore:
        return cls(
            retired_limit=config.retired_state_limit,
            queue_size=config.subscriber_queue_size,
        )

    def _lock_for(self, process_id: str) -> asyncio.Lock:
        """The lock of a bound process.

        Unbound ids get a fresh lock that is never stored; only a
        successful bind registers one, and unbind drops it.
        """
        lock = self._locks.get(process_id)
        if lock is None:
            lock = asyncio.Lock()
        return lock

    def _publish(self, state: _LiveState, retired: bool = False) -> StreamState:
        snap = state.snapshot(retired=retired)
        self._bus.publish(snap)
        return snap

    # ── Bindings ──

    async def bind(
        self,
        session_id: str,
        process_id: str,
        *,
        context_id: str,
        project_path: str = "",
        permission_mode: PermissionMode = "default",
    ) -> ActiveBinding:
        """Record that *process_id* drives *session_id* for *context_id*."""
        lock = self._lock_for(process_id)
        async with lock:
            existing = self._bindings.get(process_id)
            if existing is not None:
                raise AlreadyBoundError(process_id, existing.session_id)
            held = self._by_context.get((context_id, session_id))
            if held is not None:
                raise ContextBindingConflictError(context_id, session_id, held)

            binding = ActiveBinding(
                session_id=session_id,
                process_id=process_id,
                context_id=context_id,
                started_at=self._clock(),
                project_path=project_path,
                permission_mode=permission_mode,
            )
            self._bindings[process_id] = binding
            self._locks[process_id] = lock
            self._by_session.setdefault(session_id, set()).add(process_id)
            self._by_context[(context_id, session_id)] = process_id
            state = _LiveState(process_id=process_id, session_id=session_id)
            self._states[process_id] = state
            self._retired.pop(process_id, None)
            logger.info(
                "Bound session %s to process %s (context %s)",
                session_id[:8], process_id[:8], context_id[:8],
            )
            self._publish(state)
            return binding

    async def unbind(self, process_id: str) -> StreamState | None:
        """Remove the binding and retire its stream state.

        Returns the final snapshot, or None if the process was not bound.
        Safe to call more than once.
        """
        async with self._lock_for(process_id):
            binding = self._bindings.pop(process_id, None)
            if binding is None:
                logger.debug("unbind: process %s already unbound", process_id[:8])
                return None
            holders = self._by_session.get(binding.session_id)
            if holders is not None:
                holders.discard(process_id)
                if not holders:
                    del self._by_session[binding.session_id]
            key = (binding.context_id, binding.session_id)
            if self._by_context.get(key) == process_id:
                del self._by_context[key]

            state = self._states.pop(process_id)
            if state.is_streaming:
                state.is_streaming = False
            final = self._publish(state, retired=True)
            if self._retired_limit > 0:
                self._retired[process_id] = final
                while len(self._retired) > self._retired_limit:
                    self._retired.popitem(last=False)
            logger.info(
                "Unbound process %s (session %s, %d turn(s))",
                process_id[:8], binding.session_id[:8], final.turns_completed,
            )
        self._locks.pop(process_id, None)
        return final

    # ── Turns ──

    async def begin_turn(
        self, process_id: str, context_id: str | None = None,
    ) -> None:
        """Mark a turn as streaming. Raises BusyError if one already is."""
        async with self._lock_for(process_id):
            binding = self._bindings.get(process_id)
            if binding is None or (
                context_id is not None and binding.context_id != context_id
            ):
                raise NotBoundError(process_id, context_id)
            state = self._states[process_id]
            if state.phase == StreamPhase.ERROR:
                raise NotRunningError(process_id, "stream ended with an error")
            if state.is_streaming:
                raise BusyError(process_id)
            state.is_streaming = True
            if state.last_error is not None and state.last_error.kind == "result":
                state.last_error = None
            self._bindings[process_id] = dataclasses.replace(
                binding, is_streaming=True,
            )
            self._publish(state)

    async def abort_turn(self, process_id: str) -> None:
        """Undo begin_turn after a failed send."""
        async with self._lock_for(process_id):
            state = self._states.get(process_id)
            if state is None:
                return
            state.is_streaming = False
            self._sync_binding(process_id, state)
            self._publish(state)

    def _sync_binding(self, process_id: str, state: _LiveState) -> None:
        binding = self._bindings.get(process_id)
        if binding is not None and binding.is_streaming != state.is_streaming:
            self._bindings[process_id] = dataclasses.replace(
                binding, is_streaming=state.is_streaming,
            )

    # ── Events ──

    async def apply_event(self, process_id: str, event: StreamEvent) -> bool:
        """Fold one decoder event into the process's stream state.

        Events for processes that are no longer bound are stale and are
        dropped; returns False in that case.
        """
        async with self._lock_for(process_id):
            state = self._states.get(process_id)
            if state is None:
                logger.debug(
                    "Dropping stale %s for unbound process %s",
                    event.event_type, process_id[:8],
                )
                return False
            self._fold(state, event)
            self._sync_binding(process_id, state)
            self._publish(state)
            return True

    def _fold(self, state: _LiveState, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            state.text_buffer += event.text
            state.thinking_started_at = None
            state.phase = StreamPhase.EMITTING_TEXT
        elif isinstance(event, ThinkingStarted):
            state.thinking_started_at = self._clock()
            state.thinking_text = ""
            state.phase = StreamPhase.THINKING
        elif isinstance(event, ThinkingDelta):
            state.thinking_text += event.text
        elif isinstance(event, ToolUseBegin):
            state.open_tool_block = PartialBlock(
                kind="tool_use",
                tool_id=event.tool_id,
                name=event.name,
                body=event.partial_input,
            )
            state.phase = StreamPhase.IN_TOOL_BLOCK
        elif isinstance(event, ToolUseComplete):
            state.tool_calls.append(ToolCall(
                tool_id=event.tool_id, name=event.name, input=dict(event.input),
            ))
            state.open_tool_block = None
            state.thinking_started_at = None
            state.phase = StreamPhase.IDLE
        elif isinstance(event, ToolResult):
            self._attach_result(state, event)
            state.phase = StreamPhase.IDLE
        elif isinstance(event, CostUpdate):
            state.cost_so_far = event.cost_usd
        elif isinstance(event, Completed):
            state.is_streaming = False
            state.thinking_started_at = None
            state.turns_completed += 1
            state.phase = StreamPhase.IDLE
            if event.is_error:
                state.last_error = ErrorInfo(
                    message="; ".join(event.errors) or event.subtype or "turn failed",
                    kind="result",
                )
        elif isinstance(event, Fatal):
            state.last_error = event.error or ErrorInfo(message="stream failed")
            state.is_streaming = False
            state.thinking_started_at = None
            state.phase = StreamPhase.ERROR
        else:
            logger.debug("Ignoring unknown event %r", event.event_type)

    def _attach_result(self, state: _LiveState, event: ToolResult) -> None:
        for i in range(len(state.tool_calls) - 1, -1, -1):
            call = state.tool_calls[i]
            if call.tool_id == event.tool_use_id:
                state.tool_calls[i] = dataclasses.replace(
                    call, result=event.content, is_error=event.is_error,
                )
                return
        if event.partial:
            state.open_tool_block = PartialBlock(
                kind="tool_result", tool_id=event.tool_use_id, body=event.content,
            )
        logger.debug(
            "tool_result for unknown tool %s on process %s",
            event.tool_use_id, state.process_id[:8],
        )

    # ── Readers ──

    def binding(self, process_id: str) -> ActiveBinding | None:
        return self._bindings.get(process_id)

    def bindings(self) -> list[ActiveBinding]:
        return list(self._bindings.values())

    def bindings_for_context(self, context_id: str) -> list[ActiveBinding]:
        return [b for b in self._bindings.values() if b.context_id == context_id]

    def binding_for_session(
        self, context_id: str, session_id: str,
    ) -> ActiveBinding | None:
        process_id = self._by_context.get((context_id, session_id))
        return self._bindings.get(process_id) if process_id else None

    def snapshot(self, process_id: str) -> StreamState | None:
        """Live state, or the retired final state, or None."""
        state = self._states.get(process_id)
        if state is not None:
            return state.snapshot()
        return self._retired.get(process_id)

    def process_ids_for_session(self, session_id: str) -> frozenset[str]:
        return frozenset(self._by_session.get(session_id, ()))

    def subscribe(self, process_id: str | None = None) -> Subscription:
        """Receive a snapshot after every change to *process_id* (or all)."""
        return self._bus.subscribe(process_id)

    def close(self) -> None:
        self._bus.close()

"""Command entry points for one owning context (a window, a CLI run).

The façade sequences supervisor and store calls so that a process is
never visible without a binding, and a binding never outlives its
process:

    start/resume:  Supervisor.start → Store.bind → Supervisor.attach
    send:          Store.begin_turn → Supervisor.send
    stop:          Supervisor.stop  → Store.unbind
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable

from conduit.adapters.event_bus import Subscription

from .config import EngineConfig
from .conflicts import ConflictResolver
from .errors import (
    ConduitError,
    InvalidPermissionModeError,
    NotBoundError,
    SessionActiveElsewhereError,
    SessionNotFoundError,
)
from .models import (
    DEFAULT_PERMISSION_MODES,
    ActiveBinding,
    PermissionMode,
    StreamState,
    make_session_id,
)
from .permission_modes import discover_permission_modes
from .providers.base import AvailabilityStatus
from .session_registry import SessionRegistry
from .state_store import SessionStateStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

ModeDiscovery = Callable[[], Awaitable[list[PermissionMode]]]


class CommandFacade:
    """Session commands scoped to one context id."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        store: SessionStateStore,
        *,
        context_id: str | None = None,
        resolver: ConflictResolver | None = None,
        registry: SessionRegistry | None = None,
        mode_discovery: ModeDiscovery | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._store = store
        self.context_id = context_id or uuid.uuid4().hex[:12]
        self._resolver = resolver or ConflictResolver(store)
        self._registry = registry
        self._config = config or EngineConfig()
        self._mode_discovery = mode_discovery or self._discover_modes
        self._modes: list[PermissionMode] | None = None
        self._modes_lock = asyncio.Lock()
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._session_users: dict[str, int] = {}

    # ── Permission modes ──

    async def _discover_modes(self) -> list[PermissionMode]:
        if not self._config.discover_permission_modes:
            return list(DEFAULT_PERMISSION_MODES)
        command = getattr(
            self._supervisor.launcher, "command", self._config.claude_command,
        )
        return await discover_permission_modes(
            command, self._config.discovery_timeout_seconds,
        )

    async def permission_modes(self) -> list[PermissionMode]:
        """Modes the assistant accepts, discovered once per façade."""
        async with self._modes_lock:
            if self._modes is None:
                self._modes = list(await self._mode_discovery())
            return list(self._modes)

    async def refresh_permission_modes(self) -> list[PermissionMode]:
        async with self._modes_lock:
            self._modes = None
        return await self.permission_modes()

    async def _validate_mode(self, mode: PermissionMode | None) -> PermissionMode:
        mode = mode or self._config.default_permission_mode
        available = await self.permission_modes()
        if mode not in available:
            raise InvalidPermissionModeError(mode, available)
        return mode

    # ── Sessions ──

    async def _bind_and_attach(
        self,
        session_id: str,
        process_id: str,
        project_path: str,
        mode: PermissionMode,
    ) -> ActiveBinding:
        try:
            binding = await self._store.bind(
                session_id, process_id,
                context_id=self.context_id,
                project_path=project_path,
                permission_mode=mode,
            )
        except ConduitError:
            # No binding means nobody will ever stop this process
            await self._supervisor.kill(process_id)
            raise
        self._supervisor.attach(process_id)
        return binding

    async def start_new_session(
        self,
        project_path: str,
        permission_mode: PermissionMode | None = None,
        initial_message: str | None = None,
    ) -> ActiveBinding:
        """Spawn a fresh session in *project_path* and bind it here."""
        mode = await self._validate_mode(permission_mode)
        session_id = make_session_id()
        process_id = await self._supervisor.start(
            project_path, mode, session_id=session_id,
        )
        binding = await self._bind_and_attach(
            session_id, process_id, project_path, mode,
        )
        logger.info(
            "Started session %s as process %s in %s",
            session_id[:8], process_id[:8], project_path,
        )
        if initial_message:
            await self.send_message(process_id, initial_message)
            binding = self._store.binding(process_id) or binding
        return binding

    async def resume_session(
        self,
        session_id: str,
        project_path: str | None = None,
        permission_mode: PermissionMode | None = None,
        *,
        allow_elsewhere: bool = False,
    ) -> ActiveBinding:
        """Continue *session_id* in this context.

        Returns the existing binding if this context already drives the
        session. If another context does, raises
        SessionActiveElsewhereError unless *allow_elsewhere* is set, in
        which case an independent second process is started.
        """
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        self._session_users[session_id] = self._session_users.get(session_id, 0) + 1
        try:
            async with lock:
                return await self._resume_locked(
                    session_id, project_path, permission_mode, allow_elsewhere,
                )
        finally:
            remaining = self._session_users[session_id] - 1
            if remaining:
                self._session_users[session_id] = remaining
            else:
                del self._session_users[session_id]
                del self._session_locks[session_id]

    async def _resume_locked(
        self,
        session_id: str,
        project_path: str | None,
        permission_mode: PermissionMode | None,
        allow_elsewhere: bool,
    ) -> ActiveBinding:
        existing = self._store.binding_for_session(self.context_id, session_id)
        if existing is not None:
            logger.debug(
                "Session %s already bound here to process %s",
                session_id[:8], existing.process_id[:8],
            )
            return existing

        if self._registry is not None:
            session = self._registry.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            project_path = project_path or session.project_path
        if not project_path:
            raise ValueError(
                f"No project path known for session {session_id}"
            )

        if self._resolver.is_active_elsewhere(session_id, None):
            holders = self._resolver.holders(session_id)
            if not allow_elsewhere:
                raise SessionActiveElsewhereError(session_id, holders)
            logger.warning(
                "Resuming session %s while it is active in %d other process(es)",
                session_id[:8], len(holders),
            )

        mode = await self._validate_mode(permission_mode)
        process_id = await self._supervisor.resume(
            session_id, project_path, mode,
        )
        binding = await self._bind_and_attach(
            session_id, process_id, project_path, mode,
        )
        logger.info(
            "Resumed session %s as process %s", session_id[:8], process_id[:8],
        )
        return binding

    async def send_message(self, process_id: str, text: str) -> None:
        """Send one user turn. Raises BusyError while a turn is streaming."""
        await self._store.begin_turn(process_id, self.context_id)
        try:
            await self._supervisor.send(process_id, text)
        except Exception:
            await self._store.abort_turn(process_id)
            raise

    async def stop_session(self, process_id: str) -> StreamState | None:
        """Stop the process and retire its binding.

        Returns the final stream state, also when the process had
        already exited on its own.
        """
        binding = self._store.binding(process_id)
        if binding is not None and binding.context_id != self.context_id:
            raise NotBoundError(process_id, self.context_id)
        await self._supervisor.stop(process_id)
        final = await self._store.unbind(process_id)
        return final or self._store.snapshot(process_id)

    # ── Queries ──

    def active_sessions(self) -> list[ActiveBinding]:
        return self._store.bindings_for_context(self.context_id)

    def is_active_elsewhere(
        self, session_id: str, own_process_id: str | None = None,
    ) -> bool:
        return self._resolver.is_active_elsewhere(session_id, own_process_id)

    def snapshot(self, process_id: str) -> StreamState | None:
        return self._store.snapshot(process_id)

    def subscribe(self, process_id: str | None = None) -> Subscription:
        return self._store.subscribe(process_id)

    async def check_assistant(self) -> AvailabilityStatus:
        """Probe the assistant binary (`--version`)."""
        return await self._supervisor.launcher.probe(
            self._config.discovery_timeout_seconds,
        )

    async def close(self) -> None:
        """Stop every process owned by this context."""
        for binding in self.active_sessions():
            await self.stop_session(binding.process_id)

"""Exception hierarchy for the session engine.

One exception per failure mode, each carrying the ids needed to act
on it. Stale events and repeated stops are not errors and never
raise.
"""
from __future__ import annotations


class ConduitError(Exception):
    """Base exception for all session engine errors."""


class SpawnError(ConduitError):
    """The assistant process could not be started.

    Raised before any binding or stream state exists, so the caller
    can simply retry.
    """
    def __init__(self, project_path: str, reason: str):
        self.project_path = project_path
        self.reason = reason
        super().__init__(
            f"Failed to start assistant in {project_path}: {reason}"
        )


class NotRunningError(ConduitError):
    """The target process has exited, is stopping, or never existed."""
    def __init__(self, process_id: str, reason: str = "process is not running"):
        self.process_id = process_id
        self.reason = reason
        super().__init__(f"Process {process_id}: {reason}")


class AlreadyBoundError(ConduitError):
    """A process id was bound twice.

    This means the supervisor issued a duplicate id and is treated as a
    contract violation, never recovered silently.
    """
    def __init__(self, process_id: str, session_id: str | None):
        self.process_id = process_id
        self.session_id = session_id
        super().__init__(
            f"Process {process_id} is already bound "
            f"(session {session_id or '<none>'})"
        )


class ContextBindingConflictError(ConduitError):
    """A context tried to bind a session it already drives."""
    def __init__(self, context_id: str, session_id: str, process_id: str):
        self.context_id = context_id
        self.session_id = session_id
        self.process_id = process_id
        super().__init__(
            f"Context {context_id} already binds session {session_id} "
            f"to process {process_id}"
        )


class NotBoundError(ConduitError):
    """No binding exists for the process in the calling context."""
    def __init__(self, process_id: str, context_id: str | None = None):
        self.process_id = process_id
        self.context_id = context_id
        where = f" in context {context_id}" if context_id else ""
        super().__init__(f"Process {process_id} is not bound{where}")


class BusyError(ConduitError):
    """A message was sent while the previous turn is still streaming."""
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(
            f"Process {process_id} is still streaming; "
            f"wait for the current turn to complete"
        )


class InvalidPermissionModeError(ConduitError):
    """Permission mode is not in the list advertised by the assistant."""
    def __init__(self, mode: str, available: list[str]):
        self.mode = mode
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Permission mode '{mode}' is not supported. "
            f"Available modes: {avail_str}"
        )


class SessionNotFoundError(ConduitError):
    """The session registry has no record of the session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionActiveElsewhereError(ConduitError):
    """Another context already drives the session.

    Resuming anyway starts an independent fork; callers confirm by
    retrying with ``allow_elsewhere=True``.
    """
    def __init__(self, session_id: str, process_ids: list[str]):
        self.session_id = session_id
        self.process_ids = process_ids
        super().__init__(
            f"Session {session_id} is already running elsewhere "
            f"(processes: {', '.join(process_ids)})"
        )

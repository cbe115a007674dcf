"""Lookup of persisted sessions.

The history store itself lives outside this package; the engine only
needs to ask whether a session exists and where its project is.
"""
from __future__ import annotations

from typing import Protocol

from .models import Session


class SessionRegistry(Protocol):
    """Read-only access to persisted sessions."""

    def get_session(self, session_id: str) -> Session | None: ...

    def list_sessions(self, project_path: str | None = None) -> list[Session]: ...


class InMemorySessionRegistry:
    """Registry backed by a dict. Used by the CLI and in tests."""

    def __init__(self, sessions: list[Session] | None = None) -> None:
        self._sessions: dict[str, Session] = {}
        for session in sessions or []:
            self.add(session)

    def add(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self, project_path: str | None = None) -> list[Session]:
        """Sessions, most recently active first."""
        sessions = [
            s for s in self._sessions.values()
            if project_path is None or s.project_path == project_path
        ]
        return sorted(
            sessions,
            key=lambda s: (s.last_message_at is not None, s.last_message_at or 0),
            reverse=True,
        )

"""Detects sessions that are already driven from another context."""
from __future__ import annotations

from .state_store import SessionStateStore


class ConflictResolver:
    """Read-only queries over the store's session index."""

    def __init__(self, store: SessionStateStore) -> None:
        self._store = store

    def holders(
        self, session_id: str, own_process_id: str | None = None,
    ) -> list[str]:
        """Process ids bound to *session_id*, excluding *own_process_id*."""
        return sorted(
            pid for pid in self._store.process_ids_for_session(session_id)
            if pid != own_process_id
        )

    def is_active_elsewhere(
        self, session_id: str, own_process_id: str | None = None,
    ) -> bool:
        """True iff another process is bound to the same session."""
        return any(
            pid != own_process_id
            for pid in self._store.process_ids_for_session(session_id)
        )

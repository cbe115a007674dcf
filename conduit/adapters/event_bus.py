"""Async fan-out of stream-state snapshots to subscribers.

The state store publishes an immutable StreamState after every change.
Each subscriber owns a bounded queue; a slow subscriber loses its
oldest snapshots rather than stalling the pump that publishes them.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from conduit.engine.models import StreamState

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer's view of the snapshot stream."""

    def __init__(
        self,
        bus: SnapshotBus,
        process_id: str | None,
        maxsize: int,
    ) -> None:
        self._bus = bus
        self.process_id = process_id
        self._queue: asyncio.Queue[StreamState] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, state: StreamState) -> bool:
        return self.process_id is None or self.process_id == state.process_id

    def _offer(self, state: StreamState) -> None:
        if self._closed:
            return
        while True:
            try:
                self._queue.put_nowait(state)
                return
            except asyncio.QueueFull:
                # Newest state supersedes the oldest one
                self._queue.get_nowait()
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    logger.warning(
                        "Subscription for %s is lagging; dropped %d snapshot(s)",
                        (self.process_id or "*")[:8], self.dropped,
                    )

    def get_nowait(self) -> StreamState | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get(self, timeout: float | None = None) -> StreamState:
        """Wait for the next snapshot. Raises asyncio.TimeoutError."""
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    async def consume(self) -> AsyncIterator[StreamState]:
        """Yield snapshots as they arrive. Stops on close()."""
        while not self._closed or not self._queue.empty():
            try:
                state = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
                yield state
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop the consumer loop and detach from the bus."""
        self._closed = True
        self._bus._remove(self)


class SnapshotBus:
    """Publishes StreamState snapshots to every matching subscription."""

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._subscriptions: list[Subscription] = []

    def subscribe(self, process_id: str | None = None) -> Subscription:
        """Subscribe to one process, or to all of them when None."""
        sub = Subscription(self, process_id, self._maxsize)
        self._subscriptions.append(sub)
        return sub

    def publish(self, state: StreamState) -> None:
        for sub in list(self._subscriptions):
            if sub.matches(state):
                sub._offer(state)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.close()

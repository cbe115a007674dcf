"""Adapters package - Stream event types and snapshot subscriptions.

Bridges the engine's decoded output to frontends (the CLI, windows of
a desktop shell) without them reaching into engine internals.
"""
from __future__ import annotations

__all__ = [
    "SnapshotBus",
    "Subscription",
    "event_to_dict",
    "dict_to_event",
]

from conduit.adapters.event_bus import SnapshotBus, Subscription
from conduit.adapters.events import dict_to_event, event_to_dict

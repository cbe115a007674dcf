"""Launchers for assistant CLIs."""
from .base import AvailabilityStatus, LaunchSpec, LineTranscoder, ProcessLauncher
from .claude_provider import ClaudeLauncher

__all__ = [
    "AvailabilityStatus",
    "LaunchSpec",
    "LineTranscoder",
    "ProcessLauncher",
    "ClaudeLauncher",
]

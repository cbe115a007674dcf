"""Abstract base for assistant process launchers.

A launcher knows how to spawn one assistant CLI: which binary, which
arguments for a new or resumed session, which environment, and how a
user turn is written to its stdin. The supervisor owns the process;
the launcher only describes it.
"""
from __future__ import annotations

import abc
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class LaunchSpec:
    """Everything needed to spawn one assistant process."""
    argv: list[str]
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None


@dataclass
class AvailabilityStatus:
    """Result of probing the assistant binary."""
    available: bool
    command: str
    version: str | None = None
    error: str | None = None


class LineTranscoder(Protocol):
    """Converts one structured output line into fenced protocol text."""

    def feed_line(self, line: str) -> str: ...


class ProcessLauncher(abc.ABC):
    """Abstract launcher interface.

    Implementations wrap a specific assistant CLI:
    - ClaudeLauncher: Claude Code CLI (`claude`)
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short launcher name (e.g. 'claude')."""

    @property
    def line_oriented(self) -> bool:
        """Whether output is read line by line through a transcoder."""
        return False

    @abc.abstractmethod
    def build_spec(
        self,
        project_path: str,
        permission_mode: str,
        *,
        session_id: str | None = None,
        resume: str | None = None,
    ) -> LaunchSpec:
        """Build the command for a new (session_id) or resumed (resume) session."""

    @abc.abstractmethod
    def encode_turn(self, text: str) -> bytes:
        """Encode one user message for the process's stdin."""

    def new_transcoder(self) -> LineTranscoder | None:
        """Per-process transcoder for line-oriented output, if any."""
        return None

    @abc.abstractmethod
    async def probe(self, timeout: float = 10.0) -> AvailabilityStatus:
        """Check that the binary runs and report its version."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a launcher binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        An explicit path is never replaced by the fallback.
        """
        if command:
            if os.sep in command or (os.altsep and os.altsep in command):
                return command
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for launcher %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        if fallback:
            return fallback
        return command

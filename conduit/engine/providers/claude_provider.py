"""Claude Code CLI launcher.

Spawns `claude` either in stream-json mode (structured SDK messages
on stdout, JSON user turns on stdin) or in plain text mode.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path

from ..config import EngineConfig
from ..transcode import StreamJsonTranscoder
from .base import AvailabilityStatus, LaunchSpec, ProcessLauncher

logger = logging.getLogger(__name__)

# Install locations that GUI-launched processes often miss on PATH.
_EXTRA_BIN_DIRS = (
    "~/.local/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/usr/bin",
    "~/.npm-global/bin",
    "~/.volta/bin",
    "~/.nvm/versions/node/current/bin",
)

_STREAM_JSON_ARGS = [
    "-p",
    "--input-format", "stream-json",
    "--output-format", "stream-json",
    "--verbose",
    "--include-partial-messages",
]


def _extra_bin_dirs() -> list[str]:
    return [os.path.expanduser(d) for d in _EXTRA_BIN_DIRS]


class ClaudeLauncher(ProcessLauncher):
    """Launcher for the Claude Code CLI."""

    def __init__(
        self,
        command: str = "claude",
        *,
        wire_format: str = "stream-json",
        model: str | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._command = self.resolve_executable(command)
        self._wire_format = wire_format
        self._model = model
        self._extra_args = list(extra_args or [])

    @classmethod
    def from_config(cls, config: EngineConfig) -> ClaudeLauncher:
        return cls(
            config.claude_command,
            wire_format=config.wire_format,
            model=config.model,
        )

    @property
    def name(self) -> str:
        return "claude"

    @property
    def command(self) -> str:
        return self._command

    @property
    def wire_format(self) -> str:
        return self._wire_format

    @property
    def line_oriented(self) -> bool:
        return self._wire_format == "stream-json"

    def resolve_executable(self, command: str) -> str:
        """Resolve *command* via PATH, then the well-known install dirs."""
        resolved = self.resolve_command(command, "claude")
        if shutil.which(resolved) or os.sep in resolved:
            return resolved
        for directory in _extra_bin_dirs():
            candidate = Path(directory) / resolved
            if candidate.is_file() and os.access(candidate, os.X_OK):
                logger.debug("Found %s at %s", resolved, candidate)
                return str(candidate)
        return resolved

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        path_parts = env.get("PATH", "").split(os.pathsep) if env.get("PATH") else []
        for directory in _extra_bin_dirs():
            if directory not in path_parts:
                path_parts.append(directory)
        env["PATH"] = os.pathsep.join(path_parts)
        env.setdefault("HOME", os.path.expanduser("~"))
        env["CLAUDE_DONT_PRINT_STARTUP"] = "1"
        return env

    def build_command(
        self,
        permission_mode: str = "default",
        *,
        session_id: str | None = None,
        resume: str | None = None,
    ) -> list[str]:
        argv = [self._command]
        if self._wire_format == "stream-json":
            argv.extend(_STREAM_JSON_ARGS)
        if resume:
            argv.extend(["--resume", resume])
        elif session_id:
            argv.extend(["--session-id", session_id])
        if permission_mode and permission_mode != "default":
            argv.extend(["--permission-mode", permission_mode])
        if self._model:
            argv.extend(["--model", self._model])
        argv.extend(self._extra_args)
        return argv

    def build_spec(
        self,
        project_path: str,
        permission_mode: str,
        *,
        session_id: str | None = None,
        resume: str | None = None,
    ) -> LaunchSpec:
        return LaunchSpec(
            argv=self.build_command(
                permission_mode, session_id=session_id, resume=resume,
            ),
            cwd=project_path,
            env=self.build_env(),
            session_id=resume or session_id,
        )

    def encode_turn(self, text: str) -> bytes:
        if self._wire_format == "stream-json":
            message = {
                "type": "user",
                "message": {
                    "role": "user",
                    "content": [{"type": "text", "text": text}],
                },
            }
            return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        return (text + "\n").encode("utf-8")

    def new_transcoder(self) -> StreamJsonTranscoder | None:
        if self._wire_format == "stream-json":
            return StreamJsonTranscoder()
        return None

    async def probe(self, timeout: float = 10.0) -> AvailabilityStatus:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.info("Claude CLI not available at %s: %s", self._command, exc)
            return AvailabilityStatus(
                available=False, command=self._command, error=str(exc),
            )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return AvailabilityStatus(
                available=False, command=self._command,
                error=f"`{self._command} --version` timed out after {timeout}s",
            )
        if proc.returncode != 0:
            return AvailabilityStatus(
                available=False, command=self._command,
                error=stderr.decode("utf-8", "replace").strip()
                or f"exit code {proc.returncode}",
            )
        version = stdout.decode("utf-8", "replace").strip() or None
        return AvailabilityStatus(
            available=True, command=self._command, version=version,
        )

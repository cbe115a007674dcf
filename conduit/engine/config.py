"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONDUIT_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

WIRE_FORMATS = ("stream-json", "text")


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, containing its errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let observer errors break the pump
        logger.debug("event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Assistant binary and how to talk to it
    claude_command: str = "claude"
    # "stream-json" (structured SDK messages) or "text" (raw stdout)
    wire_format: str = "stream-json"
    model: str | None = None
    default_permission_mode: str = "default"

    # Process supervision
    # Seconds between SIGTERM and SIGKILL on stop. 0 disables escalation.
    stop_grace_seconds: float = 2.0
    stderr_tail_lines: int = 50
    read_chunk_size: int = 4096

    # State store
    # How many retired (unbound) stream snapshots stay queryable.
    retired_state_limit: int = 64
    subscriber_queue_size: int = 256

    # Timeout for `claude --help` / `claude --version` probes.
    discovery_timeout_seconds: float = 10.0
    # Skip `--help` parsing and use the built-in mode list.
    discover_permission_modes: bool = True

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "text_delta", "process_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CONDUIT_* environment variables."""
        conduit_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONDUIT_")
        }
        if conduit_vars:
            logger.info(
                "EngineConfig.from_env: CONDUIT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(conduit_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CONDUIT_* env vars set, using defaults")

        config = cls(
            claude_command=os.getenv(
                "CONDUIT_CLAUDE_COMMAND", cls.claude_command
            ),
            wire_format=os.getenv("CONDUIT_WIRE_FORMAT", cls.wire_format),
            model=os.getenv("CONDUIT_MODEL") or None,
            default_permission_mode=os.getenv(
                "CONDUIT_PERMISSION_MODE", cls.default_permission_mode
            ),
            stop_grace_seconds=float(os.getenv(
                "CONDUIT_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            stderr_tail_lines=int(os.getenv(
                "CONDUIT_STDERR_TAIL", str(cls.stderr_tail_lines)
            )),
            read_chunk_size=int(os.getenv(
                "CONDUIT_READ_CHUNK", str(cls.read_chunk_size)
            )),
            retired_state_limit=int(os.getenv(
                "CONDUIT_RETIRED_LIMIT", str(cls.retired_state_limit)
            )),
            subscriber_queue_size=int(os.getenv(
                "CONDUIT_QUEUE_SIZE", str(cls.subscriber_queue_size)
            )),
            discovery_timeout_seconds=float(os.getenv(
                "CONDUIT_DISCOVERY_TIMEOUT",
                str(cls.discovery_timeout_seconds),
            )),
            discover_permission_modes=_env_bool(
                "CONDUIT_DISCOVER_MODES", cls.discover_permission_modes
            ),
            log_level=os.getenv("CONDUIT_LOG_LEVEL", cls.log_level),
        )
        config.validate()
        logger.info(
            "EngineConfig.from_env: command=%s wire=%s model=%s log_level=%s",
            config.claude_command, config.wire_format,
            config.model, config.log_level,
        )
        return config

    def validate(self) -> None:
        """Raise ValueError for settings the engine cannot run with."""
        if self.wire_format not in WIRE_FORMATS:
            raise ValueError(
                f"Unknown wire format '{self.wire_format}'. "
                f"Expected one of: {', '.join(WIRE_FORMATS)}"
            )
        if self.stop_grace_seconds < 0:
            raise ValueError("stop_grace_seconds must be >= 0")
        if self.read_chunk_size <= 0:
            raise ValueError("read_chunk_size must be > 0")
        if self.retired_state_limit < 0:
            raise ValueError("retired_state_limit must be >= 0")

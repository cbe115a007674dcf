"""Permission-mode discovery from the assistant's `--help` output."""
from __future__ import annotations

import asyncio
import logging
import re

from .models import DEFAULT_PERMISSION_MODES, PermissionMode

logger = logging.getLogger(__name__)

_CHOICES_RE = re.compile(
    r"--permission-mode.*?choices:\s*([^)]+)\)", re.DOTALL,
)


def parse_permission_modes(help_text: str) -> list[PermissionMode] | None:
    """Extract the `--permission-mode` choices from CLI help text.

    Returns None when the option or its choices are not listed.
    """
    match = _CHOICES_RE.search(help_text)
    if not match:
        return None
    modes = []
    for raw in match.group(1).split(","):
        mode = raw.strip().strip("\"'").strip()
        if mode and mode not in modes:
            modes.append(mode)
    return modes or None


async def discover_permission_modes(
    command: str,
    timeout: float = 10.0,
    env: dict[str, str] | None = None,
) -> list[PermissionMode]:
    """Ask the assistant which permission modes it accepts.

    Falls back to DEFAULT_PERMISSION_MODES when the binary is missing,
    hangs, or prints help we cannot parse.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            command, "--help",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
    except (FileNotFoundError, PermissionError) as exc:
        logger.warning(
            "Could not run %s --help (%s); using default permission modes",
            command, exc,
        )
        return list(DEFAULT_PERMISSION_MODES)

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "%s --help timed out after %.1fs; using default permission modes",
            command, timeout,
        )
        proc.kill()
        await proc.wait()
        return list(DEFAULT_PERMISSION_MODES)

    modes = parse_permission_modes(stdout.decode("utf-8", "replace"))
    if modes is None:
        logger.info(
            "No --permission-mode choices in %s --help; using defaults", command,
        )
        return list(DEFAULT_PERMISSION_MODES)
    logger.debug("Discovered permission modes: %s", ", ".join(modes))
    return modes

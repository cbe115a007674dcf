"""CLI entry point for the session engine.

Usage:
    conduit chat ~/code/project
    conduit chat ~/code/project --resume 1b4e28ba-2fa1-11d2-883f-0016d3cca427
    conduit chat . --mode plan -m "Summarise the repo" --once
    conduit modes
    conduit check
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape

from conduit.adapters.event_bus import Subscription

from .config import EngineConfig
from .errors import ConduitError
from .facade import CommandFacade
from .models import StreamPhase, StreamState
from .providers.claude_provider import ClaudeLauncher
from .state_store import SessionStateStore
from .supervisor import ProcessSupervisor
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_EXIT_COMMANDS = {"/exit", "/quit"}


class EventRenderer:
    """Event callback that renders stream events to the terminal."""

    def __init__(self, console: Console, json_mode: bool = False) -> None:
        self._console = console
        self._json = json_mode
        self._cost: float | None = None

    async def __call__(self, event: dict[str, Any]) -> None:
        if self._json:
            self._console.print_json(json.dumps(event, default=str), indent=None)
            return
        kind = event.get("event")
        if kind == "text_delta":
            self._console.print(
                event.get("text", ""), end="", markup=False, highlight=False,
            )
        elif kind == "thinking_started":
            self._console.print("[dim italic]thinking…[/]")
        elif kind == "tool_use_complete":
            args = json.dumps(event.get("input", {}), ensure_ascii=False)
            if len(args) > 120:
                args = args[:117] + "..."
            self._console.print(
                f"[bold cyan]⏺ {escape(event.get('name', ''))}[/] [dim]{escape(args)}[/]",
                highlight=False,
            )
        elif kind == "tool_use_begin":
            self._console.print(
                f"[yellow]⏺ {escape(event.get('name', ''))} (incomplete)[/]",
            )
        elif kind == "tool_result":
            content = str(event.get("content", "")).strip().splitlines()
            first = content[0] if content else ""
            style = "red" if event.get("is_error") else "dim"
            self._console.print(
                f"  [{style}]⎿ {escape(first[:120])}[/]", highlight=False,
            )
        elif kind == "cost_update":
            self._cost = event.get("cost_usd")
        elif kind == "completed":
            if event.get("is_error"):
                errors = "; ".join(event.get("errors") or []) or event.get("subtype", "")
                self._console.print(f"\n[bold red]Turn failed:[/] {escape(errors)}")
            cost = f" · ${self._cost:.4f}" if self._cost is not None else ""
            self._console.print(f"\n[dim]── done{cost}[/]")
        elif kind == "fatal":
            error = event.get("error") or {}
            self._console.print(
                f"\n[bold red]Assistant stopped:[/] {escape(error.get('message', ''))}",
            )
            if error.get("stderr"):
                self._console.print(error["stderr"], style="red", markup=False)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conduit",
        description="Drive Claude Code sessions from the terminal",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (rotated at 2 MB)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file with an 'engine' section",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Start or resume a session")
    chat.add_argument("project", help="Project directory")
    chat.add_argument("--resume", "-r", default=None, help="Session id to resume")
    chat.add_argument("--mode", default=None, help="Permission mode")
    chat.add_argument(
        "--message", "-m",
        default=None,
        help="First message to send",
    )
    chat.add_argument(
        "--once",
        action="store_true",
        help="Exit after the first turn completes",
    )
    chat.add_argument(
        "--json",
        action="store_true",
        help="Print events as JSON instead of rendering them",
    )

    sub.add_parser("modes", help="List permission modes")
    sub.add_parser("check", help="Check that the assistant CLI is available")
    return parser


def _configure_logging(args: argparse.Namespace, config: EngineConfig) -> None:
    level_name = "DEBUG" if args.verbose else config.log_level.upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.log_file:
        file_handler = RotatingFileHandler(
            args.log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
        ))
        logging.getLogger().addHandler(file_handler)


def _build_facade(config: EngineConfig) -> tuple[CommandFacade, ProcessSupervisor]:
    store = SessionStateStore.from_config(config)
    launcher = ClaudeLauncher.from_config(config)
    supervisor = ProcessSupervisor(launcher, store, config)
    return CommandFacade(supervisor, store, config=config), supervisor


async def _wait_for_turn(
    facade: CommandFacade, process_id: str, before: int, sub: Subscription,
) -> StreamState | None:
    """Wait until the turn started after *before* completed turns ends."""
    async for state in sub.consume():
        if (
            state.retired
            or state.phase == StreamPhase.ERROR
            or state.turns_completed > before
        ):
            return state
    return facade.snapshot(process_id)


async def _read_line(console: Console, interactive: bool) -> str | None:
    if interactive:
        console.print("[bold green]>[/] ", end="")
    line = await asyncio.to_thread(sys.stdin.readline)
    return line if line else None


async def _chat(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    renderer = EventRenderer(console, json_mode=args.json)
    config.event_callback = renderer
    facade, supervisor = _build_facade(config)
    project = str(Path(args.project).expanduser().resolve())
    logger.debug("chat: project=%s resume=%s mode=%s", project, args.resume, args.mode)

    try:
        if args.resume:
            binding = await facade.resume_session(args.resume, project, args.mode)
        else:
            binding = await facade.start_new_session(project, args.mode)
    except ConduitError as exc:
        console.print(f"[bold red]Error:[/] {escape(str(exc))}")
        await supervisor.shutdown()
        return 1

    process_id = binding.process_id
    if not args.json:
        console.print(
            f"[dim]session {binding.session_id} · mode {binding.permission_mode}[/]"
        )
    sub = facade.subscribe(process_id)
    pending = [args.message] if args.message else []
    interactive = sys.stdin.isatty() and not args.json
    exit_code = 0
    try:
        while True:
            if pending:
                text = pending.pop(0)
            else:
                line = await _read_line(console, interactive)
                if line is None:
                    break
                text = line.strip()
                if not text:
                    continue
                if text in _EXIT_COMMANDS:
                    break

            snap = facade.snapshot(process_id)
            before = snap.turns_completed if snap else 0
            try:
                await facade.send_message(process_id, text)
            except ConduitError as exc:
                console.print(f"[bold red]Error:[/] {escape(str(exc))}")
                exit_code = 1
                break
            state = await _wait_for_turn(facade, process_id, before, sub)
            if state is None or state.retired or state.phase == StreamPhase.ERROR:
                exit_code = 1 if state is None or state.last_error else 0
                break
            if args.once:
                break
    finally:
        sub.close()
        await facade.close()
        await supervisor.shutdown()
    return exit_code


async def _modes(config: EngineConfig, console: Console) -> int:
    facade, _ = _build_facade(config)
    for mode in await facade.permission_modes():
        marker = " (default)" if mode == config.default_permission_mode else ""
        console.print(f"{mode}{marker}", highlight=False)
    return 0


async def _check(config: EngineConfig, console: Console) -> int:
    facade, _ = _build_facade(config)
    status = await facade.check_assistant()
    if status.available:
        console.print(f"[green]✓[/] {status.command} {status.version or ''}")
        return 0
    console.print(f"[red]✗[/] {escape(status.command)}: {escape(status.error or '')}")
    return 1


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = EngineConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    _configure_logging(args, config)

    console = Console()
    if args.command == "chat":
        runner = _chat(args, config, console)
    elif args.command == "modes":
        runner = _modes(config, console)
    else:
        runner = _check(config, console)

    try:
        sys.exit(asyncio.run(runner))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()

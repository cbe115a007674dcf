"""Spawns, feeds, stops and reaps assistant processes.

Each process gets exactly one pump task that reads its stdout in
arrival order, runs it through the decoder and records the resulting
events in the state store. The pump is gated until the caller has
bound the process (attach), so output produced during spawn is held
by the pipe rather than dropped as stale.

When the pump sees EOF it flushes the decoder, reports an unrequested
non-zero exit as a Fatal event, and unbinds the process. Stop may race
that natural exit; the store's unbind is idempotent, so the binding is
retired exactly once.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from conduit.adapters.events import Completed, StreamEvent, event_to_dict

from .config import EngineConfig, EventCallback, fire_event
from .decoder import StreamDecoder
from .errors import NotRunningError, SpawnError
from .models import ErrorInfo, PermissionMode, make_process_id
from .providers.base import LaunchSpec, LineTranscoder, ProcessLauncher
from .state_store import SessionStateStore

logger = logging.getLogger(__name__)


async def _read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()``, this will never raise
    ``LimitOverrunError``. A single stream-json message (a tool result
    with a large file listing) can exceed the default 64 KiB limit.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
            chunks.append(chunk)
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunk = await stream.read(exc.consumed)
            chunks.append(chunk)
        except asyncio.IncompleteReadError as exc:
            # EOF before newline: return whatever is left.
            chunks.append(exc.partial)
            return b"".join(chunks)


@dataclass
class ManagedProcess:
    """Supervisor-private handle for one running assistant."""
    process_id: str
    session_id: str | None
    project_path: str
    proc: asyncio.subprocess.Process
    decoder: StreamDecoder
    transcoder: LineTranscoder | None = None
    gate: asyncio.Event = field(default_factory=asyncio.Event)
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=50))
    stop_requested: bool = False
    last_event: StreamEvent | None = None
    pump_task: asyncio.Task | None = None
    stderr_task: asyncio.Task | None = None
    kill_task: asyncio.Task | None = None

    @property
    def exited(self) -> bool:
        return self.proc.returncode is not None


class ProcessSupervisor:
    """Owns every assistant process started through it."""

    def __init__(
        self,
        launcher: ProcessLauncher,
        store: SessionStateStore,
        config: EngineConfig | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._launcher = launcher
        self._store = store
        self._config = config or EngineConfig()
        self._event_callback = event_callback or self._config.event_callback
        self._processes: dict[str, ManagedProcess] = {}

    @property
    def launcher(self) -> ProcessLauncher:
        return self._launcher

    # ── Spawning ──

    async def start(
        self,
        project_path: str,
        permission_mode: PermissionMode,
        *,
        session_id: str | None = None,
    ) -> str:
        """Spawn a new assistant session in *project_path*."""
        spec = self._launcher.build_spec(
            project_path, permission_mode, session_id=session_id,
        )
        return await self._spawn(spec, project_path)

    async def resume(
        self,
        session_id: str,
        project_path: str,
        permission_mode: PermissionMode,
    ) -> str:
        """Spawn an assistant that continues *session_id*."""
        spec = self._launcher.build_spec(
            project_path, permission_mode, resume=session_id,
        )
        return await self._spawn(spec, project_path)

    async def _spawn(self, spec: LaunchSpec, project_path: str) -> str:
        if not Path(project_path).is_dir():
            raise SpawnError(project_path, "not a directory")
        try:
            # create_subprocess_exec passes args as an array, no shell
            proc = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.env or None,
                start_new_session=True,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            logger.error("Failed to spawn %s: %s", spec.argv[0], exc)
            raise SpawnError(project_path, str(exc)) from exc

        process_id = make_process_id()
        while process_id in self._processes:
            process_id = make_process_id()
        transcoder = (
            self._launcher.new_transcoder() if self._launcher.line_oriented else None
        )
        mp = ManagedProcess(
            process_id=process_id,
            session_id=spec.session_id,
            project_path=project_path,
            proc=proc,
            decoder=StreamDecoder(escaped=transcoder is not None),
            transcoder=transcoder,
            stderr_tail=deque(maxlen=max(self._config.stderr_tail_lines, 1)),
        )
        self._processes[process_id] = mp
        mp.pump_task = asyncio.create_task(
            self._pump(mp), name=f"conduit-pump-{process_id[:8]}",
        )
        mp.stderr_task = asyncio.create_task(
            self._drain_stderr(mp), name=f"conduit-stderr-{process_id[:8]}",
        )
        logger.info(
            "Spawned process %s (pid=%d, session=%s) in %s",
            process_id[:8], proc.pid, (spec.session_id or "?")[:8], project_path,
        )
        await fire_event(self._event_callback, {
            "event": "process_started",
            "process_id": process_id,
            "session_id": spec.session_id,
            "pid": proc.pid,
        })
        return process_id

    def attach(self, process_id: str) -> None:
        """Start delivering output for a bound process."""
        mp = self._processes.get(process_id)
        if mp is None:
            logger.debug("attach: unknown process %s", process_id[:8])
            return
        mp.gate.set()

    # ── Input ──

    async def send(self, process_id: str, text: str) -> None:
        """Write one user turn to the process's stdin."""
        mp = self._processes.get(process_id)
        if mp is None:
            raise NotRunningError(process_id, "unknown process")
        if mp.stop_requested:
            raise NotRunningError(process_id, "process is stopping")
        if mp.exited or mp.proc.stdin is None:
            raise NotRunningError(process_id, "process has exited")
        try:
            mp.proc.stdin.write(self._launcher.encode_turn(text))
            await mp.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise NotRunningError(process_id, f"stdin closed: {exc}") from exc
        logger.debug("Sent %d chars to process %s", len(text), process_id[:8])

    # ── Termination ──

    def _signal(self, mp: ManagedProcess, sig: int) -> bool:
        if mp.exited:
            return False
        try:
            # Children run in their own session; signal the whole group
            os.killpg(mp.proc.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except OSError:
            logger.debug(
                "killpg failed for process %s; signalling pid only",
                mp.process_id[:8], exc_info=True,
            )
        try:
            mp.proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False

    async def stop(self, process_id: str) -> None:
        """Ask the process to exit. Never raises for unknown or exited ids."""
        mp = self._processes.get(process_id)
        if mp is None:
            logger.debug("stop: process %s already gone", process_id[:8])
            return
        if mp.stop_requested:
            return
        mp.stop_requested = True
        mp.gate.set()
        if mp.proc.stdin is not None and not mp.proc.stdin.is_closing():
            mp.proc.stdin.close()
        sent = self._signal(mp, signal.SIGTERM)
        logger.info(
            "Stopping process %s (pid=%d, signalled=%s)",
            process_id[:8], mp.proc.pid, sent,
        )
        grace = self._config.stop_grace_seconds
        if sent and grace > 0:
            mp.kill_task = asyncio.create_task(self._escalate(mp, grace))

    async def _escalate(self, mp: ManagedProcess, grace: float) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(mp.proc.wait()), grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Process %s ignored SIGTERM for %.1fs; sending SIGKILL",
                mp.process_id[:8], grace,
            )
            self._signal(mp, signal.SIGKILL)

    async def kill(self, process_id: str) -> None:
        """Terminate the process immediately."""
        mp = self._processes.get(process_id)
        if mp is None:
            return
        mp.stop_requested = True
        mp.gate.set()
        if self._signal(mp, signal.SIGKILL):
            logger.info("Killed process %s (pid=%d)", process_id[:8], mp.proc.pid)

    async def wait_closed(self, process_id: str, timeout: float | None = None) -> None:
        """Wait until the process has exited and been unbound."""
        mp = self._processes.get(process_id)
        if mp is None:
            return
        await asyncio.wait_for(mp.closed.wait(), timeout)

    def is_running(self, process_id: str) -> bool:
        mp = self._processes.get(process_id)
        return mp is not None and not mp.exited and not mp.stop_requested

    def process_ids(self) -> list[str]:
        return list(self._processes)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every process and wait for the pumps to finish."""
        processes = list(self._processes.values())
        for mp in processes:
            await self.stop(mp.process_id)
        for mp in processes:
            try:
                await asyncio.wait_for(mp.closed.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Process %s did not exit within %.1fs; killing",
                    mp.process_id[:8], timeout,
                )
                await self.kill(mp.process_id)
                await mp.closed.wait()

    # ── Output ──

    async def _dispatch(self, mp: ManagedProcess, events: list[StreamEvent]) -> None:
        for event in events:
            mp.last_event = event
            applied = await self._store.apply_event(mp.process_id, event)
            if not applied:
                continue
            payload = event_to_dict(event)
            payload["process_id"] = mp.process_id
            await fire_event(self._event_callback, payload)

    async def _drain_stderr(self, mp: ManagedProcess) -> None:
        stream = mp.proc.stderr
        if stream is None:
            return
        while True:
            line = await _read_line_unbounded(stream)
            if not line:
                return
            text = line.decode("utf-8", "replace").rstrip()
            if text:
                mp.stderr_tail.append(text)
                logger.debug("[%s stderr] %s", mp.process_id[:8], text)

    async def _read_output(self, mp: ManagedProcess) -> None:
        stream = mp.proc.stdout
        if stream is None:
            return
        if mp.transcoder is not None:
            while True:
                line = await _read_line_unbounded(stream)
                if not line:
                    return
                text = mp.transcoder.feed_line(line.decode("utf-8", "replace"))
                if text:
                    await self._dispatch(mp, mp.decoder.feed(text))
        else:
            chunk_size = self._config.read_chunk_size
            while True:
                chunk = await stream.read(chunk_size)
                if not chunk:
                    return
                await self._dispatch(mp, mp.decoder.feed(chunk))

    def _exit_error(self, mp: ManagedProcess, returncode: int) -> ErrorInfo | None:
        if mp.stop_requested or returncode == 0:
            return None
        if returncode == 1 and isinstance(mp.last_event, Completed):
            # The CLI sometimes exits 1 right after a finished turn
            logger.warning(
                "Process %s exited with code 1 after its result; treating as complete",
                mp.process_id[:8],
            )
            return None
        return ErrorInfo(
            message=f"assistant exited with code {returncode}",
            kind="crash",
            exit_code=returncode,
            stderr="\n".join(mp.stderr_tail),
        )

    async def _pump(self, mp: ManagedProcess) -> None:
        pid = mp.process_id
        try:
            await mp.gate.wait()
            await self._read_output(mp)
            await self._dispatch(mp, mp.decoder.finish())
            returncode = await mp.proc.wait()
            if mp.stderr_task is not None:
                try:
                    await asyncio.wait_for(mp.stderr_task, 1.0)
                except asyncio.TimeoutError:
                    mp.stderr_task.cancel()
            error = self._exit_error(mp, returncode)
            if error is not None:
                logger.error(
                    "Process %s exited unexpectedly (code %d)", pid[:8], returncode,
                )
                await self._dispatch(mp, mp.decoder.fail(error))
            else:
                logger.info("Process %s exited (code %d)", pid[:8], returncode)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Output pump for process %s failed", pid[:8])
            await self._dispatch(mp, mp.decoder.fail(
                ErrorInfo(message=f"output pump failed: {exc}", kind="decode"),
            ))
            self._signal(mp, signal.SIGKILL)
        finally:
            if mp.kill_task is not None and not mp.kill_task.done():
                mp.kill_task.cancel()
            try:
                await self._store.unbind(pid)
            finally:
                self._processes.pop(pid, None)
                mp.closed.set()
            await fire_event(self._event_callback, {
                "event": "process_exited",
                "process_id": pid,
                "returncode": mp.proc.returncode,
            })

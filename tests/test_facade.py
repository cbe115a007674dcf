"""Tests for CommandFacade sequencing, using a fake supervisor."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conduit.adapters.events import Completed, TextDelta
from conduit.engine.config import EngineConfig
from conduit.engine.errors import (
    AlreadyBoundError,
    BusyError,
    InvalidPermissionModeError,
    NotBoundError,
    NotRunningError,
    SessionActiveElsewhereError,
    SessionNotFoundError,
)
from conduit.engine.facade import CommandFacade
from conduit.engine.models import Session
from conduit.engine.providers.base import AvailabilityStatus
from conduit.engine.session_registry import InMemorySessionRegistry
from conduit.engine.state_store import SessionStateStore


def _fake_supervisor(*process_ids: str) -> SimpleNamespace:
    ids = iter(process_ids or ("proc-1", "proc-2", "proc-3"))
    return SimpleNamespace(
        launcher=SimpleNamespace(
            command="claude",
            probe=AsyncMock(return_value=AvailabilityStatus(
                available=True, command="claude", version="2.0.1",
            )),
        ),
        start=AsyncMock(side_effect=lambda *a, **k: next(ids)),
        resume=AsyncMock(side_effect=lambda *a, **k: next(ids)),
        attach=MagicMock(),
        send=AsyncMock(),
        stop=AsyncMock(),
        kill=AsyncMock(),
    )


def _facade(store, supervisor, context_id="win-a", **kwargs) -> CommandFacade:
    kwargs.setdefault(
        "mode_discovery", AsyncMock(return_value=["default", "plan", "acceptEdits"]),
    )
    return CommandFacade(supervisor, store, context_id=context_id, **kwargs)


# ── Start ──


@pytest.mark.asyncio
async def test_start_binds_before_attach(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    seen_at_attach = []
    supervisor.attach.side_effect = lambda pid: seen_at_attach.append(store.binding(pid))
    facade = _facade(store, supervisor)

    binding = await facade.start_new_session(str(tmp_path), "plan")

    assert binding.process_id == "proc-1"
    assert binding.context_id == "win-a"
    assert binding.permission_mode == "plan"
    assert seen_at_attach == [binding]
    args, kwargs = supervisor.start.call_args
    assert args == (str(tmp_path), "plan")
    assert kwargs["session_id"] == binding.session_id


@pytest.mark.asyncio
async def test_start_uses_default_mode_and_initial_message(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    facade = _facade(store, supervisor, config=EngineConfig(default_permission_mode="acceptEdits"))

    binding = await facade.start_new_session(str(tmp_path), initial_message="hello")

    assert binding.permission_mode == "acceptEdits"
    assert binding.is_streaming is True
    supervisor.send.assert_awaited_once_with("proc-1", "hello")


@pytest.mark.asyncio
async def test_invalid_mode_never_spawns(tmp_path):
    supervisor = _fake_supervisor()
    facade = _facade(SessionStateStore(), supervisor)
    with pytest.raises(InvalidPermissionModeError) as exc_info:
        await facade.start_new_session(str(tmp_path), "yolo")
    assert exc_info.value.available == ["default", "plan", "acceptEdits"]
    supervisor.start.assert_not_awaited()


@pytest.mark.asyncio
async def test_modes_are_discovered_once_until_refreshed():
    discovery = AsyncMock(return_value=["default", "plan"])
    facade = _facade(SessionStateStore(), _fake_supervisor(), mode_discovery=discovery)
    assert await facade.permission_modes() == ["default", "plan"]
    assert await facade.permission_modes() == ["default", "plan"]
    assert discovery.await_count == 1
    await facade.refresh_permission_modes()
    assert discovery.await_count == 2


@pytest.mark.asyncio
async def test_bind_failure_kills_process(tmp_path):
    store = SessionStateStore()
    await store.bind("other", "proc-1", context_id="win-z")
    supervisor = _fake_supervisor("proc-1")
    facade = _facade(store, supervisor)

    with pytest.raises(AlreadyBoundError):
        await facade.start_new_session(str(tmp_path))
    supervisor.kill.assert_awaited_once_with("proc-1")
    supervisor.attach.assert_not_called()


# ── Send ──


@pytest.mark.asyncio
async def test_send_while_streaming_is_busy(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    facade = _facade(store, supervisor)
    binding = await facade.start_new_session(str(tmp_path))

    await facade.send_message(binding.process_id, "first")
    with pytest.raises(BusyError):
        await facade.send_message(binding.process_id, "second")
    assert supervisor.send.await_count == 1

    await store.apply_event(binding.process_id, TextDelta(text="answer"))
    await store.apply_event(binding.process_id, Completed(subtype="success"))
    await facade.send_message(binding.process_id, "second")
    assert supervisor.send.await_count == 2


@pytest.mark.asyncio
async def test_failed_send_releases_turn(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    supervisor.send.side_effect = NotRunningError("proc-1", "process has exited")
    facade = _facade(store, supervisor)
    binding = await facade.start_new_session(str(tmp_path))

    with pytest.raises(NotRunningError):
        await facade.send_message(binding.process_id, "hi")
    assert store.snapshot(binding.process_id).is_streaming is False


@pytest.mark.asyncio
async def test_send_from_other_context_is_not_bound(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    owner = _facade(store, supervisor, context_id="win-a")
    other = _facade(store, supervisor, context_id="win-b")
    binding = await owner.start_new_session(str(tmp_path))

    with pytest.raises(NotBoundError):
        await other.send_message(binding.process_id, "hi")
    supervisor.send.assert_not_awaited()


# ── Resume ──


@pytest.mark.asyncio
async def test_resume_twice_in_same_context_reuses_binding(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    facade = _facade(store, supervisor)

    first = await facade.resume_session("sess-1", str(tmp_path))
    second = await facade.resume_session("sess-1", str(tmp_path))

    assert first == second
    assert supervisor.resume.await_count == 1
    supervisor.resume.assert_awaited_once_with("sess-1", str(tmp_path), "default")


@pytest.mark.asyncio
async def test_resume_active_elsewhere_requires_confirmation(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    window_a = _facade(store, supervisor, context_id="win-a")
    window_b = _facade(store, supervisor, context_id="win-b")
    held = await window_a.resume_session("sess-1", str(tmp_path))

    with pytest.raises(SessionActiveElsewhereError) as exc_info:
        await window_b.resume_session("sess-1", str(tmp_path))
    assert exc_info.value.process_ids == [held.process_id]
    assert supervisor.resume.await_count == 1

    fork = await window_b.resume_session("sess-1", str(tmp_path), allow_elsewhere=True)
    assert fork.process_id != held.process_id
    assert store.process_ids_for_session("sess-1") == frozenset(
        {held.process_id, fork.process_id}
    )
    assert window_a.is_active_elsewhere("sess-1", held.process_id) is True


@pytest.mark.asyncio
async def test_resume_uses_registry(tmp_path):
    registry = InMemorySessionRegistry([
        Session(session_id="sess-1", project_path=str(tmp_path), project_name="repo"),
    ])
    supervisor = _fake_supervisor()
    facade = _facade(SessionStateStore(), supervisor, registry=registry)

    binding = await facade.resume_session("sess-1")
    assert binding.project_path == str(tmp_path)

    with pytest.raises(SessionNotFoundError):
        await facade.resume_session("sess-missing")
    assert supervisor.resume.await_count == 1


@pytest.mark.asyncio
async def test_resume_without_project_path_is_rejected():
    facade = _facade(SessionStateStore(), _fake_supervisor())
    with pytest.raises(ValueError):
        await facade.resume_session("sess-1")


@pytest.mark.asyncio
async def test_concurrent_resumes_spawn_once_and_release_locks(tmp_path):
    registry = InMemorySessionRegistry([
        Session(session_id="sess-1", project_path=str(tmp_path)),
    ])
    supervisor = _fake_supervisor()
    facade = _facade(SessionStateStore(), supervisor, registry=registry)

    first, second = await asyncio.gather(
        facade.resume_session("sess-1"), facade.resume_session("sess-1"),
    )
    assert first == second
    assert supervisor.resume.await_count == 1

    with pytest.raises(SessionNotFoundError):
        await facade.resume_session("sess-missing")
    assert facade._session_locks == {}
    assert facade._session_users == {}


# ── Stop ──


@pytest.mark.asyncio
async def test_stop_unbinds_and_is_idempotent(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    facade = _facade(store, supervisor)
    binding = await facade.start_new_session(str(tmp_path))
    await store.apply_event(binding.process_id, TextDelta(text="partial"))

    final = await facade.stop_session(binding.process_id)
    assert final.retired is True
    assert final.text_buffer == "partial"
    assert store.binding(binding.process_id) is None
    supervisor.stop.assert_awaited_once_with(binding.process_id)

    # The process already exited and was unbound: still no error
    again = await facade.stop_session(binding.process_id)
    assert again == final


@pytest.mark.asyncio
async def test_stop_from_other_context_is_rejected(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    owner = _facade(store, supervisor, context_id="win-a")
    other = _facade(store, supervisor, context_id="win-b")
    binding = await owner.start_new_session(str(tmp_path))

    with pytest.raises(NotBoundError):
        await other.stop_session(binding.process_id)
    supervisor.stop.assert_not_awaited()


@pytest.mark.asyncio
async def test_close_stops_only_own_sessions(tmp_path):
    store = SessionStateStore()
    supervisor = _fake_supervisor()
    window_a = _facade(store, supervisor, context_id="win-a")
    window_b = _facade(store, supervisor, context_id="win-b")
    mine = await window_a.start_new_session(str(tmp_path))
    theirs = await window_b.start_new_session(str(tmp_path))

    await window_a.close()

    assert window_a.active_sessions() == []
    assert [b.process_id for b in window_b.active_sessions()] == [theirs.process_id]
    supervisor.stop.assert_awaited_once_with(mine.process_id)


@pytest.mark.asyncio
async def test_check_assistant_probes_launcher():
    supervisor = _fake_supervisor()
    facade = _facade(SessionStateStore(), supervisor)
    status = await facade.check_assistant()
    assert status.available is True
    assert status.version == "2.0.1"

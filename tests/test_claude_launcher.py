"""Tests for ClaudeLauncher command, environment and turn encoding."""
from __future__ import annotations

import json
import os

import pytest

from conduit.engine.config import EngineConfig
from conduit.engine.errors import SpawnError
from conduit.engine.providers.claude_provider import ClaudeLauncher
from conduit.engine.state_store import SessionStateStore
from conduit.engine.supervisor import ProcessSupervisor
from conduit.engine.transcode import StreamJsonTranscoder


def test_stream_json_new_session_command():
    launcher = ClaudeLauncher("claude")
    argv = launcher.build_command("plan", session_id="abc-123")
    assert argv[1:] == [
        "-p",
        "--input-format", "stream-json",
        "--output-format", "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--session-id", "abc-123",
        "--permission-mode", "plan",
    ]


def test_resume_command_omits_default_mode_and_adds_model():
    launcher = ClaudeLauncher("claude", wire_format="text", model="claude-sonnet-4-5")
    argv = launcher.build_command("default", resume="abc-123")
    assert argv[1:] == ["--resume", "abc-123", "--model", "claude-sonnet-4-5"]


def test_build_spec_from_config(tmp_path):
    config = EngineConfig(claude_command="claude", wire_format="text")
    launcher = ClaudeLauncher.from_config(config)
    spec = launcher.build_spec(str(tmp_path), "default", resume="s-1")
    assert spec.cwd == str(tmp_path)
    assert spec.session_id == "s-1"
    assert spec.env["CLAUDE_DONT_PRINT_STARTUP"] == "1"
    assert os.path.expanduser("~/.local/bin") in spec.env["PATH"].split(os.pathsep)
    assert launcher.line_oriented is False
    assert launcher.new_transcoder() is None


def test_encode_turn_stream_json():
    launcher = ClaudeLauncher("claude")
    payload = launcher.encode_turn("fix the `bug`")
    assert payload.endswith(b"\n")
    message = json.loads(payload)
    assert message == {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": "fix the `bug`"}],
        },
    }
    assert isinstance(launcher.new_transcoder(), StreamJsonTranscoder)


def test_encode_turn_text():
    launcher = ClaudeLauncher("claude", wire_format="text")
    assert launcher.encode_turn("hi") == b"hi\n"


@pytest.mark.asyncio
async def test_probe_missing_binary(tmp_path):
    launcher = ClaudeLauncher(str(tmp_path / "claude-missing"))
    status = await launcher.probe(timeout=5)
    assert status.available is False
    assert status.error
    assert status.command == str(tmp_path / "claude-missing")


def test_explicit_path_is_never_replaced(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    installed = bin_dir / "claude"
    installed.write_text("#!/bin/sh\necho 1.0.0\n", encoding="utf-8")
    installed.chmod(0o755)
    monkeypatch.setenv("PATH", str(bin_dir))

    missing = str(tmp_path / "opt" / "claude")
    assert ClaudeLauncher(missing).command == missing
    assert ClaudeLauncher("claude").command == "claude"


@pytest.mark.asyncio
async def test_missing_explicit_command_raises_spawn_error(tmp_path):
    config = EngineConfig(
        claude_command=str(tmp_path / "opt" / "claude"), wire_format="text",
    )
    store = SessionStateStore()
    supervisor = ProcessSupervisor(ClaudeLauncher.from_config(config), store, config)
    with pytest.raises(SpawnError):
        await supervisor.start(str(tmp_path), "default")
    assert supervisor.process_ids() == []
    assert store.bindings() == []

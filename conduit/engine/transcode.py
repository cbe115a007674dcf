"""Render Claude CLI ``stream-json`` output as the fenced text protocol.

With ``--output-format stream-json --include-partial-messages`` the CLI
prints one JSON message per line:

- ``stream_event``: raw API stream events (partial text and thinking)
- ``assistant``: a complete assistant message (text, thinking, tool_use)
- ``user``: tool results fed back to the model
- ``result``: end of turn with cost and error details
- ``system``: init/status messages, ignored here

Text that was already streamed through partial events is not repeated
when the full assistant message arrives; only its tool_use blocks are.
Free text and thinking are written through ``escape_text`` and must be
read by a decoder built with ``escaped=True``.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from .decoder import escape_text

logger = logging.getLogger(__name__)


def _fence_safe_json(value: Any) -> str:
    """JSON-encode *value* so the payload can never contain a fence."""
    return json.dumps(value, ensure_ascii=False).replace("`", "\\u0060")


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(f"[{item.get('type', 'content')}]")
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)


class StreamJsonTranscoder:
    """Stateful per-process converter from stream-json lines to text."""

    def __init__(self) -> None:
        self._current_message: str | None = None
        self._streamed_messages: set[str] = set()
        self._block_types: dict[int, str] = {}

    def feed_line(self, line: str) -> str:
        stripped = line.strip()
        if not stripped:
            return ""
        try:
            msg = json.loads(stripped)
        except ValueError:
            # Banners, warnings and anything else that is not protocol
            return escape_text(stripped) + "\n"
        if not isinstance(msg, dict):
            return escape_text(stripped) + "\n"

        msg_type = msg.get("type")
        if msg_type == "stream_event":
            return self._on_stream_event(msg.get("event") or {})
        if msg_type == "assistant":
            return self._on_assistant(msg.get("message") or {})
        if msg_type == "user":
            return self._on_user(msg.get("message") or {})
        if msg_type == "result":
            return self._on_result(msg)
        if msg_type != "system":
            logger.debug("transcoder: ignoring message type %r", msg_type)
        return ""

    def _on_stream_event(self, event: dict[str, Any]) -> str:
        etype = event.get("type")
        if etype == "message_start":
            message = event.get("message") or {}
            self._current_message = message.get("id")
            if self._current_message:
                self._streamed_messages.add(self._current_message)
            self._block_types.clear()
            return ""

        if etype == "content_block_start":
            index = event.get("index", 0)
            block_type = (event.get("content_block") or {}).get("type", "")
            self._block_types[index] = block_type
            if block_type == "thinking":
                return "```thinking\n"
            return ""

        if etype == "content_block_delta":
            delta = event.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "text_delta":
                return escape_text(delta.get("text", ""))
            if dtype == "thinking_delta":
                return escape_text(delta.get("thinking", ""))
            # input_json_delta / signature_delta: the full tool_use arrives
            # with the assistant message
            return ""

        if etype == "content_block_stop":
            block_type = self._block_types.pop(event.get("index", 0), "")
            if block_type == "thinking":
                return "```"
            if block_type == "text":
                return "\n"
            return ""

        return ""

    def _on_assistant(self, message: dict[str, Any]) -> str:
        streamed = message.get("id") in self._streamed_messages
        out: list[str] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            btype = block.get("type")
            if btype == "tool_use":
                out.append(
                    f"```tool_use\n{block.get('name', '')} {block.get('id', '')}".rstrip()
                    + "\n"
                    + _fence_safe_json(block.get("input") or {})
                    + "```"
                )
            elif streamed:
                continue
            elif btype == "text":
                out.append(escape_text(block.get("text", "")) + "\n")
            elif btype == "thinking":
                out.append(f"```thinking\n{escape_text(block.get('thinking', ''))}```")
        return "".join(out)

    def _on_user(self, message: dict[str, Any]) -> str:
        content = message.get("content")
        if not isinstance(content, list):
            return ""
        out: list[str] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            header = str(block.get("tool_use_id", ""))
            if block.get("is_error"):
                header += " error"
            body = _fence_safe_json(_tool_result_text(block.get("content")))
            out.append(f"```tool_result {header}".rstrip() + f"\n{body}```")
        return "".join(out)

    def _on_result(self, msg: dict[str, Any]) -> str:
        payload = {
            "subtype": msg.get("subtype", ""),
            "is_error": bool(msg.get("is_error", False)),
            "total_cost_usd": msg.get("total_cost_usd"),
            "errors": msg.get("errors") or [],
        }
        self._streamed_messages.clear()
        return f"```result\n{_fence_safe_json(payload)}```"

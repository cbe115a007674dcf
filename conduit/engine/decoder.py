"""Incremental decoder for the assistant's fenced-block output protocol.

The assistant's stdout is free text with structured blocks embedded as
fenced sections::

    ```tool_use
    <name>[ <tool_id>]
    <json input>```
    ```tool_result[ <tool_use_id>[ error]]
    <content>```
    ```thinking
    <reasoning text>```
    ```cost
    <usd>```
    ```result
    <json: subtype, is_error, total_cost_usd, errors>```

Chunks arrive with arbitrary boundaries. The decoder only ever emits
events whose extent is decided by content already seen (complete
lines, closed blocks, confirmed markers), so the event list is the
same however the stream is split.

A marker is three backticks, one of the kinds above, then a character
that cannot continue an identifier. Any other fence (```` ```python ````)
is ordinary text.

Producers that control the stream (the stream-json transcoder) write
free text and thinking through :func:`escape_text`, so a backtick in the
model's own output can never open or close a block. A decoder built with
``escaped=True`` reverses that in the events it emits.
"""
from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from conduit.adapters.events import (
    Completed,
    CostUpdate,
    Fatal,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingStarted,
    ToolResult,
    ToolUseBegin,
    ToolUseComplete,
)

from .models import ErrorInfo, StreamPhase
from .phases import validate_transition

logger = logging.getLogger(__name__)

FENCE = "```"
KIND_TOOL_USE = "tool_use"
KIND_TOOL_RESULT = "tool_result"
KIND_THINKING = "thinking"
KIND_COST = "cost"
KIND_RESULT = "result"
BLOCK_KINDS = (KIND_TOOL_USE, KIND_TOOL_RESULT, KIND_THINKING, KIND_COST, KIND_RESULT)

_MAX_KIND = max(len(k) for k in BLOCK_KINDS)

_ESCAPES = {"005c": "\\", "0060": "`"}
_ESCAPE_RE = re.compile(r"\\u(005c|0060)")


def escape_text(text: str) -> str:
    """Encode backslashes and backticks as ``\\u005c`` and ``\\u0060``.

    The mapping is per character, so escaping deltas one at a time gives
    the same result as escaping their concatenation.
    """
    return text.replace("\\", "\\u005c").replace("`", "\\u0060")


def unescape_text(text: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(1)], text)


def _is_ident_char(c: str) -> bool:
    return c.isalnum() or c == "_"


def _split_lines(text: str) -> list[str]:
    """Split after each newline, keeping line ends. Only ``\\n`` counts."""
    lines = []
    start = 0
    while True:
        nl = text.find("\n", start)
        if nl < 0:
            break
        lines.append(text[start:nl + 1])
        start = nl + 1
    if start < len(text):
        lines.append(text[start:])
    return lines


def _classify(buf: str, start: int) -> tuple[str | None, bool]:
    """Classify the text after a fence at *start*.

    Returns ``(kind, decided)``. ``decided`` is False when more input
    is needed to tell whether this is a marker.
    """
    rest = buf[start:start + _MAX_KIND + 1]
    undecided = False
    for kind in BLOCK_KINDS:
        if rest.startswith(kind):
            if len(rest) == len(kind):
                undecided = True
                continue
            if _is_ident_char(rest[len(kind)]):
                continue
            return kind, True
        if kind.startswith(rest):
            undecided = True
    return None, not undecided


@dataclass
class _OpenBlock:
    kind: str
    scan: int = 0


class StreamDecoder:
    """Turns one process's output chunks into ordered StreamEvents.

    One decoder per process. Not thread-safe; the supervisor feeds it
    from a single pump task. Pass ``escaped=True`` when the producer
    writes text through :func:`escape_text`.
    """

    def __init__(self, *, escaped: bool = False) -> None:
        self._escaped = escaped
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""
        self._scan = 0
        self._block: _OpenBlock | None = None
        self._phase = StreamPhase.IDLE
        self._tool_seq = 0
        self._last_tool_id = ""

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def failed(self) -> bool:
        return self._phase == StreamPhase.ERROR

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        """Append a chunk and return the events it completes."""
        if self.failed:
            logger.debug("decoder in error phase; ignoring %d chars", len(chunk))
            return []
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        if not chunk:
            return []
        self._buf += chunk
        return self._drain()

    def finish(self) -> list[StreamEvent]:
        """Flush everything held at end of stream.

        The decoder is reset to idle afterwards and may be reused.
        """
        if self.failed:
            return []
        tail = self._utf8.decode(b"", final=True)
        self._buf += tail
        events = self._drain()

        block = self._block
        buf = self._buf
        self._buf = ""
        self._scan = 0
        self._block = None

        if block is None:
            for line in _split_lines(buf):
                self._text(events, line)
        elif block.kind == KIND_THINKING:
            if buf:
                self._thinking(events, buf)
        elif block.kind == KIND_TOOL_USE:
            tool_id, name, payload = self._parse_tool_use_body(buf)
            logger.debug("stream ended inside tool_use block %s (%s)", tool_id, name)
            events.append(ToolUseBegin(
                tool_id=tool_id, name=name, partial_input=payload, partial=True,
            ))
        elif block.kind == KIND_TOOL_RESULT:
            tool_use_id, is_error, content = self._parse_tool_result_body(buf)
            events.append(ToolResult(
                tool_use_id=tool_use_id, content=content,
                is_error=is_error, partial=True,
            ))
        else:
            self._set_phase(StreamPhase.IDLE)
            for line in _split_lines(FENCE + block.kind + buf):
                self._text(events, line)

        self._set_phase(StreamPhase.IDLE)
        return events

    def fail(self, error: ErrorInfo) -> list[StreamEvent]:
        """Flush held output, then enter the terminal error phase.

        Later input is ignored.
        """
        if self.failed:
            return []
        try:
            events = self.finish()
        except ValueError:
            logger.exception("could not flush held output before failing")
            events = []
        self._set_phase(StreamPhase.ERROR)
        self._buf = ""
        self._block = None
        events.append(Fatal(error=error))
        return events

    # ── Internals ──

    def _set_phase(self, target: StreamPhase) -> None:
        validate_transition(self._phase, target)
        self._phase = target

    def _text(self, events: list[StreamEvent], text: str) -> None:
        if not text:
            return
        self._set_phase(StreamPhase.EMITTING_TEXT)
        if self._escaped:
            text = unescape_text(text)
        events.append(TextDelta(text=text))

    def _thinking(self, events: list[StreamEvent], text: str) -> None:
        if self._escaped:
            text = unescape_text(text)
        events.append(ThinkingDelta(text=text))

    def _drain(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        while True:
            if self._block is None:
                progressed = self._scan_text(events)
            else:
                progressed = self._scan_block(events)
            if not progressed:
                return events

    def _emit_complete_lines(
        self, events: list[StreamEvent], limit: int, scan: int,
    ) -> None:
        """Emit whole lines before *limit* and keep the rest buffered."""
        buf = self._buf
        cut = buf.rfind("\n", 0, limit) + 1
        if cut:
            for line in _split_lines(buf[:cut]):
                self._text(events, line)
            self._buf = buf[cut:]
        self._scan = max(scan - cut, 0)

    def _scan_text(self, events: list[StreamEvent]) -> bool:
        buf = self._buf
        pos = self._scan
        while True:
            i = buf.find(FENCE, pos)
            if i < 0:
                # A fence may start in the last two characters
                self._emit_complete_lines(
                    events, len(buf), max(pos, len(buf) - 2),
                )
                return False
            kind, decided = _classify(buf, i + len(FENCE))
            if not decided:
                self._emit_complete_lines(events, i, i)
                return False
            if kind is None:
                pos = i + 1
                continue

            for line in _split_lines(buf[:i]):
                self._text(events, line)
            rest = buf[i + len(FENCE) + len(kind):]
            self._scan = 0
            self._block = _OpenBlock(kind=kind)
            if kind == KIND_THINKING:
                self._set_phase(StreamPhase.THINKING)
                if rest.startswith("\n"):
                    rest = rest[1:]
                events.append(ThinkingStarted())
            else:
                self._set_phase(StreamPhase.IN_TOOL_BLOCK)
            self._buf = rest
            return True

    def _scan_block(self, events: list[StreamEvent]) -> bool:
        block = self._block
        buf = self._buf
        j = buf.find(FENCE, block.scan)
        if block.kind == KIND_THINKING:
            if j < 0:
                cut = buf.rfind("\n") + 1
                if cut:
                    for line in _split_lines(buf[:cut]):
                        self._thinking(events, line)
                    self._buf = buf[cut:]
                return False
            for line in _split_lines(buf[:j]):
                self._thinking(events, line)
            self._buf = buf[j + len(FENCE):]
            self._block = None
            self._set_phase(StreamPhase.IDLE)
            return True

        if j < 0:
            block.scan = max(len(buf) - 2, 0)
            return False
        body = buf[:j]
        self._buf = buf[j + len(FENCE):]
        self._block = None
        self._set_phase(StreamPhase.IDLE)
        events.extend(self._close_block(block.kind, body))
        return True

    def _next_tool_id(self) -> str:
        self._tool_seq += 1
        return f"tool-{self._tool_seq}"

    def _parse_tool_use_body(self, body: str) -> tuple[str, str, str]:
        content = body.strip()
        header, _, payload = content.partition("\n")
        parts = header.split()
        name = parts[0] if parts else ""
        tool_id = parts[1] if len(parts) > 1 else self._next_tool_id()
        self._last_tool_id = tool_id
        return tool_id, name, payload.strip()

    def _parse_tool_result_body(self, body: str) -> tuple[str, bool, str]:
        if "\n" in body:
            header, _, raw = body.partition("\n")
        else:
            header, raw = "", body
        parts = header.split()
        if parts:
            tool_use_id = parts[0]
            is_error = "error" in parts[1:]
        else:
            tool_use_id = self._last_tool_id
            is_error = False
        raw = raw.strip()
        content = raw
        try:
            decoded = json.loads(raw)
        except ValueError:
            decoded = None
        if isinstance(decoded, str):
            content = decoded
        return tool_use_id, is_error, content

    def _close_block(self, kind: str, body: str) -> list[StreamEvent]:
        if kind == KIND_TOOL_USE:
            tool_id, name, payload = self._parse_tool_use_body(body)
            tool_input: dict[str, Any]
            if not payload:
                tool_input = {}
            else:
                try:
                    parsed = json.loads(payload)
                except ValueError:
                    parsed = None
                if isinstance(parsed, dict):
                    tool_input = parsed
                else:
                    logger.debug("tool_use %s: payload is not a JSON object", tool_id)
                    tool_input = {"content": payload}
            return [ToolUseComplete(tool_id=tool_id, name=name, input=tool_input)]

        if kind == KIND_TOOL_RESULT:
            tool_use_id, is_error, content = self._parse_tool_result_body(body)
            return [ToolResult(
                tool_use_id=tool_use_id, content=content, is_error=is_error,
            )]

        if kind == KIND_COST:
            cost = _parse_cost(body)
            if cost is None:
                logger.debug("unparsable cost block: %r", body[:80])
                events: list[StreamEvent] = []
                for line in _split_lines(FENCE + kind + body + FENCE):
                    self._text(events, line)
                return events
            return [CostUpdate(cost_usd=cost)]

        if kind == KIND_RESULT:
            return _parse_result(body)

        raise ValueError(f"Unknown block kind: {kind}")


def _parse_cost(body: str) -> float | None:
    text = body.strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        value = data.get("total_cost_usd") if isinstance(data, dict) else None
        if value is None:
            return None
        text = str(value)
    try:
        return float(text.lstrip("$").strip())
    except ValueError:
        return None


def _parse_result(body: str) -> list[StreamEvent]:
    text = body.strip()
    if not text:
        return [Completed()]
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug("result block is not JSON: %r", text[:80])
        return [Completed()]
    if not isinstance(data, dict):
        return [Completed()]

    events: list[StreamEvent] = []
    cost = data.get("total_cost_usd")
    if cost is not None:
        try:
            events.append(CostUpdate(cost_usd=float(cost)))
        except (TypeError, ValueError):
            logger.debug("result block has non-numeric cost: %r", cost)
    errors = data.get("errors") or []
    if not isinstance(errors, list):
        errors = [errors]
    events.append(Completed(
        is_error=bool(data.get("is_error", False)),
        subtype=str(data.get("subtype") or ""),
        errors=[str(e) for e in errors],
    ))
    return events

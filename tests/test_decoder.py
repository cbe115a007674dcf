"""Tests for the fenced-block stream decoder.

Covers:
- Text, thinking, tool_use, tool_result, cost and result blocks
- Identical output for every way of splitting the same stream
- End-of-stream flushing of unclosed blocks
- Degraded (non-fatal) handling of malformed payloads
- Terminal error phase
"""
from __future__ import annotations

import pytest

from conduit.adapters.events import (
    Completed,
    CostUpdate,
    Fatal,
    TextDelta,
    ThinkingDelta,
    ThinkingStarted,
    ToolResult,
    ToolUseBegin,
    ToolUseComplete,
)
from conduit.engine.decoder import StreamDecoder
from conduit.engine.models import ErrorInfo, StreamPhase


def _decode(chunks) -> list:
    decoder = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.finish())
    return events


# A stream exercising every block kind, a non-protocol fence and
# multi-byte characters.
STREAM = (
    "Intro line\n"
    "```thinking\nweigh options\nchoose één```"
    "Let me look ```python\nx = 1\n``` done\n"
    "```tool_use\nRead toolu_1\n{\"file_path\": \"/tmp/a.py\"}```"
    "```tool_result toolu_1\n\"print('hi')\"```"
    "```cost\n0.25```"
    "All set ✓\n"
    "```result\n{\"subtype\": \"success\", \"is_error\": false, \"total_cost_usd\": 0.3}```"
    "trailing"
)


# ── Basic scenarios ──


def test_text_then_tool_use_across_chunks():
    events = _decode([
        "Hello ",
        "wor",
        "ld```tool_use\nfoo\n{\"x\":1}```",
        "!",
    ])
    assert events == [
        TextDelta(text="Hello world"),
        ToolUseComplete(tool_id="tool-1", name="foo", input={"x": 1}),
        TextDelta(text="!"),
    ]


def test_full_stream_events():
    events = _decode([STREAM])
    assert events == [
        TextDelta(text="Intro line\n"),
        ThinkingStarted(),
        ThinkingDelta(text="weigh options\n"),
        ThinkingDelta(text="choose één"),
        TextDelta(text="Let me look ```python\n"),
        TextDelta(text="x = 1\n"),
        TextDelta(text="``` done\n"),
        ToolUseComplete(
            tool_id="toolu_1", name="Read", input={"file_path": "/tmp/a.py"},
        ),
        ToolResult(tool_use_id="toolu_1", content="print('hi')"),
        CostUpdate(cost_usd=0.25),
        TextDelta(text="All set ✓\n"),
        CostUpdate(cost_usd=0.3),
        Completed(is_error=False, subtype="success", errors=[]),
        TextDelta(text="trailing"),
    ]


def test_text_is_emitted_per_complete_line():
    decoder = StreamDecoder()
    assert decoder.feed("one\ntwo\nthr") == [
        TextDelta(text="one\n"),
        TextDelta(text="two\n"),
    ]
    assert decoder.feed("ee\n") == [TextDelta(text="three\n")]
    assert decoder.finish() == []


def test_thinking_started_is_emitted_on_opener():
    decoder = StreamDecoder()
    assert decoder.feed("```thinking\n") == [ThinkingStarted()]
    assert decoder.phase == StreamPhase.THINKING
    assert decoder.feed("first\nsec") == [ThinkingDelta(text="first\n")]
    assert decoder.feed("ond```") == [ThinkingDelta(text="second")]
    assert decoder.phase == StreamPhase.IDLE


def test_unknown_fence_is_plain_text():
    events = _decode(["```bash\nls\n```\n"])
    assert events == [
        TextDelta(text="```bash\n"),
        TextDelta(text="ls\n"),
        TextDelta(text="```\n"),
    ]


def test_kind_prefix_with_identifier_char_is_plain_text():
    events = _decode(["```costly\n"])
    assert events == [TextDelta(text="```costly\n")]


# ── Chunk-split idempotence ──


def test_every_two_way_split_matches_single_chunk():
    reference = _decode([STREAM])
    for k in range(len(STREAM) + 1):
        assert _decode([STREAM[:k], STREAM[k:]]) == reference, f"split at {k}"


def test_char_by_char_matches_single_chunk():
    assert _decode(list(STREAM)) == _decode([STREAM])


def test_every_byte_split_matches_single_chunk():
    data = STREAM.encode("utf-8")
    reference = _decode([STREAM])
    for k in range(len(data) + 1):
        assert _decode([data[:k], data[k:]]) == reference, f"byte split at {k}"


def test_multibyte_character_straddling_chunks():
    data = "héllo\n".encode("utf-8")
    # Split inside the two-byte "é"
    events = _decode([data[:2], data[2:]])
    assert events == [TextDelta(text="héllo\n")]


# ── Tool blocks ──


def test_tool_ids_are_synthesized_in_order():
    events = _decode([
        "```tool_use\nRead\n{}```",
        "```tool_use\nGrep\n{\"pattern\": \"x\"}```",
    ])
    assert [e.tool_id for e in events] == ["tool-1", "tool-2"]
    assert events[0].input == {}


def test_invalid_tool_json_degrades_to_content():
    events = _decode(["```tool_use\nBash b1\n{not json```"])
    assert events == [
        ToolUseComplete(tool_id="b1", name="Bash", input={"content": "{not json"}),
    ]


def test_non_object_tool_json_degrades_to_content():
    events = _decode(["```tool_use\nBash b1\n[1, 2]```"])
    assert events[0].input == {"content": "[1, 2]"}


def test_tool_result_defaults_to_last_tool_id():
    events = _decode([
        "```tool_use\nRead r1\n{}```",
        "```tool_result\nplain output\n```",
    ])
    assert events[1] == ToolResult(tool_use_id="r1", content="plain output")


def test_tool_result_error_flag():
    events = _decode(["```tool_result t9 error\n\"denied\"```"])
    assert events == [
        ToolResult(tool_use_id="t9", content="denied", is_error=True),
    ]


# ── End of stream ──


def test_unclosed_tool_use_flushes_as_partial_begin():
    events = _decode(["Working\n```tool_use\nWrite w1\n{\"path\": \"a"])
    assert events == [
        TextDelta(text="Working\n"),
        ToolUseBegin(
            tool_id="w1", name="Write", partial_input="{\"path\": \"a", partial=True,
        ),
    ]


def test_unclosed_tool_result_flushes_as_partial():
    events = _decode(["```tool_result w1\nhalf a resu"])
    assert events == [
        ToolResult(tool_use_id="w1", content="half a resu", partial=True),
    ]


def test_unclosed_thinking_flushes_last_line():
    events = _decode(["```thinking\nstill going"])
    assert events == [ThinkingStarted(), ThinkingDelta(text="still going")]


def test_undecided_fence_at_eof_is_text():
    events = _decode(["look: ```tool"])
    assert events == [TextDelta(text="look: ```tool")]


def test_unclosed_cost_block_is_text():
    events = _decode(["```cost\n0.1"])
    assert events == [TextDelta(text="```cost\n"), TextDelta(text="0.1")]


def test_finish_resets_decoder():
    decoder = StreamDecoder()
    decoder.feed("abc")
    assert decoder.finish() == [TextDelta(text="abc")]
    assert decoder.phase == StreamPhase.IDLE
    assert decoder.finish() == []
    assert decoder.feed("def\n") == [TextDelta(text="def\n")]


# ── Cost and result ──


@pytest.mark.parametrize("body,expected", [
    ("0.5", 0.5),
    ("$1.25", 1.25),
    ("{\"total_cost_usd\": 0.75}", 0.75),
])
def test_cost_formats(body, expected):
    assert _decode([f"```cost\n{body}```"]) == [CostUpdate(cost_usd=expected)]


def test_unparsable_cost_degrades_to_text():
    events = _decode(["```cost\nabout a dollar```"])
    assert events == [
        TextDelta(text="```cost\n"),
        TextDelta(text="about a dollar```"),
    ]


def test_error_result():
    events = _decode([
        "```result\n{\"subtype\": \"error_during_execution\", \"is_error\": true, "
        "\"errors\": [\"rate limited\"]}```",
    ])
    assert events == [
        Completed(
            is_error=True, subtype="error_during_execution", errors=["rate limited"],
        ),
    ]


def test_empty_result_block():
    assert _decode(["```result\n```"]) == [Completed()]


# ── Failure ──


def test_fail_is_terminal():
    decoder = StreamDecoder()
    decoder.feed("partial")
    error = ErrorInfo(message="crashed", exit_code=2)
    assert decoder.fail(error) == [TextDelta(text="partial"), Fatal(error=error)]
    assert decoder.phase == StreamPhase.ERROR
    assert decoder.feed("more text\n") == []
    assert decoder.finish() == []
    assert decoder.fail(error) == []


def test_fail_flushes_open_block_before_fatal():
    decoder = StreamDecoder()
    assert decoder.feed('```tool_use\nEdit t9\n{"path": "a.py"') == []
    error = ErrorInfo(message="output pump failed", kind="decode")
    assert decoder.fail(error) == [
        ToolUseBegin(
            tool_id="t9", name="Edit", partial_input='{"path": "a.py"', partial=True,
        ),
        Fatal(error=error),
    ]


def test_fail_after_finish_only_adds_fatal():
    decoder = StreamDecoder()
    assert decoder.feed("done\n") == [TextDelta(text="done\n")]
    assert decoder.finish() == []
    error = ErrorInfo(message="exit 3", exit_code=3)
    assert decoder.fail(error) == [Fatal(error=error)]

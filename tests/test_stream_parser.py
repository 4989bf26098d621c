"""Tests for the upstream SSE parser (gateway/core/stream_parser.py).

The parser must produce the same events however the byte stream is split,
skip malformed lines, stop on an explicit error object and treat
end-of-transport as an implicit terminal.
"""
from __future__ import annotations

import json
from collections.abc import AsyncIterator

import pytest

from gateway.contracts.llm_types import UpstreamEvent
from gateway.core.stream_parser import UpstreamStreamParser, parse_stream


def _line(obj: object) -> str:
    return "data: " + json.dumps(obj, ensure_ascii=False) + "\n\n"


def _content(text: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]}


def _tool_fragment(index: int, *, id: str | None = None, name: str | None = None, args: str | None = None) -> dict:
    function: dict = {}
    if name is not None:
        function["name"] = name
    if args is not None:
        function["arguments"] = args
    tc: dict = {"index": index, "function": function}
    if id is not None:
        tc["id"] = id
    return {"choices": [{"index": 0, "delta": {"tool_calls": [tc]}, "finish_reason": None}]}


def _run(parser: UpstreamStreamParser, pieces: list[bytes]) -> list[UpstreamEvent]:
    events: list[UpstreamEvent] = []
    for piece in pieces:
        events.extend(parser.feed(piece))
    events.extend(parser.close())
    return events


def _strip_raw(events: list[UpstreamEvent]) -> list[dict]:
    return [{k: v for k, v in e.items() if k != "raw"} for e in events]


STREAM = (
    _line(_content("Hello, "))
    + _line(_content("wörld 你好"))
    + _line(_tool_fragment(0, id="call_1", name="calculate", args='{"expr'))
    + _line(_tool_fragment(0, args='ession": "1+2"}'))
    + "data: [DONE]\n\n"
).encode("utf-8")


class TestChunkBoundaries:

    def test_single_chunk(self) -> None:
        events = _run(UpstreamStreamParser(), [STREAM])
        kinds = [e["type"] for e in events]
        assert kinds == ["content", "content", "tool_call_fragment", "tool_call_fragment", "terminal"]
        assert events[1]["text"] == "wörld 你好"
        assert events[-1]["implicit"] is False

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 64])
    def test_any_split_gives_same_events(self, size: int) -> None:
        """Splitting at arbitrary byte offsets, including inside multibyte characters."""
        expected = _strip_raw(_run(UpstreamStreamParser(), [STREAM]))
        pieces = [STREAM[i:i + size] for i in range(0, len(STREAM), size)]
        assert _strip_raw(_run(UpstreamStreamParser(), pieces)) == expected

    def test_split_inside_multibyte_character(self) -> None:
        data = _line(_content("你好")).encode("utf-8")
        cut = data.index("你".encode("utf-8")) + 1
        parser = UpstreamStreamParser()
        assert parser.feed(data[:cut]) == []
        events = parser.feed(data[cut:])
        assert [e["text"] for e in events if e["type"] == "content"] == ["你好"]

    def test_crlf_line_endings(self) -> None:
        data = ("data: " + json.dumps(_content("hi")) + "\r\n\r\ndata: [DONE]\r\n\r\n").encode()
        events = _run(UpstreamStreamParser(), [data])
        assert [e["type"] for e in events] == ["content", "terminal"]
        assert events[0]["text"] == "hi"


class TestTermination:

    def test_nothing_after_done(self) -> None:
        data = STREAM + _line(_content("late")).encode()
        parser = UpstreamStreamParser()
        events = _run(parser, [data])
        assert events[-1]["type"] == "terminal"
        assert all(e.get("text") != "late" for e in events)
        assert parser.finished

    def test_implicit_terminal_on_close(self) -> None:
        parser = UpstreamStreamParser()
        events = _run(parser, [_line(_content("partial")).encode()])
        assert events[-1] == {"type": "terminal", "implicit": True, "finish_reason": None}

    def test_unterminated_last_line_is_flushed(self) -> None:
        parser = UpstreamStreamParser()
        data = ("data: " + json.dumps(_content("tail"))).encode()
        events = _run(parser, [data])
        assert [e["type"] for e in events] == ["content", "terminal"]
        assert events[0]["text"] == "tail"

    def test_finish_reason_is_reported(self) -> None:
        chunk = {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}
        parser = UpstreamStreamParser()
        events = _run(parser, [(_line(chunk) + "data: [DONE]\n\n").encode()])
        assert parser.finish_reason == "tool_calls"
        assert events[-1]["finish_reason"] == "tool_calls"


class TestMalformedInput:

    def test_malformed_json_is_skipped(self) -> None:
        data = ("data: {not json}\n\n" + _line(_content("ok")) + "data: [DONE]\n\n").encode()
        parser = UpstreamStreamParser()
        events = _run(parser, [data])
        assert [e["type"] for e in events] == ["content", "terminal"]
        assert parser.lines_dropped == 1

    def test_non_data_lines_are_ignored(self) -> None:
        data = (": keep-alive\nevent: message\nid: 7\n" + _line(_content("x")) + "data: [DONE]\n\n").encode()
        events = _run(UpstreamStreamParser(), [data])
        assert [e["type"] for e in events] == ["content", "terminal"]

    def test_chunk_without_delta_yields_empty_content_with_raw(self) -> None:
        chunk = {"id": "c1", "choices": []}
        events = UpstreamStreamParser().feed(_line(chunk).encode())
        assert events == [{"type": "content", "text": "", "raw": chunk}]


class TestErrors:

    def test_error_object_stops_parsing(self) -> None:
        data = (
            _line(_content("a"))
            + _line({"error": {"code": "rate_limited", "message": "slow down"}})
            + _line(_content("b"))
        ).encode()
        parser = UpstreamStreamParser()
        events = _run(parser, [data])
        assert [e["type"] for e in events] == ["content", "error"]
        assert events[1]["code"] == "rate_limited"
        assert events[1]["message"] == "slow down"
        assert parser.failed
        assert parser.feed(_line(_content("c")).encode()) == []


class TestToolFragments:

    def test_fragment_fields(self) -> None:
        events = UpstreamStreamParser().feed(
            _line(_tool_fragment(2, id="call_x", name="searchWeb", args='{"q')).encode()
        )
        assert events[0]["type"] == "tool_call_fragment"
        assert events[0]["index"] == 2
        assert events[0]["id"] == "call_x"
        assert events[0]["name"] == "searchWeb"
        assert events[0]["arguments"] == '{"q'

    def test_missing_index_falls_back_to_position(self) -> None:
        chunk = {"choices": [{"delta": {"tool_calls": [
            {"id": "a", "function": {"name": "calculate"}},
            {"id": "b", "function": {"name": "getCurrentTime"}},
        ]}}]}
        events = UpstreamStreamParser().feed(_line(chunk).encode())
        assert [e["index"] for e in events] == [0, 1]

    def test_decoded_arguments_are_reserialized(self) -> None:
        chunk = {"choices": [{"message": {"tool_calls": [
            {"index": 0, "id": "a", "function": {"name": "calculate", "arguments": {"expression": "1+1"}}},
        ]}}]}
        events = UpstreamStreamParser().feed(_line(chunk).encode())
        assert json.loads(events[0]["arguments"]) == {"expression": "1+1"}


class TestParseStream:

    @pytest.mark.anyio
    async def test_drives_parser_over_async_source(self) -> None:
        async def source() -> AsyncIterator[bytes]:
            for i in range(0, len(STREAM), 5):
                yield STREAM[i:i + 5]

        events = [e async for e in parse_stream(source())]
        assert [e["type"] for e in events][-1] == "terminal"
        assert "".join(e["text"] for e in events if e["type"] == "content") == "Hello, wörld 你好"

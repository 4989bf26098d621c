"""Incremental parser for the upstream model's SSE byte stream.

Bytes arrive in arbitrary chunks; a JSON event, a ``data:`` line or even a
multi-byte UTF-8 character may be split across chunk boundaries.  The parser
keeps an append-only text buffer, processes every complete line and holds the
trailing partial line for the next chunk.

Events produced (see ``gateway.contracts.llm_types``):

  - ``content``            — a content delta (empty for chunks with no delta)
  - ``tool_call_fragment`` — one partial tool call
  - ``terminal``           — ``[DONE]`` received, or end-of-transport
  - ``error``              — explicit error object from the upstream

After ``[DONE]`` nothing more is emitted, but the caller keeps feeding until
the transport closes.  After an ``error`` the parser stops for good.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from gateway.contracts.llm_types import (
    ContentFragmentEvent,
    OpenAIStreamChunk,
    StreamChoice,
    TerminalEvent,
    ToolCallDelta,
    ToolCallFragmentEvent,
    UpstreamErrorEvent,
    UpstreamEvent,
)

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"
_DONE_MARKER = "[DONE]"


class UpstreamStreamParser:
    """Stateful line parser.  One instance per upstream call."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False
        self._failed = False
        self._finish_reason: str | None = None
        self.chunks_seen = 0
        self.lines_dropped = 0

    @property
    def finished(self) -> bool:
        """True once ``[DONE]`` or an error was seen."""
        return self._done or self._failed

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def finish_reason(self) -> str | None:
        """Last ``finish_reason`` reported by any choice."""
        return self._finish_reason

    def feed(self, data: bytes | str) -> list[UpstreamEvent]:
        """Consume one transport chunk and return the events it completes."""
        if self._failed:
            return []
        text = self._decoder.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        events: list[UpstreamEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            events.extend(self._process_line(line.rstrip("\r")))
            if self._failed:
                self._buffer = ""
                break
        return events

    def close(self) -> list[UpstreamEvent]:
        """Signal end-of-transport.

        Flushes a trailing unterminated line and yields an implicit terminal
        event when the upstream never sent ``[DONE]``.
        """
        if self._failed:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events: list[UpstreamEvent] = []
        if tail.strip():
            events.extend(self._process_line(tail.rstrip("\r")))
        if not self.finished:
            logger.debug("Upstream closed without [DONE]; treating as terminal")
            self._done = True
            terminal: TerminalEvent = {
                "type": "terminal",
                "implicit": True,
                "finish_reason": self._finish_reason,
            }
            events.append(terminal)
        return events

    def _process_line(self, line: str) -> list[UpstreamEvent]:
        if self._done or not line.startswith(_DATA_PREFIX):
            # Blank separators, ``event:``/``id:`` fields and SSE comments.
            return []
        payload = line[len(_DATA_PREFIX):].strip()
        if not payload:
            return []
        if payload == _DONE_MARKER:
            self._done = True
            terminal: TerminalEvent = {
                "type": "terminal",
                "implicit": False,
                "finish_reason": self._finish_reason,
            }
            return [terminal]

        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError as exc:
            self.lines_dropped += 1
            logger.warning(f"⚠️ Dropping malformed upstream line ({exc.msg}): {payload[:120]}")
            return []
        if not isinstance(chunk, dict):
            self.lines_dropped += 1
            logger.warning(f"⚠️ Dropping non-object upstream payload: {payload[:120]}")
            return []

        self.chunks_seen += 1
        error = chunk.get("error")
        if error:
            self._failed = True
            return [_error_event(error)]
        return self._chunk_events(chunk)

    def _chunk_events(self, chunk: OpenAIStreamChunk) -> list[UpstreamEvent]:
        events: list[UpstreamEvent] = []
        for choice in chunk.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            if choice.get("finish_reason"):
                self._finish_reason = choice.get("finish_reason")
            events.extend(_choice_events(choice))

        if events:
            events[0]["raw"] = chunk
        else:
            empty: ContentFragmentEvent = {"type": "content", "text": "", "raw": chunk}
            events.append(empty)
        return events


def _choice_events(choice: StreamChoice) -> list[UpstreamEvent]:
    # Streaming endpoints send ``delta``; some compatible endpoints send a
    # complete ``message`` instead.
    body = choice.get("delta") or choice.get("message") or {}
    if not isinstance(body, dict):
        return []
    events: list[UpstreamEvent] = []
    content = body.get("content")
    if isinstance(content, str) and content:
        text_event: ContentFragmentEvent = {"type": "content", "text": content}
        events.append(text_event)
    for position, tc in enumerate(body.get("tool_calls") or []):
        if isinstance(tc, dict):
            events.append(_fragment_event(tc, position))
    return events


def _fragment_event(tc: ToolCallDelta, position: int) -> ToolCallFragmentEvent:
    function = tc.get("function") or {}
    index = tc.get("index")
    arguments = function.get("arguments")
    if arguments is not None and not isinstance(arguments, str):
        # Non-streaming shapes sometimes carry already-decoded arguments.
        arguments = json.dumps(arguments, ensure_ascii=False)
    return {
        "type": "tool_call_fragment",
        "index": index if isinstance(index, int) else position,
        "id": tc.get("id") or None,
        "name": function.get("name") or None,
        "arguments": arguments,
    }


def _error_event(error: object) -> UpstreamErrorEvent:
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message") or json.dumps(error, ensure_ascii=False)
    else:
        code = None
        message = str(error)
    logger.error(f"❌ Upstream error in stream: code={code} message={message}")
    return {
        "type": "error",
        "code": str(code) if code is not None else None,
        "message": str(message),
    }


async def parse_stream(source: AsyncIterable[bytes]) -> AsyncIterator[UpstreamEvent]:
    """Drive a parser over an async byte source.

    The source is drained to the end even after ``[DONE]``; iteration stops
    early only on an upstream error.
    """
    parser = UpstreamStreamParser()
    async for chunk in source:
        for event in parser.feed(chunk):
            yield event
        if parser.failed:
            return
    for event in parser.close():
        yield event

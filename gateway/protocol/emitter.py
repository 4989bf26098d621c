"""Typed SSE event emitter and parser — protocol-enforced serialization.

Every SSE frame the gateway writes passes through ``emit()``.
Two entry points:

  ``emit(ClientEvent)``   — serialize a typed event object to SSE wire format.
  ``parse_event(dict)``   — deserialize a wire-format dict back into the
                            correct ClientEvent subclass (inverse of ``emit``).
                            Use in tests and in the CLI client.

``ClientEventEmitter`` is the per-request front end used by the agent loop.
It owns the reasoning step counter and the terminal-marker guarantee: every
stream it produces ends with exactly one ``data: [DONE]`` frame.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from pydantic import ValidationError

from gateway.contracts.json_types import JSONValue
from gateway.protocol.events import (
    ClientEvent,
    CompletionChunkEvent,
    ErrorEvent,
    RawChunkEvent,
    ReasoningEvent,
)
from gateway.protocol.registry import EVENT_REGISTRY

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


class ProtocolSerializationError(Exception):
    """Raised when an event fails protocol validation.

    Callers (stream generators) must catch this, emit an ErrorEvent followed
    by the terminal marker, and terminate the stream.
    """


def emit(event: ClientEvent) -> str:
    """Serialize a ClientEvent to SSE wire format.

    Returns ``data: {json}\\n\\n``.

    Raises TypeError for non-ClientEvent arguments.
    Raises ValueError for unregistered event kinds.
    """
    if not isinstance(event, ClientEvent):
        raise TypeError(
            f"emit() requires a ClientEvent, got {type(event).__name__}."
        )

    if event.kind not in EVENT_REGISTRY:
        raise ValueError(
            f"Unknown event kind '{event.kind}'. "
            f"Register it in gateway/protocol/registry.py."
        )

    try:
        payload = json.dumps(event.wire(), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise ProtocolSerializationError(
            f"Event '{event.kind}' is not JSON-serializable: {exc}"
        ) from exc
    return f"data: {payload}\n\n"


def parse_event(data: Mapping[str, object]) -> ClientEvent:
    """Deserialize a wire-format dict back into the correct ClientEvent subclass.

    The chunk-shaped events carry no ``type`` field, so dispatch is structural:
    ``type == "reasoning"``, then an ``error`` object, then a chunk whose
    ``metadata.messageType`` marks it as gateway-authored, else a raw
    upstream replay.

    Raises ``ProtocolSerializationError`` for malformed events.
    """
    if data.get("type") == "reasoning":
        kind = ReasoningEvent.kind
    elif "error" in data:
        kind = ErrorEvent.kind
    elif isinstance(data.get("metadata"), Mapping) and "choices" in data:
        kind = CompletionChunkEvent.kind
    elif "choices" in data:
        return RawChunkEvent(chunk=dict(data))
    else:
        raise ProtocolSerializationError(
            f"Unrecognised event payload with keys {sorted(data.keys())}"
        )

    model_class = EVENT_REGISTRY[kind]
    try:
        return model_class.model_validate(dict(data))
    except ValidationError as exc:
        raise ProtocolSerializationError(
            f"Event '{kind}' failed deserialization: {exc}"
        ) from exc


def _compact(value: JSONValue | Mapping[str, object]) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class ClientEventEmitter:
    """Per-request serializer for the reasoning and answer channels.

    Each method returns one SSE frame as a string; the caller yields it.
    Not shared between requests.
    """

    def __init__(self, trace_id: str = "") -> None:
        self._trace_id = trace_id
        self._step = 0
        self._terminated = False
        self._answered = False
        self.reasoning_log: list[str] = []

    @property
    def step(self) -> int:
        return self._step

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def answered(self) -> bool:
        """True once a final answer or replayed upstream content was sent."""
        return self._answered

    def _frame(self, event: ClientEvent) -> str:
        if self._terminated:
            raise ProtocolSerializationError(
                f"Cannot emit '{event.kind}' after the terminal marker"
            )
        return emit(event)

    # ── Reasoning channel ────────────────────────────────────────────────

    def reasoning(self, content: str) -> str:
        self.reasoning_log.append(content)
        return self._frame(ReasoningEvent(content=content))

    def thought(self, text: str) -> str:
        """Numbered thought entry; advances the request's step counter."""
        self._step += 1
        logger.debug(f"[{self._trace_id[:8]}] 💭 Thought {self._step}")
        return self.reasoning(f"💭 **Thought (Step {self._step}):**\n{text}")

    def action(self, tool_name: str, arguments: Mapping[str, object]) -> list[str]:
        """Action entry: the tool being called, then its arguments."""
        return [
            self.reasoning(f"🔧 **Action:** calling tool `{tool_name}`"),
            self.reasoning(f"📋 **Arguments:** `{_compact(arguments)}`"),
        ]

    def observation(self, summary: str) -> str:
        return self.reasoning(f"👁️ **Observation:** {summary}")

    # ── Answer channel ───────────────────────────────────────────────────

    def final_answer(self, content: str) -> str:
        """The single non-foldable answer message of a tool round."""
        frame = self._frame(
            CompletionChunkEvent.final_answer(f"✅ **Final Answer:**\n{content}\n")
        )
        self._answered = True
        return frame

    def passthrough(self, chunk: Mapping[str, object]) -> str:
        """Replay an upstream chunk unchanged."""
        frame = self._frame(RawChunkEvent(chunk=dict(chunk)))
        self._answered = True
        return frame

    # ── Termination ──────────────────────────────────────────────────────

    def error(self, message: str, code: str | None = None) -> str:
        logger.warning(f"[{self._trace_id[:8]}] ❌ Stream error: {message}")
        return self._frame(ErrorEvent.of(message, code=code))

    def done(self) -> str:
        """Return the terminal marker once; later calls return ``""``."""
        if self._terminated:
            return ""
        self._terminated = True
        return DONE_FRAME

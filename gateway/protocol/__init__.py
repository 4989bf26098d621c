"""Client-facing SSE protocol: event models, registry and emitter."""

from gateway.protocol.emitter import (
    DONE_FRAME,
    ClientEventEmitter,
    ProtocolSerializationError,
    emit,
    parse_event,
)
from gateway.protocol.events import (
    ClientEvent,
    CompletionChunkEvent,
    ErrorEvent,
    RawChunkEvent,
    ReasoningEvent,
)

__all__ = [
    "DONE_FRAME",
    "ClientEvent",
    "ClientEventEmitter",
    "CompletionChunkEvent",
    "ErrorEvent",
    "ProtocolSerializationError",
    "RawChunkEvent",
    "ReasoningEvent",
    "emit",
    "parse_event",
]

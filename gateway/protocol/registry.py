"""Event registry — canonical mapping of event kinds to model classes.

Invariants:
  - Every event the gateway can emit has an entry.
  - Unknown event kinds cannot be emitted (emitter rejects them).
  - Registry is frozen at import time. No runtime mutation.
"""

from __future__ import annotations

from typing import Type

from gateway.protocol.events import (
    ClientEvent,
    CompletionChunkEvent,
    ErrorEvent,
    RawChunkEvent,
    ReasoningEvent,
)

EVENT_REGISTRY: dict[str, Type[ClientEvent]] = {
    ReasoningEvent.kind: ReasoningEvent,
    CompletionChunkEvent.kind: CompletionChunkEvent,
    RawChunkEvent.kind: RawChunkEvent,
    ErrorEvent.kind: ErrorEvent,
}

ALL_EVENT_KINDS: frozenset[str] = frozenset(EVENT_REGISTRY.keys())


def get_event_class(kind: str) -> Type[ClientEvent]:
    """Look up the model class for an event kind. Raises KeyError for unknown kinds."""
    return EVENT_REGISTRY[kind]


def is_known_event(kind: str) -> bool:
    """Return ``True`` when ``kind`` is a registered client event kind."""
    return kind in EVENT_REGISTRY

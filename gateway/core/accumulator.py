"""Fold streamed tool-call fragments into complete tool-call requests.

Fragments are addressed by ``index`` and an optional ``id``.  Entries live in
an ordered table keyed by ``(index, id-or-placeholder)``:

  - the first fragment for a key starts ``name=""`` and ``arguments=""``
  - a later ``name`` replaces the stored one
  - ``arguments`` text is appended in arrival order, never reordered

OpenAI-style streams only send the id on the first fragment of a call; an
id-less fragment therefore continues the most recent entry opened at the same
index.  An id-less fragment with no prior entry opens the placeholder key
``(index, None)``.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from gateway.contracts.llm_types import ToolCallEntry, ToolCallFragmentEvent

logger = logging.getLogger(__name__)

_Key = tuple[int, str | None]


@dataclass(frozen=True)
class ToolCallRequest:
    """A completed tool call; ``arguments`` is still raw JSON text."""

    id: str
    index: int
    name: str
    arguments: str

    def to_entry(self) -> ToolCallEntry:
        """OpenAI ``tool_calls`` entry for the assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class _PartialCall:
    index: int
    id: str | None
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Ordered table of partial tool calls for one upstream turn."""

    def __init__(self) -> None:
        self._entries: dict[_Key, _PartialCall] = {}
        self._latest_for_index: dict[int, _Key] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, fragment: ToolCallFragmentEvent) -> None:
        index = fragment["index"]
        call_id = fragment.get("id")
        key = self._resolve_key(index, call_id)

        entry = self._entries.get(key)
        if entry is None:
            entry = _PartialCall(index=index, id=call_id)
            self._entries[key] = entry
        self._latest_for_index[index] = key

        name = fragment.get("name")
        if name:
            entry.name = name
        arguments = fragment.get("arguments")
        if arguments:
            entry.arguments += arguments

    def _resolve_key(self, index: int, call_id: str | None) -> _Key:
        if call_id:
            placeholder = (index, None)
            # A call that streamed id-less fragments first adopts its id late.
            if placeholder in self._entries and (index, call_id) not in self._entries:
                entry = self._entries.pop(placeholder)
                entry.id = call_id
                self._entries[(index, call_id)] = entry
            return (index, call_id)
        return self._latest_for_index.get(index, (index, None))

    def finish(self) -> list[ToolCallRequest]:
        """Project the table into requests sorted by ``index`` (stable)."""
        requests: list[ToolCallRequest] = []
        for entry in self._entries.values():
            if not entry.name:
                logger.warning(
                    f"⚠️ Dropping tool call at index {entry.index} with no function name "
                    f"(args={entry.arguments[:80]!r})"
                )
                continue
            requests.append(
                ToolCallRequest(
                    id=entry.id or f"call_{uuid.uuid4().hex[:24]}",
                    index=entry.index,
                    name=entry.name,
                    arguments=entry.arguments,
                )
            )
        requests.sort(key=lambda r: r.index)
        return requests

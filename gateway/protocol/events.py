"""Client event models — single source of truth for the SSE wire format.

Every SSE frame the gateway writes (other than the literal ``[DONE]``
terminal marker) is an instance of a ``ClientEvent`` subclass.  Raw dicts are
forbidden; the emitter serializes through these models.

Two logical channels share one stream:

  - reasoning (foldable): ``ReasoningEvent`` — ``{"type": "reasoning", "content"}``
  - answer (non-foldable): ``CompletionChunkEvent`` — a chat-completion-chunk
    shaped object with ``metadata.foldable = false``, or ``RawChunkEvent`` when
    the upstream's own chunks are replayed verbatim.

``ErrorEvent`` carries ``{"error": {"code", "message"}}`` and is always followed
by the terminal marker.

Extra fields policy: events use ``extra="forbid"`` — strict outbound contract.
"""

from __future__ import annotations

import time
import uuid
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

from gateway.config import AGENT_MODEL_NAME
from gateway.models.base import CamelModel


class ClientEvent(BaseModel):
    """Base class for all client events.

    ``kind`` is the registry key; it is not part of the wire payload because
    the chunk-shaped events have no ``type`` field.
    """

    model_config = ConfigDict(extra="forbid")

    kind: ClassVar[str] = ""

    def wire(self) -> dict[str, object]:
        """Return the JSON-ready payload for the ``data:`` line."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ═══════════════════════════════════════════════════════════════════════
# Reasoning channel (foldable)
# ═══════════════════════════════════════════════════════════════════════


class ReasoningEvent(ClientEvent):
    """One thought / action / observation entry in the foldable trace."""

    kind: ClassVar[str] = "reasoning"

    type: Literal["reasoning"] = "reasoning"
    content: str


# ═══════════════════════════════════════════════════════════════════════
# Answer channel (non-foldable)
# ═══════════════════════════════════════════════════════════════════════


class CompletionDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["assistant"] = "assistant"
    content: str


class CompletionChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    index: int = 0
    delta: CompletionDelta
    finish_reason: str | None = None


class ChunkMetadata(CamelModel):
    """Client rendering hints.  Serialized camelCase (``messageType``)."""

    model_config = ConfigDict(extra="forbid")

    foldable: bool = False
    message_type: Literal["final_answer", "normal", "thought_chain"] = "final_answer"
    foldable_type: str | None = None


def _message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class CompletionChunkEvent(ClientEvent):
    """Gateway-authored answer text in chat-completion-chunk shape."""

    kind: ClassVar[str] = "completion"

    id: str = Field(default_factory=_message_id)
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = AGENT_MODEL_NAME
    choices: list[CompletionChoice]
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)

    def wire(self) -> dict[str, object]:
        # finish_reason is meaningful as an explicit null, so only the
        # metadata block drops unset keys.
        data = self.model_dump(by_alias=True, exclude={"metadata"})
        data["metadata"] = self.metadata.model_dump(by_alias=True, exclude_none=True)
        return data

    @property
    def text(self) -> str:
        return "".join(c.delta.content for c in self.choices)

    @classmethod
    def final_answer(cls, content: str) -> CompletionChunkEvent:
        """The single terminal answer message of a tool round."""
        return cls(
            choices=[CompletionChoice(delta=CompletionDelta(content=content), finish_reason="stop")],
            metadata=ChunkMetadata(
                foldable=False,
                message_type="final_answer",
                foldable_type="final_answer",
            ),
        )


class RawChunkEvent(ClientEvent):
    """An upstream chunk replayed to the client unchanged."""

    kind: ClassVar[str] = "raw"

    chunk: dict[str, object]

    def wire(self) -> dict[str, object]:
        return dict(self.chunk)


# ═══════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str | None = None
    message: str


class ErrorEvent(ClientEvent):
    """Unrecoverable request failure.  Always followed by the terminal marker."""

    kind: ClassVar[str] = "error"

    error: ErrorBody

    @classmethod
    def of(cls, message: str, code: str | None = None) -> ErrorEvent:
        return cls(error=ErrorBody(code=code, message=message))

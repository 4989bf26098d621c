"""Typed structures for OpenAI-format chat messages and the upstream boundary.

Every shape exchanged with the upstream model is defined here as a TypedDict
so mypy can verify field access statically.

Organisation:
  Chat messages          → ``SystemMessage``, ``UserMessage``,
                           ``AssistantMessage``, ``ToolResultMessage``,
                           ``ChatMessage`` (union)
  Tool schemas           → ``OpenAIPropertyDef``, ``ToolParametersDict``,
                           ``ToolFunctionDict``, ``ToolSchemaDict``,
                           ``ToolCallFunction``, ``ToolCallEntry``
  Request payload        → ``UpstreamRequestPayload``
  Streaming chunks       → ``ToolCallFunctionDelta``, ``ToolCallDelta``,
                           ``StreamDelta``, ``StreamChoice``,
                           ``UpstreamErrorBody``, ``OpenAIStreamChunk``
  Upstream events        → ``ContentFragmentEvent``, ``ToolCallFragmentEvent``,
                           ``TerminalEvent``, ``UpstreamErrorEvent``,
                           ``UpstreamEvent`` (union)
"""
from __future__ import annotations

from typing import Literal, Union

from typing_extensions import NotRequired, Required, TypedDict

from gateway.contracts.json_types import JSONValue


# ── Chat message shapes ────────────────────────────────────────────────────────


class ToolCallFunction(TypedDict):
    """The ``function`` field inside an OpenAI tool call.

    ``arguments`` is a JSON-encoded string — callers must ``json.loads`` it.
    """

    name: str
    arguments: str


class ToolCallEntry(TypedDict):
    """One tool call in an assistant message."""

    id: str
    type: str
    function: ToolCallFunction


class SystemMessage(TypedDict):
    """A system-role prompt message."""

    role: Literal["system"]
    content: str


class UserMessage(TypedDict):
    """A user-role message."""

    role: Literal["user"]
    content: str


class AssistantMessage(TypedDict, total=False):
    """An assistant reply — may be text-only or contain tool calls."""

    role: Required[Literal["assistant"]]
    content: str | None
    tool_calls: list[ToolCallEntry]


class ToolResultMessage(TypedDict):
    """A tool result appended to the conversation after a tool call."""

    role: Literal["tool"]
    tool_call_id: str
    name: str
    content: str


ChatMessage = Union[SystemMessage, UserMessage, AssistantMessage, ToolResultMessage]
"""Discriminated union of all OpenAI chat message shapes."""


# ── Tool schema shapes (OpenAI function-calling format) ───────────────────────


class OpenAIPropertyDef(TypedDict, total=False):
    """JSON Schema definition for a single function parameter."""

    type: Required[str]
    description: str
    enum: list[str]
    minimum: float
    maximum: float
    default: JSONValue


class ToolParametersDict(TypedDict, total=False):
    """JSON Schema ``parameters`` block inside an OpenAI tool definition."""

    type: str
    properties: dict[str, OpenAIPropertyDef]
    required: list[str]


class ToolFunctionDict(TypedDict):
    """The ``function`` field of an OpenAI tool definition."""

    name: str
    description: str
    parameters: NotRequired[ToolParametersDict]


class ToolSchemaDict(TypedDict):
    """A single OpenAI-format tool definition (``{type: function, function: {...}}``)."""

    type: str
    function: ToolFunctionDict


# ── Request payload ───────────────────────────────────────────────────────────


class UpstreamRequestPayload(TypedDict):
    """Request body sent to the upstream chat-completions endpoint."""

    model: str
    messages: list[ChatMessage]
    tools: list[ToolSchemaDict]
    tool_choice: str
    max_tokens: int
    temperature: float
    stream: bool


# ── Streaming chunk shapes ────────────────────────────────────────────────────


class ToolCallFunctionDelta(TypedDict, total=False):
    """Incremental function info in a streaming tool call delta."""

    name: str
    arguments: str


class ToolCallDelta(TypedDict, total=False):
    """One tool call fragment in a streaming delta."""

    index: int
    id: str
    type: str
    function: ToolCallFunctionDelta


class StreamDelta(TypedDict, total=False):
    """The ``delta`` field inside a streaming choice."""

    role: str
    content: str | None
    tool_calls: list[ToolCallDelta]


class StreamMessage(TypedDict, total=False):
    """Complete ``message`` some OpenAI-compatible endpoints send instead of a delta."""

    role: str
    content: str | None
    tool_calls: list[ToolCallDelta]


class StreamChoice(TypedDict, total=False):
    """One choice in a streaming SSE chunk."""

    index: int
    delta: StreamDelta
    message: StreamMessage
    finish_reason: str | None


class UpstreamErrorBody(TypedDict, total=False):
    """Explicit error object an upstream may place in a stream chunk."""

    code: str | int
    message: str


class OpenAIStreamChunk(TypedDict, total=False):
    """One SSE data chunk from the upstream streaming API."""

    id: str
    object: str
    created: int
    model: str
    choices: list[StreamChoice]
    error: UpstreamErrorBody


# ── Upstream events (yielded by the stream parser) ────────────────────────────


class ContentFragmentEvent(TypedDict):
    """Incremental content text.

    ``raw`` carries the chunk that produced the event so a text-only turn can
    be replayed to the client verbatim.  Every parsed chunk surfaces on exactly
    one event carrying it; a chunk with neither content nor tool-call deltas
    (role preamble, ``finish_reason``) yields an empty-text fragment.
    """

    type: Literal["content"]
    text: str
    raw: NotRequired[OpenAIStreamChunk]


class ToolCallFragmentEvent(TypedDict):
    """One partial tool call addressed by ``index`` and an optional ``id``."""

    type: Literal["tool_call_fragment"]
    index: int
    id: str | None
    name: str | None
    arguments: str | None
    raw: NotRequired[OpenAIStreamChunk]


class TerminalEvent(TypedDict):
    """End of the upstream turn.

    ``implicit`` is ``True`` when the transport closed without a ``[DONE]``
    marker.
    """

    type: Literal["terminal"]
    implicit: bool
    finish_reason: str | None


class UpstreamErrorEvent(TypedDict):
    """Explicit error object received from the upstream; the parser stops after it."""

    type: Literal["error"]
    code: str | None
    message: str


UpstreamEvent = Union[ContentFragmentEvent, ToolCallFragmentEvent, TerminalEvent, UpstreamErrorEvent]
"""Discriminated union of all events yielded by the upstream stream parser."""

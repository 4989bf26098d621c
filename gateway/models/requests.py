"""Request models for the Agent Gateway API."""
from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gateway.config import DEFAULT_USER_ID
from gateway.contracts.llm_types import ChatMessage
from gateway.models.base import CamelModel

logger = logging.getLogger(__name__)

# Generous limit per message; nginx guards against large binary payloads.
_MAX_CONTENT_CHARS = 32_768


class Message(BaseModel):
    """One conversation message in OpenAI chat format.

    Field names stay snake_case on the wire (``tool_call_id``) because the
    conversation is forwarded to the upstream model unchanged.
    """

    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: str = Field(default="", max_length=_MAX_CONTENT_CHARS)
    tool_call_id: str | None = None
    name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _null_content_is_empty(cls, data: object) -> object:
        # Assistant tool-call turns carry ``content: null`` in OpenAI format.
        if isinstance(data, dict) and data.get("content") is None:
            return {**data, "content": ""}
        return data

    @model_validator(mode="after")
    def _tool_messages_reference_a_call(self) -> "Message":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require tool_call_id")
        return self

    def to_chat_message(self) -> ChatMessage:
        """Convert to the TypedDict shape sent upstream."""
        if self.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": self.tool_call_id or "",
                "name": self.name or "",
                "content": self.content,
            }
        if self.role == "assistant":
            return {"role": "assistant", "content": self.content}
        if self.role == "system":
            return {"role": "system", "content": self.content}
        return {"role": "user", "content": self.content}


class ChatRequest(CamelModel):
    """Inbound chat request: the full conversation plus an optional user id."""

    messages: list[Message] = Field(
        ...,
        min_length=1,
        description="Ordered conversation; the last user message is the current turn",
    )
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z0-9_.\-]+$",
        description="Identifier used to key chat history and learned preferences",
    )


class PreferencesUpdate(BaseModel):
    """Body for ``PUT /api/users/{user_id}/preferences``."""

    preferences: dict[str, str] = Field(default_factory=dict)

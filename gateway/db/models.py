"""
SQLAlchemy ORM models for the Agent Gateway.

Tables:
- chat_users: one row per user id, with learned/declared preferences
- chat_history_entries: per-user chat messages, trimmed to a cap
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from gateway.db.database import Base


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class ChatUser(Base):
    """A chat user keyed by the client-supplied user id."""
    __tablename__ = "chat_users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    preferences: Mapped[dict[str, str]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    history: Mapped[list["ChatHistoryEntry"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<ChatUser {self.id}>"


class ChatHistoryEntry(Base):
    """One stored chat message."""
    __tablename__ = "chat_history_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("chat_users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    user: Mapped[ChatUser] = relationship(back_populates="history")

    def to_dict(self) -> dict[str, str]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<ChatHistoryEntry {self.id} {self.user_id} {self.role}>"

"""Database layer: async engine/session management and ORM models."""
from gateway.db.database import AsyncSessionLocal, Base, close_db, get_db, init_db
from gateway.db.models import ChatHistoryEntry, ChatUser

__all__ = [
    "AsyncSessionLocal",
    "Base",
    "ChatHistoryEntry",
    "ChatUser",
    "close_db",
    "get_db",
    "init_db",
]

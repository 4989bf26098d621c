"""Per-user chat history and preferences.

CRUD helpers take an ``AsyncSession`` (route dependencies use ``get_db``).
``HistoryRecorder`` is the agent loop's fire-and-forget sink: each
``append`` schedules a background write, writes for one user id are
serialized through a per-user lock, and failures are logged, never raised.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import settings
from gateway.contracts.llm_types import ChatMessage
from gateway.db import database
from gateway.db.models import ChatHistoryEntry, ChatUser

logger = logging.getLogger(__name__)


# ── Preference mining ─────────────────────────────────────────────────────────

PREFERENCE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("favoriteColor", re.compile(
        r"(?:favou?rite colou?r is|喜欢的颜色是?|偏好的颜色是?)\s*([\w-]+)", re.IGNORECASE)),
    ("favoriteFood", re.compile(
        r"(?:favou?rite food is|i (?:love|like) (?:to )?eat(?:ing)?|喜欢吃|爱吃|喜欢的食物是?|偏好的食物是?)\s*([\w-]+)",
        re.IGNORECASE)),
    ("favoriteSport", re.compile(
        r"(?:favou?rite sport is|i (?:love|like) playing|喜欢的运动是?|偏好的运动是?)\s*([\w-]+)", re.IGNORECASE)),
    ("language", re.compile(
        r"(?:使用|说|用|偏好|\bspeak\b|\bprefer\b|\buse\b|\bin\b)\s*(中文|英文|英语|Chinese|English)", re.IGNORECASE)),
    ("timeFormat", re.compile(
        r"(?:喜欢的时间格式|时间格式|time format)\s*(?:is\s*)?(24小时制|12小时制|24-hour|12-hour|24h|12h)", re.IGNORECASE)),
    ("temperatureUnit", re.compile(
        r"(?:温度单位|气温单位|温度|气温|temperature(?: unit)?)\s*(?:is\s*|in\s*)?(摄氏度|华氏度|°C|°F|celsius|fahrenheit)",
        re.IGNORECASE)),
    ("currencyUnit", re.compile(
        r"(?:货币单位|货币|钱|currency)\s*(?:is\s*|in\s*)?(人民币|美元|欧元|CNY|USD|EUR)", re.IGNORECASE)),
    ("lengthUnit", re.compile(
        r"(?:长度单位|距离单位|长度|距离|length(?: unit)?|distance)\s*(?:is\s*|in\s*)?"
        r"(米|英尺|英寸|meters|meter|feet|inches|ft|m)",
        re.IGNORECASE)),
)


def extract_preferences(content: str) -> dict[str, str]:
    """Apply every preference rule to one user message."""
    found: dict[str, str] = {}
    for key, pattern in PREFERENCE_RULES:
        match = pattern.search(content)
        if match:
            found[key] = match.group(1)
    return found


# ── CRUD ──────────────────────────────────────────────────────────────────────


async def get_user(db: AsyncSession, user_id: str) -> Optional[ChatUser]:
    return await db.get(ChatUser, user_id)


async def get_or_create_user(db: AsyncSession, user_id: str) -> ChatUser:
    user = await db.get(ChatUser, user_id)
    if user is None:
        user = ChatUser(id=user_id, preferences={})
        db.add(user)
        await db.flush()
        logger.info(f"Created chat user {user_id}")
    return user


async def add_history_entry(
    db: AsyncSession,
    user_id: str,
    role: str,
    content: str,
    max_messages: Optional[int] = None,
) -> ChatHistoryEntry:
    """Store one message, learn preferences from user messages, trim to the cap."""
    user = await get_or_create_user(db, user_id)
    entry = ChatHistoryEntry(user_id=user_id, role=role, content=content)
    db.add(entry)

    if role == "user":
        learned = extract_preferences(content)
        if learned:
            user.preferences = {**(user.preferences or {}), **learned}
            logger.info(f"Learned preferences for {user_id}: {sorted(learned)}")
    await db.flush()

    cap = max_messages if max_messages is not None else settings.history_max_messages
    await _trim_history(db, user_id, cap)
    return entry


async def _trim_history(db: AsyncSession, user_id: str, cap: int) -> None:
    total = await db.scalar(
        select(func.count()).select_from(ChatHistoryEntry).where(ChatHistoryEntry.user_id == user_id)
    )
    if not total or total <= cap:
        return
    stale = (
        select(ChatHistoryEntry.id)
        .where(ChatHistoryEntry.user_id == user_id)
        .order_by(ChatHistoryEntry.id.asc())
        .limit(total - cap)
    )
    stale_ids = list((await db.scalars(stale)).all())
    await db.execute(delete(ChatHistoryEntry).where(ChatHistoryEntry.id.in_(stale_ids)))
    logger.debug(f"Trimmed {len(stale_ids)} history entries for {user_id}")


async def get_history(db: AsyncSession, user_id: str, limit: int = 100) -> list[ChatHistoryEntry]:
    """Most recent ``limit`` entries in chronological order (``limit <= 0`` = all)."""
    query = (
        select(ChatHistoryEntry)
        .where(ChatHistoryEntry.user_id == user_id)
        .order_by(ChatHistoryEntry.id.desc())
    )
    if limit > 0:
        query = query.limit(limit)
    entries = list((await db.scalars(query)).all())
    entries.reverse()
    return entries


async def update_preferences(db: AsyncSession, user_id: str, preferences: dict[str, str]) -> ChatUser:
    user = await get_or_create_user(db, user_id)
    user.preferences = {**(user.preferences or {}), **preferences}
    await db.flush()
    return user


async def delete_user(db: AsyncSession, user_id: str) -> bool:
    user = await db.get(ChatUser, user_id)
    if user is None:
        return False
    # SQLite does not enforce ON DELETE CASCADE without a pragma.
    await db.execute(delete(ChatHistoryEntry).where(ChatHistoryEntry.user_id == user_id))
    await db.delete(user)
    await db.flush()
    logger.info(f"Deleted chat user {user_id}")
    return True


async def list_user_ids(db: AsyncSession) -> list[str]:
    return list((await db.scalars(select(ChatUser.id).order_by(ChatUser.id))).all())


# ── Fire-and-forget sink ──────────────────────────────────────────────────────


class HistoryRecorder:
    """Background history writer used by the agent loop."""

    def __init__(self, max_messages: Optional[int] = None):
        self._max_messages = max_messages
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def locked_users(self) -> int:
        """User ids currently holding or waiting on a write lock."""
        return len(self._locks)

    def append(self, user_id: str, message: ChatMessage) -> None:
        """Schedule a write and return immediately."""
        role = message.get("role", "")
        if role not in ("user", "assistant"):
            return
        if not database.is_initialized():
            logger.debug("History store not initialized; skipping write")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("History append outside an event loop; dropped")
            return
        task = loop.create_task(self._write(user_id, role, message.get("content") or ""))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, user_id: str, role: str, content: str) -> None:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                async with database.AsyncSessionLocal() as session:
                    await add_history_entry(session, user_id, role, content, self._max_messages)
                    await session.commit()
        except Exception as e:
            logger.error(f"Failed to record history for {user_id}: {e}", exc_info=True)
        finally:
            self._release(user_id)

    def _release(self, user_id: str) -> None:
        remaining = self._lock_users[user_id] - 1
        if remaining:
            self._lock_users[user_id] = remaining
        else:
            del self._lock_users[user_id]
            del self._locks[user_id]

    async def drain(self) -> None:
        """Wait for every scheduled write (tests, shutdown)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_recorder: HistoryRecorder | None = None


def get_history_recorder() -> HistoryRecorder:
    """Return the process-wide ``HistoryRecorder``, creating it if needed."""
    global _recorder
    if _recorder is None:
        _recorder = HistoryRecorder()
    return _recorder

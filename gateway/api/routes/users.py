"""Per-user chat history and preference endpoints."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.db import get_db
from gateway.models.requests import PreferencesUpdate
from gateway.services import history as history_service

router = APIRouter()
logger = logging.getLogger(__name__)


async def _require_user(db: AsyncSession, user_id: str) -> None:
    if await history_service.get_user(db, user_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown user: {user_id}")


@router.get("/users")
async def list_users(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    user_ids = await history_service.list_user_ids(db)
    return {"users": user_ids, "count": len(user_ids)}


@router.get("/users/{user_id}/history")
async def get_user_history(
    user_id: str,
    limit: int = Query(100, ge=0, le=10_000, description="Most recent N entries; 0 for all"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Stored messages for a user, oldest first."""
    await _require_user(db, user_id)
    entries = await history_service.get_history(db, user_id, limit=limit)
    return {
        "userId": user_id,
        "history": [entry.to_dict() for entry in entries],
        "count": len(entries),
    }


@router.get("/users/{user_id}/preferences")
async def get_user_preferences(
    user_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    user = await history_service.get_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"Unknown user: {user_id}")
    return {"userId": user_id, "preferences": user.preferences or {}}


@router.put("/users/{user_id}/preferences")
async def put_user_preferences(
    user_id: str,
    update: PreferencesUpdate,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Merge the given preferences into the stored ones (creates the user)."""
    user = await history_service.update_preferences(db, user_id, update.preferences)
    logger.info(f"Updated preferences for {user_id}: {sorted(update.preferences)}")
    return {"userId": user_id, "preferences": user.preferences or {}}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Remove a user along with their history."""
    deleted = await history_service.delete_user(db, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Unknown user: {user_id}")
    return {"userId": user_id, "deleted": True}

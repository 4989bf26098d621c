"""Health check endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from gateway.config import settings
from gateway.core.tools import build_default_registry
from gateway.db import database

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "message": "Agent gateway is running",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/health/full")
async def full_health_check() -> dict[str, Any]:
    """
    Full health check including dependencies.

    Reports:
    - upstream: configured (API key present) and the model in use
    - database: history store initialized
    - tools: the names declared to the model
    """
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "upstream": {
            "configured": bool(settings.upstream_api_key),
            "model": settings.upstream_model,
        },
        "database": {"initialized": database.is_initialized()},
        "tools": build_default_registry().names(),
    }

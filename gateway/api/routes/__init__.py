"""API route modules."""
from __future__ import annotations

from gateway.api.routes import chat, health, users

__all__ = ["chat", "health", "users"]

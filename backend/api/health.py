"""Health check endpoint."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from auth import get_optional_user
from config import settings
from models.user import User

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(user: User | None = Depends(get_optional_user)) -> dict:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "websocket": "enabled",
        "rooms": settings.ROOM_BACKEND,
        "authenticated": user is not None,
    }

"""WebSocket endpoint for the realtime chat gateway."""

from fastapi import APIRouter

from ws.chat_ws import router as chat_ws_router

ws_router = APIRouter()
ws_router.include_router(chat_ws_router)

__all__ = ["ws_router"]

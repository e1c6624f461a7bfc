"""Authenticated chat WebSocket endpoint.

Wire format is one JSON object per text frame: ``{"type": ..., "data": ...}``
in both directions. The bearer token comes from the ``token`` query parameter
or an ``Authorization: Bearer`` header; a bad token closes the socket with
1008 before it is accepted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from auth import AuthenticationError
from config import settings
from ws.broadcast import encode_frame, make_frame
from ws.gateway import get_gateway

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


def _bearer_from_headers(websocket: WebSocket) -> str:
    value = websocket.headers.get("authorization", "")
    if isinstance(value, str) and value.lower().startswith("bearer "):
        return value[7:].strip()
    return ""


@router.websocket("/ws/")
async def chat_ws(websocket: WebSocket, token: str = ""):
    gateway = get_gateway()
    token = token or _bearer_from_headers(websocket)

    try:
        identity = gateway.authenticate(token)
    except AuthenticationError as exc:
        logger.info("Socket authentication failed: %s", exc)
        await websocket.close(code=POLICY_VIOLATION, reason=f"Authentication failed: {exc}")
        return

    await websocket.accept()

    outbox: asyncio.Queue = asyncio.Queue(maxsize=settings.OUTBOX_MAX_SIZE)
    overflowed = asyncio.Event()
    context = await gateway.connect(identity, outbox, overflowed.set)
    last_activity = time.monotonic()
    waiting_pong = False
    pong_deadline = 0.0

    async def _writer() -> None:
        """Drain the outbox in order onto the socket."""
        nonlocal last_activity
        while True:
            frame = await outbox.get()
            if websocket.client_state != WebSocketState.CONNECTED:
                return
            await websocket.send_text(encode_frame(frame))
            last_activity = time.monotonic()

    async def _reader() -> None:
        """Read client events and hand them to the gateway."""
        nonlocal waiting_pong, last_activity
        while True:
            message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            last_activity = time.monotonic()

            raw = message.get("text")
            if not raw:
                continue

            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue

            msg_type = msg.get("type")
            if msg_type == "pong":
                waiting_pong = False
                continue
            if isinstance(msg_type, str):
                await gateway.dispatch(context, msg_type, msg.get("data"))

    async def _heartbeat() -> None:
        """Send ping every HEARTBEAT_INTERVAL; close if no pong within PONG_TIMEOUT."""
        nonlocal waiting_pong, pong_deadline
        while True:
            await asyncio.sleep(1)
            now = time.monotonic()

            if waiting_pong and now > pong_deadline:
                logger.debug("Chat WS pong timeout, closing")
                return

            if not waiting_pong and (now - last_activity) >= settings.HEARTBEAT_INTERVAL:
                gateway.registry.deliver(context.connection_id, make_frame("ping"))
                waiting_pong = True
                pong_deadline = now + settings.PONG_TIMEOUT

    tasks: list[asyncio.Task] = []
    try:
        tasks = [
            asyncio.create_task(_reader(), name="ws-reader"),
            asyncio.create_task(_writer(), name="ws-writer"),
            asyncio.create_task(_heartbeat(), name="ws-heartbeat"),
            asyncio.create_task(overflowed.wait(), name="ws-overflow"),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in done:
            exc = t.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Chat WS task %s failed: %s", t.get_name(), exc)
    except Exception:
        logger.exception("Chat WS unexpected error")
    finally:
        # No suspension point before this: a cancelled handler must still leave its rooms.
        await gateway.disconnect(context)
        for t in tasks:
            if not t.done():
                t.cancel()
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                if overflowed.is_set():
                    await websocket.close(code=TRY_AGAIN_LATER, reason="Outbox overflow")
                else:
                    await websocket.close()
            except RuntimeError:
                logger.debug("Socket already closed")

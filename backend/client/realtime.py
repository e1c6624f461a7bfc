"""Client-side realtime adapter for the chat gateway.

Keeps one WebSocket per authenticated session, reconnects with exponential
backoff, re-joins rooms after a reconnect and fans gateway events out to
registered callbacks. Authentication failures stop the retry loop and raise a
``logout_required`` event; exhausting the retry budget raises
``connection_failed``.

Usage:
    client = RealtimeClient("ws://localhost:3000/ws/", token)
    client.on_ai_response_chunk(lambda data: print(data["content"], end=""))
    await client.connect()
    await client.wait_connected()
    await client.join_conversation(conversation_id)
    await client.send_message(conversation_id, "hello")
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
AUTH_REJECTED_STATUSES = (401, 403)

GATEWAY_EVENTS = (
    "auth_success",
    "conversation_joined",
    "conversation_left",
    "error",
    "message_received",
    "ai_typing",
    "ai_response_chunk",
    "ai_response_complete",
    "ai_response_error",
    "user_typing",
)
LIFECYCLE_EVENTS = ("connect", "disconnect", "reconnecting", "connection_failed", "logout_required")


class ConnectionStatus(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    LOGOUT_REQUIRED = "logout_required"
    CLOSED = "closed"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at *cap*."""
    if attempt <= 0:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


Callback = Callable[[Any], Any]


class RealtimeClient:
    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect: Callable | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.status = ConnectionStatus.IDLE
        self.identity: dict | None = None

        self._connect = connect or ws_connect
        self._listeners: dict[str, list[Callback]] = defaultdict(list)
        self._socket = None
        self._runner: asyncio.Task | None = None
        self._stopping = False
        self._rooms: set[str] = set()
        self._connected = asyncio.Event()
        self._settled = asyncio.Event()

    # ── Subscriptions ────────────────────────────────────────────────────────

    def on(self, event: str, callback: Callback) -> Callable[[], None]:
        """Register *callback* for *event*. Returns an unsubscribe function."""
        self._listeners[event].append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Callback | None = None) -> None:
        if callback is None:
            self._listeners.pop(event, None)
            return
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def on_auth_success(self, callback: Callback) -> Callable[[], None]:
        return self.on("auth_success", callback)

    def on_conversation_joined(self, callback: Callback) -> Callable[[], None]:
        return self.on("conversation_joined", callback)

    def on_conversation_left(self, callback: Callback) -> Callable[[], None]:
        return self.on("conversation_left", callback)

    def on_error(self, callback: Callback) -> Callable[[], None]:
        return self.on("error", callback)

    def on_message_received(self, callback: Callback) -> Callable[[], None]:
        return self.on("message_received", callback)

    def on_ai_typing(self, callback: Callback) -> Callable[[], None]:
        return self.on("ai_typing", callback)

    def on_ai_response_chunk(self, callback: Callback) -> Callable[[], None]:
        return self.on("ai_response_chunk", callback)

    def on_ai_response_complete(self, callback: Callback) -> Callable[[], None]:
        return self.on("ai_response_complete", callback)

    def on_ai_response_error(self, callback: Callback) -> Callable[[], None]:
        return self.on("ai_response_error", callback)

    def on_user_typing(self, callback: Callback) -> Callable[[], None]:
        return self.on("user_typing", callback)

    # ── Connection lifecycle ─────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED and self._socket is not None

    @property
    def rooms(self) -> frozenset[str]:
        return frozenset(self._rooms)

    async def connect(self) -> bool:
        """Start the connection loop. Returns False when there is no token."""
        if not self.token:
            logger.debug("No session token, not connecting")
            return False
        if self._runner is not None and not self._runner.done():
            return True
        self._stopping = False
        self._settled.clear()
        self._runner = asyncio.create_task(self._run(), name="realtime-client")
        return True

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait for the first successful handshake or a terminal failure."""
        if self._runner is None:
            return self.is_connected
        connected = asyncio.create_task(self._connected.wait())
        settled = asyncio.create_task(self._settled.wait())
        try:
            await asyncio.wait({connected, settled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            connected.cancel()
            settled.cancel()
        return self.is_connected

    async def disconnect(self) -> None:
        await self._stop()
        self._rooms.clear()
        self.status = ConnectionStatus.CLOSED

    async def reconnect_with_token(self, token: str) -> bool:
        """Drop the current connection and reconnect with fresh credentials."""
        self.token = token
        await self._stop()
        return await self.connect()

    async def _stop(self) -> None:
        self._stopping = True
        socket = self._socket
        if socket is not None:
            try:
                await socket.close()
            except Exception:
                logger.debug("Error closing socket", exc_info=True)
        if self._runner is not None and not self._runner.done() and self._runner is not asyncio.current_task():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None
        self._socket = None
        self._connected.clear()

    async def _run(self) -> None:
        attempt = 0
        try:
            while not self._stopping:
                self.status = ConnectionStatus.CONNECTING if attempt == 0 else ConnectionStatus.RECONNECTING
                reason: Any
                try:
                    socket = await self._connect(self.url, additional_headers=self._headers())
                except InvalidStatus as exc:
                    if exc.response.status_code in AUTH_REJECTED_STATUSES:
                        await self._require_logout(f"Handshake rejected with HTTP {exc.response.status_code}")
                        return
                    reason = exc
                except (OSError, InvalidHandshake, asyncio.TimeoutError) as exc:
                    reason = exc
                else:
                    attempt = 0
                    close_code = await self._session(socket)
                    if self._stopping:
                        return
                    await self._emit("disconnect", {"code": close_code})
                    if close_code == POLICY_VIOLATION:
                        await self._require_logout("Authentication failed")
                        return
                    reason = f"closed with code {close_code}"

                attempt += 1
                if attempt > self.max_attempts:
                    logger.warning("Giving up after %d attempts: %s", self.max_attempts, reason)
                    self.status = ConnectionStatus.FAILED
                    await self._emit("connection_failed", {"attempts": self.max_attempts, "reason": str(reason)})
                    return

                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.info("Reconnecting in %.1fs (attempt %d/%d): %s", delay, attempt, self.max_attempts, reason)
                await self._emit("reconnecting", {"attempt": attempt, "delay": delay})
                await asyncio.sleep(delay)
        finally:
            self._settled.set()

    async def _session(self, socket) -> int | None:
        """Pump one connection until it closes. Returns the close code."""
        self._socket = socket
        try:
            async for raw in socket:
                await self._handle_frame(socket, raw)
                if self._stopping:
                    break
        except ConnectionClosed as exc:
            return exc.rcvd.code if exc.rcvd is not None else None
        finally:
            self._socket = None
            self._connected.clear()
            if self.status == ConnectionStatus.CONNECTED:
                self.status = ConnectionStatus.RECONNECTING
        return getattr(socket, "close_code", None)

    async def _handle_frame(self, socket, raw) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug("Ignoring non-JSON frame")
            return
        if not isinstance(frame, dict):
            return

        event = frame.get("type")
        data = frame.get("data")

        if event == "ping":
            await socket.send(json.dumps({"type": "pong"}))
            return

        if event == "auth_success":
            self.identity = data
            self.status = ConnectionStatus.CONNECTED
            self._connected.set()
            await self._emit("connect", data)
            await self._rejoin_rooms(socket)
        elif event == "conversation_joined" and isinstance(data, dict):
            self._rooms.add(data.get("conversationId", ""))
        elif event == "conversation_left" and isinstance(data, dict):
            self._rooms.discard(data.get("conversationId", ""))

        if isinstance(event, str):
            await self._emit(event, data)

        if event == "error" and isinstance(data, dict) and data.get("code") == "USER_ID_MISMATCH":
            self._stopping = True
            await self._require_logout(data.get("message", "User ID mismatch"))
            await socket.close()

    async def _rejoin_rooms(self, socket) -> None:
        for room in sorted(self._rooms):
            await socket.send(json.dumps({"type": "join_conversation", "data": room}))

    async def _require_logout(self, reason: str) -> None:
        logger.warning("Realtime session requires logout: %s", reason)
        self.status = ConnectionStatus.LOGOUT_REQUIRED
        self._rooms.clear()
        await self._emit("logout_required", {"reason": reason})

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _emit(self, event: str, data: Any = None) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for %s failed", event)

    # ── Outbound events ──────────────────────────────────────────────────────

    async def _send(self, event: str, data: Any) -> bool:
        socket = self._socket
        if socket is None or not self.is_connected:
            logger.debug("Not connected, dropping %s", event)
            return False
        try:
            await socket.send(json.dumps({"type": event, "data": data}))
        except ConnectionClosed:
            logger.debug("Socket closed while sending %s", event)
            return False
        return True

    async def join_conversation(self, conversation_id: str) -> bool:
        if not conversation_id:
            return False
        return await self._send("join_conversation", conversation_id)

    async def leave_conversation(self, conversation_id: str) -> bool:
        if not conversation_id:
            return False
        self._rooms.discard(conversation_id)
        return await self._send("leave_conversation", conversation_id)

    async def send_message(self, conversation_id: str, message: str) -> bool:
        """Send a chat message. Empty or non-text messages are rejected locally."""
        if not isinstance(message, str) or not message.strip():
            logger.debug("Refusing to send an empty or non-text message")
            return False
        if not conversation_id:
            return False
        return await self._send("send_message", {"conversationId": conversation_id, "message": message})

    async def start_typing(self, conversation_id: str) -> bool:
        return await self._send("typing_start", {"conversationId": conversation_id})

    async def stop_typing(self, conversation_id: str) -> bool:
        return await self._send("typing_stop", {"conversationId": conversation_id})

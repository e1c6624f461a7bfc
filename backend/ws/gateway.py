"""Realtime chat gateway: room membership, message relay and streamed AI turns."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Awaitable, Callable

from auth import AuthenticationError, Identity, authenticate_token
from database import SessionLocal
from logging_config import log_context
from models.conversation import Message, MessageRole
from schemas.events import (
    AIResponseChunk,
    AIResponseError,
    AITyping,
    AuthSuccess,
    ChatMessagePayload,
    ConversationRef,
    ErrorPayload,
    UserTyping,
)
from services import chat_store
from services.completion import ChatTurn, CompletionProvider
from ws.broadcast import LocalRoomBus
from ws.errors import (
    AccessDenied,
    ErrorCode,
    GatewayError,
    SecurityViolation,
    ValidationFailure,
)
from ws.rooms import ConnectionContext, ConnectionState, RoomRegistry

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


def message_payload(message: Message) -> dict:
    return ChatMessagePayload(
        id=message.id,
        content=message.content,
        role=message.role,
        conversation_id=message.conversation_id,
        created_at=message.created_at,
    ).dump()


def _conversation_id_of(data: Any) -> str:
    """Room events accept a bare id or ``{"conversationId": ...}``."""
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, dict):
        value = data.get("conversationId")
        if isinstance(value, str):
            return value.strip()
    return ""


class _TurnSlot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class ChatGateway:
    """Owns live connections and the rooms they joined.

    Inbound events arrive through :meth:`dispatch`. Every failure is turned
    into a scoped event for the caller or the room; nothing here closes a
    connection. AI turns run as background tasks, one at a time per
    conversation.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        bus: LocalRoomBus,
        provider: CompletionProvider,
        *,
        system_prompt: str,
        session_factory: Callable = SessionLocal,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.provider = provider
        self.system_prompt = system_prompt
        self.session_factory = session_factory
        self._turns: dict[str, _TurnSlot] = {}
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Callable[[ConnectionContext, Any], Awaitable[None]]] = {
            "join_conversation": self.join_conversation,
            "leave_conversation": self.leave_conversation,
            "send_message": self.send_message,
            "typing_start": self.typing_start,
            "typing_stop": self.typing_stop,
        }

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.bus.start()

    async def shutdown(self) -> None:
        """Give in-flight AI turns a grace period, then stop the room bus."""
        pending = list(self._tasks)
        if pending:
            logger.info("Waiting for %d in-flight AI turn(s)", len(pending))
            _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        await self.bus.stop()

    async def wait_idle(self) -> None:
        """Wait until no AI turn is running or queued."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def is_turn_active(self, conversation_id: str) -> bool:
        return conversation_id in self._turns

    # ── Connection lifecycle ─────────────────────────────────────────────────

    def authenticate(self, token: str) -> Identity:
        """Handshake authentication. Raises AuthenticationError."""
        if not token:
            raise AuthenticationError("No token provided")
        with self.session_factory() as db:
            return authenticate_token(db, token)

    async def connect(
        self,
        identity: Identity,
        outbox: asyncio.Queue,
        on_overflow: Callable[[], None] | None = None,
    ) -> ConnectionContext:
        context = ConnectionContext(connection_id=uuid.uuid4().hex, identity=identity)
        self.registry.register(context, outbox, on_overflow)
        logger.info(
            "Client connected: %s, user %s (%s)",
            context.connection_id, identity.username, identity.id,
        )
        await self.bus.send_to(
            context.connection_id,
            "auth_success",
            AuthSuccess(user_id=identity.id, username=identity.username, email=identity.email).dump(),
        )
        return context

    async def disconnect(self, context: ConnectionContext) -> None:
        rooms = self.registry.unregister(context.connection_id)
        logger.info(
            "Client disconnected: %s, user %s, left %d room(s)",
            context.connection_id, context.identity.username, len(rooms),
        )

    # ── Inbound events ───────────────────────────────────────────────────────

    async def dispatch(self, context: ConnectionContext, event_type: str, data: Any = None) -> None:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring unknown event %r", event_type)
            return

        with log_context(connection_id=context.connection_id, user=context.identity.username):
            try:
                await handler(context, data)
            except GatewayError as exc:
                await self._emit_error(context, exc)
            except Exception as exc:
                logger.exception("Error handling %s", event_type)
                if event_type == "join_conversation":
                    failure = GatewayError("Failed to join conversation", code=ErrorCode.JOIN_CONVERSATION_ERROR)
                else:
                    failure = GatewayError(detail=str(exc))
                await self._emit_error(context, failure)

    async def join_conversation(self, context: ConnectionContext, data: Any) -> None:
        conversation_id = _conversation_id_of(data)
        if not conversation_id:
            raise ValidationFailure("Conversation ID is required")

        if self.registry.is_member(context.connection_id, conversation_id):
            await self._send(context, "conversation_joined", ConversationRef(conversation_id=conversation_id).dump())
            return

        self.registry.set_state(context.connection_id, ConnectionState.JOINING_ROOM)
        try:
            owned = self._owns(context, conversation_id)
        finally:
            self.registry.set_state(context.connection_id, ConnectionState.AUTHENTICATED)

        if not owned:
            logger.info(
                "Access denied: user %s cannot join conversation %s",
                context.identity.username, conversation_id,
            )
            raise AccessDenied()

        self.registry.join(context.connection_id, conversation_id)
        logger.info("Connection joined conversation %s", conversation_id)
        await self._send(context, "conversation_joined", ConversationRef(conversation_id=conversation_id).dump())

    async def leave_conversation(self, context: ConnectionContext, data: Any) -> None:
        conversation_id = _conversation_id_of(data)
        if not conversation_id:
            return
        if self.registry.leave(context.connection_id, conversation_id):
            logger.info("Connection left conversation %s", conversation_id)
        await self._send(context, "conversation_left", ConversationRef(conversation_id=conversation_id).dump())

    async def send_message(self, context: ConnectionContext, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValidationFailure("Invalid message data", code=ErrorCode.INVALID_MESSAGE_DATA)

        conversation_id = data.get("conversationId")
        text = data.get("message")
        if not conversation_id or text is None:
            raise ValidationFailure()
        if not isinstance(conversation_id, str) or not isinstance(text, str):
            raise ValidationFailure("Invalid message data", code=ErrorCode.INVALID_MESSAGE_DATA)
        if not text.strip():
            raise ValidationFailure("Message cannot be empty", code=ErrorCode.EMPTY_MESSAGE)

        claimed_user = data.get("userId")
        if claimed_user is not None and claimed_user != context.user_id:
            logger.warning(
                "Security violation: user %s attempted to send as %s",
                context.identity.username, claimed_user,
            )
            raise SecurityViolation()

        # Runs in the background so this connection keeps reading while the
        # turn streams; tasks reach the per-conversation lock in arrival order.
        self._spawn(self._process_message(context, conversation_id, text.strip()))

    async def typing_start(self, context: ConnectionContext, data: Any) -> None:
        await self._typing(context, data, True)

    async def typing_stop(self, context: ConnectionContext, data: Any) -> None:
        await self._typing(context, data, False)

    async def _typing(self, context: ConnectionContext, data: Any, is_typing: bool) -> None:
        if not isinstance(data, dict):
            return
        conversation_id = _conversation_id_of(data)
        if not conversation_id:
            return
        if not self._owns(context, conversation_id):
            logger.info(
                "Typing denied: user %s cannot access conversation %s",
                context.identity.username, conversation_id,
            )
            raise AccessDenied()
        await self.bus.publish(
            conversation_id,
            "user_typing",
            UserTyping(
                user_id=context.user_id,
                username=context.identity.username,
                is_typing=is_typing,
            ).dump(),
            exclude=context.connection_id,
        )

    # ── Message turn ─────────────────────────────────────────────────────────

    async def _process_message(self, context: ConnectionContext, conversation_id: str, text: str) -> None:
        with log_context(conversation_id=conversation_id):
            async with self._serialized_turn(conversation_id):
                try:
                    with self.session_factory() as db:
                        if chat_store.get_owned_conversation(db, conversation_id, context.user_id) is None:
                            logger.info(
                                "Access denied: user %s cannot send to conversation %s",
                                context.identity.username, conversation_id,
                            )
                            raise AccessDenied()
                        saved = chat_store.create_message(db, conversation_id, MessageRole.USER, text)
                        payload = message_payload(saved)
                except GatewayError as exc:
                    await self._emit_error(context, exc)
                    return
                except Exception as exc:
                    logger.exception("Failed to persist user message")
                    await self._emit_error(context, GatewayError(detail=str(exc)))
                    await self.bus.publish(conversation_id, "ai_typing", AITyping(is_typing=False).dump())
                    return

                logger.info("Message saved: %s from %s", saved.id, context.identity.username)
                await self.bus.publish(conversation_id, "message_received", payload)
                await self._run_ai_turn(conversation_id)

    async def _run_ai_turn(self, conversation_id: str) -> None:
        """Stream one assistant reply to the room and persist it."""
        await self.bus.publish(conversation_id, "ai_typing", AITyping(is_typing=True).dump())
        message_id = str(uuid.uuid4())
        parts: list[str] = []
        try:
            with self.session_factory() as db:
                history = [ChatTurn(m.role, m.content) for m in chat_store.list_messages(db, conversation_id)]
            prompt = [ChatTurn("system", self.system_prompt), *history]

            async for fragment in self.provider.stream(prompt):
                if not fragment:
                    continue
                parts.append(fragment)
                await self.bus.publish(
                    conversation_id,
                    "ai_response_chunk",
                    AIResponseChunk(content=fragment, message_id=message_id).dump(),
                )

            with self.session_factory() as db:
                saved = chat_store.create_message(
                    db, conversation_id, MessageRole.ASSISTANT, "".join(parts), message_id=message_id,
                )
                payload = message_payload(saved)
            await self.bus.publish(conversation_id, "ai_response_complete", payload)
            logger.info("AI turn complete: %s (%d chunks)", message_id, len(parts))
        except Exception as exc:
            logger.exception("Error streaming AI response")
            await self.bus.publish(
                conversation_id,
                "ai_response_error",
                AIResponseError(
                    message="Failed to generate AI response",
                    error=str(exc) or type(exc).__name__,
                ).dump(),
            )
        finally:
            await self.bus.publish(conversation_id, "ai_typing", AITyping(is_typing=False).dump())

    @contextlib.asynccontextmanager
    async def _serialized_turn(self, conversation_id: str):
        slot = self._turns.get(conversation_id)
        if slot is None:
            slot = self._turns[conversation_id] = _TurnSlot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._turns.pop(conversation_id, None)

    # ── Server-initiated events ──────────────────────────────────────────────

    async def send_to_conversation(self, conversation_id: str, event_type: str, data: Any = None) -> int:
        return await self.bus.publish(conversation_id, event_type, data)

    async def broadcast(self, event_type: str, data: Any = None) -> int:
        return await self.bus.broadcast_all(event_type, data)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _owns(self, context: ConnectionContext, conversation_id: str) -> bool:
        with self.session_factory() as db:
            return chat_store.get_owned_conversation(db, conversation_id, context.user_id) is not None

    async def _send(self, context: ConnectionContext, event_type: str, data: Any = None) -> bool:
        return await self.bus.send_to(context.connection_id, event_type, data)

    async def _emit_error(self, context: ConnectionContext, exc: GatewayError) -> None:
        payload = ErrorPayload(message=exc.message, code=exc.code.value, error=exc.detail).dump()
        await self._send(context, "error", payload)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Message task failed", exc_info=exc)


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_gateway: ChatGateway | None = None


class GatewayNotInitialized(RuntimeError):
    pass


def init_gateway(gateway: ChatGateway) -> ChatGateway:
    """Install the process-wide gateway. Allowed once per process."""
    global _gateway
    if _gateway is not None and _gateway is not gateway:
        raise RuntimeError("Chat gateway is already initialised")
    _gateway = gateway
    return gateway


def get_gateway() -> ChatGateway:
    if _gateway is None:
        raise GatewayNotInitialized("Chat gateway has not been initialised")
    return _gateway


def reset_gateway() -> None:
    global _gateway
    _gateway = None


def build_gateway(settings) -> ChatGateway:
    """Wire registry, room bus and completion provider from settings."""
    from services.completion import create_completion_provider
    from ws.broadcast import create_room_bus

    registry = RoomRegistry()
    bus = create_room_bus(settings.ROOM_BACKEND, registry, settings.REDIS_URL)
    return ChatGateway(
        registry,
        bus,
        create_completion_provider(settings),
        system_prompt=settings.SYSTEM_PROMPT,
    )

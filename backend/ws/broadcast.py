"""Room fan-out: in-process delivery, optionally bridged through Redis pub/sub."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import enum
import uuid
from datetime import date, datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

from ws.rooms import RoomRegistry

logger = logging.getLogger(__name__)

ROOM_CHANNEL_PREFIX = "conversation:"
BROADCAST_CHANNEL = "relaychat:broadcast"


def _wire_value(obj: object):
    """``json.dumps`` fallback for values pushed through ``send_to_conversation``."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(by_alias=True, mode="json", exclude_none=True)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, uuid.UUID):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def make_frame(event_type: str, data=None) -> dict:
    frame: dict = {"type": event_type, "timestamp": time.time()}
    if data is not None:
        frame["data"] = data
    return frame


def encode_frame(frame: dict) -> str:
    return json.dumps(frame, default=_wire_value)


class LocalRoomBus:
    """Delivers room events to members registered in this process."""

    def __init__(self, registry: RoomRegistry) -> None:
        self.registry = registry

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def send_to(self, connection_id: str, event_type: str, data=None) -> bool:
        return self.registry.deliver(connection_id, make_frame(event_type, data))

    async def publish(self, room: str, event_type: str, data=None, *, exclude: str | None = None) -> int:
        return self._fan_out(room, make_frame(event_type, data), exclude)

    async def broadcast_all(self, event_type: str, data=None) -> int:
        return self._deliver_all(make_frame(event_type, data))

    def _fan_out(self, room: str, frame: dict, exclude: str | None) -> int:
        delivered = 0
        for connection_id in self.registry.members(room):
            if connection_id == exclude:
                continue
            if self.registry.deliver(connection_id, frame):
                delivered += 1
        return delivered

    def _deliver_all(self, frame: dict) -> int:
        return sum(1 for cid in self.registry.connection_ids() if self.registry.deliver(cid, frame))


class RedisRoomBus(LocalRoomBus):
    """Publishes room events to Redis so every gateway process can fan them out.

    Each process runs one pattern subscription on ``conversation:*`` and
    delivers received frames to its local members. Single-connection events
    never leave the process.
    """

    def __init__(self, registry: RoomRegistry, redis_url: str) -> None:
        super().__init__(registry)
        self.redis_url = redis_url
        self._redis = None
        self._pubsub = None
        self._listener: asyncio.Task | None = None

    async def start(self) -> None:
        self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.psubscribe(f"{ROOM_CHANNEL_PREFIX}*")
        await self._pubsub.subscribe(BROADCAST_CHANNEL)
        self._listener = asyncio.create_task(self._listen(), name="room-bus-redis")
        logger.info("Redis room bus listening on %s*", ROOM_CHANNEL_PREFIX)

    async def stop(self) -> None:
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.unsubscribe()
                await self._pubsub.close()
            except Exception:
                logger.warning("Failed to close Redis pub/sub cleanly", exc_info=True)
        if self._redis is not None:
            try:
                await self._redis.close()
            except Exception:
                logger.warning("Failed to close Redis connection cleanly", exc_info=True)
        self._pubsub = None
        self._redis = None

    async def publish(self, room: str, event_type: str, data=None, *, exclude: str | None = None) -> int:
        envelope = {"frame": make_frame(event_type, data), "exclude": exclude}
        return await self._redis.publish(
            f"{ROOM_CHANNEL_PREFIX}{room}", json.dumps(envelope, default=_wire_value)
        )

    async def broadcast_all(self, event_type: str, data=None) -> int:
        envelope = {"frame": make_frame(event_type, data), "exclude": None}
        return await self._redis.publish(BROADCAST_CHANNEL, json.dumps(envelope, default=_wire_value))

    def handle_message(self, msg: dict) -> int:
        """Deliver one pub/sub message to local members."""
        if msg.get("type") not in ("message", "pmessage"):
            return 0
        try:
            envelope = json.loads(msg["data"])
            frame = envelope["frame"]
        except (KeyError, TypeError, json.JSONDecodeError):
            logger.debug("Dropping malformed room bus message on %s", msg.get("channel"))
            return 0
        channel = msg.get("channel", "")
        if channel == BROADCAST_CHANNEL:
            return self._deliver_all(frame)
        if not channel.startswith(ROOM_CHANNEL_PREFIX):
            return 0
        return self._fan_out(channel[len(ROOM_CHANNEL_PREFIX):], frame, envelope.get("exclude"))

    async def _listen(self) -> None:
        while True:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=0.5)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Redis pub/sub get_message failed, retrying", exc_info=True)
                await asyncio.sleep(1)
                continue
            if msg:
                self.handle_message(msg)
            else:
                await asyncio.sleep(0.01)


def create_room_bus(backend: str, registry: RoomRegistry, redis_url: str) -> LocalRoomBus:
    if backend == "redis":
        return RedisRoomBus(registry, redis_url)
    if backend == "local":
        return LocalRoomBus(registry)
    raise ValueError(f"Unsupported room backend: {backend}")

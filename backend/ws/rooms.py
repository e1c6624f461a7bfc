"""Connection session table and conversation-room membership."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable

from auth import Identity

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    JOINING_ROOM = "joining_room"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ConnectionContext:
    """Immutable association of a live connection with its identity."""

    connection_id: str
    identity: Identity

    @property
    def user_id(self) -> str:
        return self.identity.id


@dataclass
class _Session:
    context: ConnectionContext
    outbox: asyncio.Queue
    rooms: set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.AUTHENTICATED
    on_overflow: Callable[[], None] | None = None


class RoomRegistry:
    """Session table keyed by connection id, plus room → members index.

    Membership changes only through ``join``/``leave`` for the owning
    connection and through ``unregister``; fan-out only reads it.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, _Session] = {}
        self._rooms: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def register(
        self,
        context: ConnectionContext,
        outbox: asyncio.Queue,
        on_overflow: Callable[[], None] | None = None,
    ) -> None:
        if context.connection_id in self._sessions:
            raise ValueError(f"Connection {context.connection_id} is already registered")
        self._sessions[context.connection_id] = _Session(context=context, outbox=outbox, on_overflow=on_overflow)

    def unregister(self, connection_id: str) -> frozenset[str]:
        """Drop a connection and every membership it held. Returns the rooms it left."""
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return frozenset()
        session.state = ConnectionState.DISCONNECTED
        for room in session.rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        return frozenset(session.rooms)

    def get(self, connection_id: str) -> ConnectionContext | None:
        session = self._sessions.get(connection_id)
        return session.context if session else None

    def connection_ids(self) -> list[str]:
        return list(self._sessions)

    def state(self, connection_id: str) -> ConnectionState:
        session = self._sessions.get(connection_id)
        return session.state if session else ConnectionState.DISCONNECTED

    def set_state(self, connection_id: str, state: ConnectionState) -> None:
        session = self._sessions.get(connection_id)
        if session is not None:
            session.state = state

    def join(self, connection_id: str, room: str) -> bool:
        """Add membership. Returns False if it already existed."""
        session = self._sessions.get(connection_id)
        if session is None:
            raise KeyError(connection_id)
        if room in session.rooms:
            return False
        session.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)
        return True

    def leave(self, connection_id: str, room: str) -> bool:
        """Remove membership. Returns False if the connection was not a member."""
        session = self._sessions.get(connection_id)
        if session is None or room not in session.rooms:
            return False
        session.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        return True

    def is_member(self, connection_id: str, room: str) -> bool:
        session = self._sessions.get(connection_id)
        return session is not None and room in session.rooms

    def members(self, room: str) -> frozenset[str]:
        return frozenset(self._rooms.get(room, ()))

    def rooms_of(self, connection_id: str) -> frozenset[str]:
        session = self._sessions.get(connection_id)
        return frozenset(session.rooms) if session else frozenset()

    def deliver(self, connection_id: str, frame: dict) -> bool:
        """Queue a frame for one connection.

        Returns False if the connection is gone or its bounded outbox is full.
        A full outbox fires the session's ``on_overflow`` callback.
        """
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        try:
            session.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Outbox full for %s, dropping %s", connection_id, frame.get("type"))
            if session.on_overflow is not None:
                session.on_overflow()
            return False
        return True

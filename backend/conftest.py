"""Root conftest: shared fixtures for all backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure backend/ is on sys.path
_backend_dir = str(Path(__file__).resolve().parent)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

# Secrets and runtime choices for tests, set before config is imported
if not os.environ.get("TOKEN_SIGNING_KEY"):
    from cryptography.fernet import Fernet
    os.environ["TOKEN_SIGNING_KEY"] = Fernet.generate_key().decode()
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("COMPLETION_PROVIDER", "mock")
os.environ.setdefault("ROOM_BACKEND", "local")

import asyncio

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401  register all models with Base

# In-memory SQLite; StaticPool keeps every connection on the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@event.listens_for(TEST_ENGINE, "connect")
def _enable_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


def run_async(coro):
    """Run an async coroutine synchronously on a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


def _make_user(db, username: str, email: str, password: str = "testpass"):
    import bcrypt
    from models.user import User

    user = User(
        username=username,
        email=email,
        password_hash=bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "alice", "alice@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "bob", "bob@example.com")


@pytest.fixture
def token(user):
    from auth import issue_token

    return issue_token(user.id)


@pytest.fixture
def other_token(other_user):
    from auth import issue_token

    return issue_token(other_user.id)


@pytest.fixture
def conversation(db, user):
    from models.conversation import Conversation

    conv = Conversation(user_id=user.id, title="Alice's chat")
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


@pytest.fixture
def other_conversation(db, other_user):
    from models.conversation import Conversation

    conv = Conversation(user_id=other_user.id, title="Bob's chat")
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


class ScriptedProvider:
    """Completion provider double: yields fixed fragments, optionally failing."""

    def __init__(self, fragments=("Hello", " there", "!"), fail_after: int | None = None, pause: float = 0.0):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.pause = pause
        self.prompts: list = []

    async def stream(self, turns):
        self.prompts.append(list(turns))
        for i, fragment in enumerate(self.fragments):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("provider exploded")
            await asyncio.sleep(self.pause)
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise RuntimeError("provider exploded")


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def gateway(provider):
    from ws.broadcast import LocalRoomBus
    from ws.gateway import ChatGateway
    from ws.rooms import RoomRegistry

    registry = RoomRegistry()
    return ChatGateway(
        registry,
        LocalRoomBus(registry),
        provider,
        system_prompt="You are a test assistant.",
        session_factory=TestSession,
    )

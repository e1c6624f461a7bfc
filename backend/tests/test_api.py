"""Tests for the REST API: login, signup, current user and conversation CRUD."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from models.conversation import Conversation, Message


# ---------------------------------------------------------------------------
# Override the database dependency for tests
# ---------------------------------------------------------------------------

@pytest.fixture
def app(db):
    """Create a test FastAPI app with DB overridden to use test session."""
    from main import app as _app
    from database import get_db

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    _app.dependency_overrides[get_db] = _override_get_db
    yield _app
    _app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_client(client, token):
    client.headers["Authorization"] = f"Bearer {token}"
    return client


# ── Login ─────────────────────────────────────────────────────────────────────

class TestLogin:
    def test_login_with_username(self, client, user):
        resp = client.post("/api/auth/login", json={"username": "alice", "password": "testpass"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["user"]["id"] == user.id
        assert body["user"]["email"] == "alice@example.com"
        assert body["expires_at"] > time.time()
        assert body["token"]

    def test_login_with_email(self, client, user):
        resp = client.post("/api/auth/login", json={"username": "alice@example.com", "password": "testpass"})
        assert resp.status_code == 200

    def test_login_token_opens_protected_routes(self, client, user):
        token = client.post("/api/auth/login", json={"username": "alice", "password": "testpass"}).json()["token"]
        resp = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["username"] == "alice"

    def test_wrong_password(self, client, user):
        resp = client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid credentials."

    def test_unknown_user(self, client):
        resp = client.post("/api/auth/login", json={"username": "ghost", "password": "x"})
        assert resp.status_code == 401

    def test_missing_fields(self, client):
        resp = client.post("/api/auth/login", json={"username": "alice"})
        assert resp.status_code == 422


# ── Signup and /me ────────────────────────────────────────────────────────────

class TestUsers:
    def test_signup(self, client, db):
        resp = client.post("/api/users", json={
            "username": "carol", "email": "carol@example.com", "password": "s3cret",
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["user"]["username"] == "carol"
        assert body["token"]

        from models.user import User
        stored = db.query(User).filter(User.username == "carol").one()
        assert stored.password_hash != "s3cret"

    def test_signup_duplicate_username(self, client, user):
        resp = client.post("/api/users", json={
            "username": "alice", "email": "other@example.com", "password": "s3cret",
        })
        assert resp.status_code == 409

    def test_signup_duplicate_email(self, client, user):
        resp = client.post("/api/users", json={
            "username": "alice2", "email": "alice@example.com", "password": "s3cret",
        })
        assert resp.status_code == 409

    def test_signup_invalid_email(self, client):
        resp = client.post("/api/users", json={
            "username": "dave", "email": "not-an-email", "password": "s3cret",
        })
        assert resp.status_code == 422

    def test_me(self, auth_client, user):
        resp = auth_client.get("/api/users/me")
        assert resp.status_code == 200
        assert resp.json()["id"] == user.id
        assert "password_hash" not in resp.json()

    def test_me_without_token(self, client):
        resp = client.get("/api/users/me")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid or missing token."

    def test_me_with_bad_token(self, client):
        resp = client.get("/api/users/me", headers={"Authorization": "Bearer junk"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid or expired token"

    def test_me_with_expired_token(self, client, user):
        from auth import issue_token

        stale = issue_token(user.id, issued_at=int(time.time()) - 2 * 86400)
        resp = client.get("/api/users/me", headers={"Authorization": f"Bearer {stale}"})
        assert resp.status_code == 401


# ── Conversations ─────────────────────────────────────────────────────────────

class TestConversations:
    def test_requires_auth(self, client):
        assert client.get("/api/chat/c").status_code == 401
        assert client.post("/api/chat/c", json={}).status_code == 401

    def test_create_default_title(self, auth_client, user):
        resp = auth_client.post("/api/chat/c", json={})
        assert resp.status_code == 201
        body = resp.json()
        assert body["title"] == "New Chat"
        assert body["user_id"] == user.id

    def test_create_with_title(self, auth_client):
        resp = auth_client.post("/api/chat/c", json={"title": "Trip plans"})
        assert resp.json()["title"] == "Trip plans"

    def test_list_only_own(self, auth_client, conversation, other_conversation):
        resp = auth_client.get("/api/chat/c")
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()] == [conversation.id]

    def test_list_most_recent_first(self, auth_client, db, user):
        from services import chat_store

        older = chat_store.create_conversation(db, user.id, "older")
        newer = chat_store.create_conversation(db, user.id, "newer")
        assert [c["id"] for c in auth_client.get("/api/chat/c").json()] == [newer.id, older.id]

        chat_store.create_message(db, older.id, "user", "bump")
        assert [c["id"] for c in auth_client.get("/api/chat/c").json()] == [older.id, newer.id]

    def test_messages(self, auth_client, db, conversation):
        from services import chat_store

        chat_store.create_message(db, conversation.id, "user", "hi")
        chat_store.create_message(db, conversation.id, "assistant", "hello")

        resp = auth_client.get(f"/api/chat/c/{conversation.id}/messages")
        assert resp.status_code == 200
        assert [(m["role"], m["content"]) for m in resp.json()] == [("user", "hi"), ("assistant", "hello")]

    def test_messages_of_foreign_conversation(self, auth_client, other_conversation):
        resp = auth_client.get(f"/api/chat/c/{other_conversation.id}/messages")
        assert resp.status_code == 404

    def test_delete_cascades_messages(self, auth_client, db, conversation):
        from services import chat_store

        chat_store.create_message(db, conversation.id, "user", "hi")
        resp = auth_client.delete(f"/api/chat/c/{conversation.id}")
        assert resp.status_code == 204

        db.expire_all()
        assert db.get(Conversation, conversation.id) is None
        assert db.query(Message).filter(Message.conversation_id == conversation.id).count() == 0

    def test_delete_foreign_conversation(self, auth_client, db, other_conversation):
        resp = auth_client.delete(f"/api/chat/c/{other_conversation.id}")
        assert resp.status_code == 404
        db.expire_all()
        assert db.get(Conversation, other_conversation.id) is not None


# ── Health ────────────────────────────────────────────────────────────────────

class TestHealth:
    def test_health_anonymous(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["websocket"] == "enabled"
        assert body["authenticated"] is False
        assert "timestamp" in body

    def test_health_with_token(self, auth_client):
        assert auth_client.get("/health").json()["authenticated"] is True

    def test_health_bad_token_is_still_healthy(self, client):
        resp = client.get("/health", headers={"Authorization": "Bearer junk"})
        assert resp.status_code == 200
        assert resp.json()["authenticated"] is False

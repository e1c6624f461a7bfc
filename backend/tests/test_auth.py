"""Tests for auth.py: signed tokens, identity resolution and dependencies."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from auth import (
    AuthenticationError,
    Identity,
    authenticate_token,
    decode_token,
    get_current_user,
    get_optional_user,
    issue_token,
    token_expires_at,
)


class TestTokens:
    def test_round_trip(self, user):
        assert decode_token(issue_token(user.id)) == user.id

    def test_expired(self, user):
        stale = issue_token(user.id, issued_at=int(time.time()) - 86400 - 60)
        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            decode_token(stale)

    def test_just_inside_ttl(self, user):
        fresh = issue_token(user.id, issued_at=int(time.time()) - 60)
        assert decode_token(fresh) == user.id

    def test_tampered(self, user):
        token = issue_token(user.id)
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
        with pytest.raises(AuthenticationError):
            decode_token(tampered)

    def test_signed_with_other_key(self, user):
        from cryptography.fernet import Fernet

        foreign = Fernet(Fernet.generate_key()).encrypt(b'{"sub": "x"}').decode()
        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            decode_token(foreign)

    def test_empty(self):
        with pytest.raises(AuthenticationError, match="No token provided"):
            decode_token("")

    @pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"sub": 5}', b"{}"])
    def test_bad_payload(self, payload):
        from auth import _fernet

        token = _fernet().encrypt(payload).decode()
        with pytest.raises(AuthenticationError, match="Invalid token payload"):
            decode_token(token)

    def test_missing_signing_key(self):
        with patch("auth.settings") as mock_settings:
            mock_settings.TOKEN_SIGNING_KEY = ""
            with pytest.raises(RuntimeError, match="TOKEN_SIGNING_KEY"):
                issue_token("u1")

    def test_expires_at(self):
        assert token_expires_at(1000.0) == 1000 + 86400


class TestAuthenticateToken:
    def test_identity(self, db, user, token):
        identity = authenticate_token(db, token)
        assert identity == Identity(id=user.id, username="alice", email="alice@example.com")

    def test_identity_is_frozen(self, db, token):
        identity = authenticate_token(db, token)
        with pytest.raises(AttributeError):
            identity.id = "someone-else"

    def test_user_deleted(self, db, user, token):
        db.delete(user)
        db.commit()
        with pytest.raises(AuthenticationError, match="User not found"):
            authenticate_token(db, token)


class TestDependencies:
    def _creds(self, token):
        creds = MagicMock()
        creds.credentials = token
        return creds

    def test_current_user(self, db, user, token):
        assert get_current_user(self._creds(token), db).id == user.id

    def test_current_user_missing(self, db):
        with pytest.raises(HTTPException) as exc_info:
            get_current_user(None, db)
        assert exc_info.value.status_code == 401

    def test_current_user_invalid(self, db):
        with pytest.raises(HTTPException) as exc_info:
            get_current_user(self._creds("junk"), db)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid or expired token"

    def test_optional_user(self, db, user, token):
        assert get_optional_user(self._creds(token), db).id == user.id
        assert get_optional_user(None, db) is None
        assert get_optional_user(self._creds("junk"), db) is None

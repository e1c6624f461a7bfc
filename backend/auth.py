"""Session authenticator: signed bearer tokens and FastAPI dependencies.

Tokens are Fernet tokens (signed, timestamped) carrying the user id. They are
checked against ``settings.TOKEN_TTL_SECONDS`` on every use, and the referenced
user must still exist.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from models.user import User

bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticationError(Exception):
    """Missing, malformed or expired token, or the user no longer exists."""


@dataclass(frozen=True)
class Identity:
    id: str
    username: str
    email: str

    @classmethod
    def from_user(cls, user: User) -> Identity:
        return cls(id=user.id, username=user.username, email=user.email)


def _fernet() -> Fernet:
    if not settings.TOKEN_SIGNING_KEY:
        raise RuntimeError("TOKEN_SIGNING_KEY is not configured")
    return Fernet(settings.TOKEN_SIGNING_KEY.encode())


def issue_token(user_id: str, *, issued_at: int | None = None) -> str:
    payload = json.dumps({"sub": user_id}).encode()
    f = _fernet()
    if issued_at is None:
        return f.encrypt(payload).decode()
    return f.encrypt_at_time(payload, issued_at).decode()


def decode_token(token: str) -> str:
    """Return the user id carried by *token* or raise AuthenticationError."""
    if not token:
        raise AuthenticationError("No token provided")
    try:
        raw = _fernet().decrypt(token.encode(), ttl=settings.TOKEN_TTL_SECONDS)
    except InvalidToken as exc:
        raise AuthenticationError("Invalid or expired token") from exc
    try:
        user_id = json.loads(raw).get("sub")
    except (ValueError, AttributeError) as exc:
        raise AuthenticationError("Invalid token payload") from exc
    if not user_id or not isinstance(user_id, str):
        raise AuthenticationError("Invalid token payload")
    return user_id


def resolve_user(db: Session, token: str) -> User:
    user_id = decode_token(token)
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError("User not found")
    return user


def authenticate_token(db: Session, token: str) -> Identity:
    """Resolve a bearer token to an immutable identity."""
    return Identity.from_user(resolve_user(db, token))


def token_expires_at(now: float | None = None) -> int:
    return int(now if now is not None else time.time()) + settings.TOKEN_TTL_SECONDS


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User | None:
    """Resolve the caller if a valid token is present; otherwise proceed anonymously."""
    if credentials is None:
        return None
    try:
        return resolve_user(db, credentials.credentials)
    except AuthenticationError:
        return None


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """FastAPI dependency: validate Bearer token and return the User."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing token.",
        )
    try:
        return resolve_user(db, credentials.credentials)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc

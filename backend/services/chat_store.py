"""Persistence service for users, conversations and messages.

Every helper takes an open SQLAlchemy ``Session`` and commits its own writes.
HTTP routes get the session from ``get_db``; the realtime gateway opens a
short-lived ``SessionLocal()`` per operation.
"""

from __future__ import annotations

import logging

import bcrypt
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.conversation import Conversation, Message, MessageRole, utcnow
from models.user import User

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_TITLE = "New Chat"


class DuplicateUserError(Exception):
    """Username or email is already taken."""


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(stored_hash: str, password: str) -> bool:
    """Verify password against stored bcrypt hash."""
    if not stored_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), stored_hash.encode())
    except (ValueError, UnicodeDecodeError):
        return False


def create_user(db: Session, username: str, email: str, password: str) -> User:
    exists = (
        db.query(User.id)
        .filter(or_(User.username == username, User.email == email))
        .first()
    )
    if exists:
        raise DuplicateUserError("Username or email already exists")

    user = User(username=username, email=email, password_hash=hash_password(password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateUserError("Username or email already exists") from exc
    db.refresh(user)
    logger.info("Created user %s (%s)", user.username, user.id)
    return user


def get_user(db: Session, user_id: str) -> User | None:
    return db.get(User, user_id)


def get_user_by_login(db: Session, login: str) -> User | None:
    """Look a user up by username or email."""
    return (
        db.query(User)
        .filter(or_(User.username == login, User.email == login))
        .first()
    )


def authenticate_user(db: Session, login: str, password: str) -> User | None:
    user = get_user_by_login(db, login)
    if not user or not verify_password(user.password_hash, password):
        return None
    return user


def delete_user(db: Session, user_id: str) -> bool:
    user = db.get(User, user_id)
    if not user:
        return False
    db.delete(user)
    db.commit()
    return True


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


def create_conversation(db: Session, user_id: str, title: str | None = None) -> Conversation:
    conversation = Conversation(user_id=user_id, title=(title or "").strip() or DEFAULT_CONVERSATION_TITLE)
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def list_conversations(db: Session, user_id: str) -> list[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.user_id == user_id)
        .order_by(Conversation.updated_at.desc())
        .all()
    )


def get_owned_conversation(db: Session, conversation_id: str, user_id: str) -> Conversation | None:
    """Return the conversation only if it exists and belongs to *user_id*."""
    if not conversation_id or not user_id:
        return None
    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.user_id == user_id)
        .first()
    )


def delete_conversation(db: Session, conversation_id: str, user_id: str) -> bool:
    """Delete an owned conversation; its messages go with it."""
    conversation = get_owned_conversation(db, conversation_id, user_id)
    if not conversation:
        return False
    db.delete(conversation)
    db.commit()
    return True


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def create_message(
    db: Session,
    conversation_id: str,
    role: MessageRole | str,
    content: str,
    *,
    message_id: str | None = None,
) -> Message:
    """Append a message and bump the conversation's update timestamp."""
    role_value = MessageRole(role).value
    message = Message(conversation_id=conversation_id, role=role_value, content=content)
    if message_id:
        message.id = message_id
    db.add(message)
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.updated_at: utcnow()}, synchronize_session=False,
    )
    db.commit()
    db.refresh(message)
    return message


def list_messages(db: Session, conversation_id: str) -> list[Message]:
    """Full history of a conversation, oldest first."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
        .all()
    )

"""Payload schemas for realtime events sent by the gateway.

Fields are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class AuthSuccess(EventPayload):
    user_id: str
    username: str
    email: str


class ConversationRef(EventPayload):
    conversation_id: str


class ErrorPayload(EventPayload):
    message: str
    code: str
    error: str | None = None


class ChatMessagePayload(EventPayload):
    id: str
    content: str
    role: Literal["user", "assistant"]
    conversation_id: str
    created_at: datetime


class AITyping(EventPayload):
    is_typing: bool


class AIResponseChunk(EventPayload):
    content: str
    is_complete: bool = False
    message_id: str | None = None


class AIResponseError(EventPayload):
    message: str
    error: str


class UserTyping(EventPayload):
    user_id: str
    username: str
    is_typing: bool

"""Gateway error taxonomy. Every error here becomes a scoped ``error`` event."""

from __future__ import annotations

import enum


class ErrorCode(str, enum.Enum):
    CONVERSATION_ACCESS_DENIED = "CONVERSATION_ACCESS_DENIED"
    EMPTY_MESSAGE = "EMPTY_MESSAGE"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    INVALID_MESSAGE_DATA = "INVALID_MESSAGE_DATA"
    MESSAGE_PROCESSING_ERROR = "MESSAGE_PROCESSING_ERROR"
    JOIN_CONVERSATION_ERROR = "JOIN_CONVERSATION_ERROR"
    USER_ID_MISMATCH = "USER_ID_MISMATCH"


class GatewayError(Exception):
    code: ErrorCode = ErrorCode.MESSAGE_PROCESSING_ERROR
    default_message = "Failed to process message"

    def __init__(self, message: str | None = None, *, code: ErrorCode | None = None, detail: str | None = None):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(self.message)


class AccessDenied(GatewayError):
    """Conversation missing or owned by someone else."""

    code = ErrorCode.CONVERSATION_ACCESS_DENIED
    default_message = "Conversation not found or access denied"


class ValidationFailure(GatewayError):
    code = ErrorCode.MISSING_REQUIRED_FIELDS
    default_message = "Conversation ID and message are required"


class SecurityViolation(GatewayError):
    """Client asserted a user id that is not the authenticated one."""

    code = ErrorCode.USER_ID_MISMATCH
    default_message = "Unauthorized: User ID mismatch"

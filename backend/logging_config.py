"""Logging for the chat server.

Every record is tagged with the chat context it was emitted under: the
connection, the authenticated user and the conversation. The gateway opens
that context around each inbound event with :func:`log_context`; AI turn
tasks inherit it because asyncio copies context into new tasks.

Text lines look like::

    2026-02-17 14:30:01 INFO    ws.gateway:212 AI turn complete | conn=3f9c2a1b user=alice conv=c0ffee12

With ``LOG_FORMAT=json`` each record is one JSON object per line instead.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

connection_id_var: ContextVar[str] = ContextVar("connection_id_var", default="")
user_var: ContextVar[str] = ContextVar("user_var", default="")
conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")

_CONTEXT_VARS = {
    "conn": connection_id_var,
    "user": user_var,
    "conv": conversation_id_var,
}
_SHORT_IDS = {"conn", "conv"}

STREAM_HANDLER_NAME = "relaychat.stream"
FILE_HANDLER_NAME = "relaychat.file"

_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "urllib3", "websockets", "redis")


@contextmanager
def log_context(
    *,
    connection_id: str | None = None,
    user: str | None = None,
    conversation_id: str | None = None,
) -> Iterator[None]:
    """Tag log records emitted inside the block. ``None`` leaves a field as is."""
    values = {"conn": connection_id, "user": user, "conv": conversation_id}
    tokens = [
        (_CONTEXT_VARS[key], _CONTEXT_VARS[key].set(value))
        for key, value in values.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_context() -> dict[str, str]:
    return {key: var.get() for key, var in _CONTEXT_VARS.items() if var.get()}


class ChatContextFilter(logging.Filter):
    """Attach ``service`` and the current chat context (``record.chat``)."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service  # type: ignore[attr-defined]
        record.chat = current_context()  # type: ignore[attr-defined]
        return True


class ChatFormatter(logging.Formatter):
    def __init__(self, json_lines: bool = False, datefmt: str = "%Y-%m-%d %H:%M:%S") -> None:
        super().__init__(datefmt=datefmt)
        self.json_lines = json_lines

    def format(self, record: logging.LogRecord) -> str:
        chat = getattr(record, "chat", {})
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)

        if self.json_lines:
            entry = {
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "line": record.lineno,
                "service": getattr(record, "service", ""),
                "msg": record.getMessage(),
                **chat,
            }
            if record.exc_text:
                entry["exc"] = record.exc_text
            return json.dumps(entry, default=str)

        line = (
            f"{self.formatTime(record, self.datefmt)} {record.levelname:<7} "
            f"{record.name}:{record.lineno} {record.getMessage()}"
        )
        if chat:
            tags = " ".join(
                f"{key}={value[:8] if key in _SHORT_IDS else value}"
                for key, value in chat.items()
            )
            line += f" | {tags}"
        if record.exc_text:
            line += "\n" + record.exc_text
        if record.stack_info:
            line += "\n" + record.stack_info
        return line


def _handlers(settings) -> list[logging.Handler]:
    stream = logging.StreamHandler(sys.stderr)
    stream.name = STREAM_HANDLER_NAME
    handlers: list[logging.Handler] = [stream]

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        rotating.name = FILE_HANDLER_NAME
        handlers.append(rotating)
    return handlers


def setup_logging(service: str = "relaychat") -> None:
    """Install the chat handlers on the root logger once per process.

    uvicorn's own loggers are routed through root so access and error lines
    carry the same format.
    """
    from config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == STREAM_HANDLER_NAME for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    context_filter = ChatContextFilter(service)
    formatter = ChatFormatter(json_lines=settings.LOG_FORMAT.lower() == "json")
    for handler in _handlers(settings):
        handler.addFilter(context_filter)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True

"""Streaming completion providers.

A provider takes the ordered, role-tagged prompt and yields text fragments
lazily. Exhaustion of the iterator means the completion finished; any exception
raised while iterating is an upstream failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatTurn:
    role: str  # system | user | assistant
    content: str


class CompletionProvider(Protocol):
    def stream(self, turns: Sequence[ChatTurn]) -> AsyncIterator[str]: ...


def to_langchain_messages(turns: Sequence[ChatTurn]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for turn in turns:
        if turn.role == "system":
            messages.append(SystemMessage(content=turn.content))
        elif turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
        elif turn.role == "user":
            messages.append(HumanMessage(content=turn.content))
        else:
            raise ValueError(f"Unsupported message role: {turn.role}")
    return messages


def _chunk_text(content) -> str:
    """Flatten a chunk's content (plain string or list of content blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return ""


class ChatModelCompletionProvider:
    """Streams from any langchain chat model via ``astream``."""

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    async def stream(self, turns: Sequence[ChatTurn]) -> AsyncIterator[str]:
        async for chunk in self.llm.astream(to_langchain_messages(turns)):
            text = _chunk_text(chunk.content)
            if text:
                yield text


MOCK_RESPONSES = (
    "I understand you'd like to chat!\nI'm here to help with any questions.\nWhat would you like to know?",
    "That's a great question!\nLet me think about that for you.\nHere's what I think...",
    "Thanks for sharing that with me.\nI appreciate you taking the time.\nHow can I assist you further?",
    "I'm here to help you today.\nFeel free to ask me anything.\nWhat's on your mind?",
)


class MockCompletionProvider:
    """Offline provider: streams a canned reply word by word."""

    def __init__(self, responses: Sequence[str] = MOCK_RESPONSES, delay: float = 0.1) -> None:
        self.responses = tuple(responses)
        self.delay = delay

    async def stream(self, turns: Sequence[ChatTurn]) -> AsyncIterator[str]:
        reply = random.choice(self.responses)
        for i, word in enumerate(reply.split(" ")):
            yield word if i == 0 else " " + word
            if self.delay:
                await asyncio.sleep(self.delay)


def create_completion_provider(settings) -> CompletionProvider:
    """Build the provider selected by ``COMPLETION_PROVIDER``."""
    kind = settings.COMPLETION_PROVIDER.lower()
    if kind == "mock" or (kind == "openai" and not settings.OPENAI_API_KEY):
        if kind == "openai":
            logger.warning("OPENAI_API_KEY is not set, falling back to the mock completion provider")
        return MockCompletionProvider()

    if kind == "openai":
        from langchain_openai import ChatOpenAI

        kwargs: dict = {
            "model": settings.OPENAI_MODEL,
            "temperature": settings.OPENAI_TEMPERATURE,
            "max_tokens": settings.OPENAI_MAX_TOKENS,
            "streaming": True,
        }
        if settings.OPENAI_BASE_URL:
            kwargs["base_url"] = settings.OPENAI_BASE_URL
        return ChatModelCompletionProvider(ChatOpenAI(api_key=settings.OPENAI_API_KEY, **kwargs))

    raise ValueError(f"Unsupported completion provider: {settings.COMPLETION_PROVIDER}")

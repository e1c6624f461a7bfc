"""Tests for services/completion.py: providers and the settings factory."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from services.completion import (
    ChatModelCompletionProvider,
    ChatTurn,
    MockCompletionProvider,
    _chunk_text,
    create_completion_provider,
    to_langchain_messages,
)


def _run(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _collect(provider, turns):
    return [fragment async for fragment in provider.stream(turns)]


def _settings(**overrides):
    base = dict(
        COMPLETION_PROVIDER="openai",
        OPENAI_API_KEY="",
        OPENAI_BASE_URL="",
        OPENAI_MODEL="gpt-4o",
        OPENAI_TEMPERATURE=0.7,
        OPENAI_MAX_TOKENS=150,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


class TestMessageMapping:
    def test_roles(self):
        messages = to_langchain_messages([
            ChatTurn("system", "be brief"),
            ChatTurn("user", "hi"),
            ChatTurn("assistant", "hello"),
        ])
        assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage]
        assert [m.content for m in messages] == ["be brief", "hi", "hello"]

    def test_unknown_role(self):
        with pytest.raises(ValueError, match="Unsupported message role"):
            to_langchain_messages([ChatTurn("tool", "x")])

    def test_chunk_text(self):
        assert _chunk_text("abc") == "abc"
        assert _chunk_text([{"type": "text", "text": "a"}, "b", {"type": "image_url"}]) == "ab"
        assert _chunk_text(None) == ""


class TestChatModelProvider:
    def test_streams_model_output(self):
        llm = GenericFakeChatModel(messages=iter([AIMessage(content="Hello there, friend")]))
        provider = ChatModelCompletionProvider(llm)

        fragments = _run(_collect(provider, [ChatTurn("system", "s"), ChatTurn("user", "hi")]))

        assert len(fragments) > 1
        assert all(fragments)
        assert "".join(fragments) == "Hello there, friend"

    def test_upstream_error_propagates(self):
        class Exploding:
            async def astream(self, messages):
                yield AIMessage(content="partial")
                raise ConnectionError("upstream went away")

        provider = ChatModelCompletionProvider(Exploding())

        async def scenario():
            seen = []
            with pytest.raises(ConnectionError):
                async for fragment in provider.stream([ChatTurn("user", "hi")]):
                    seen.append(fragment)
            return seen

        assert _run(scenario()) == ["partial"]


class TestMockProvider:
    def test_streams_a_canned_reply(self):
        provider = MockCompletionProvider(responses=["one two three"], delay=0)
        assert _run(_collect(provider, [ChatTurn("user", "hi")])) == ["one", " two", " three"]

    def test_default_replies_are_short(self):
        provider = MockCompletionProvider(delay=0)
        reply = "".join(_run(_collect(provider, [])))
        assert 1 <= len(reply.splitlines()) <= 3


class TestFactory:
    def test_mock(self):
        assert isinstance(create_completion_provider(_settings(COMPLETION_PROVIDER="mock")), MockCompletionProvider)

    def test_openai_without_key_falls_back(self):
        assert isinstance(create_completion_provider(_settings()), MockCompletionProvider)

    def test_openai(self):
        with patch("langchain_openai.ChatOpenAI") as mock_cls:
            provider = create_completion_provider(_settings(OPENAI_API_KEY="sk-test", OPENAI_BASE_URL="http://llm:8000/v1"))
        assert isinstance(provider, ChatModelCompletionProvider)
        kwargs = mock_cls.call_args.kwargs
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 150
        assert kwargs["streaming"] is True
        assert kwargs["base_url"] == "http://llm:8000/v1"

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unsupported completion provider"):
            create_completion_provider(_settings(COMPLETION_PROVIDER="oracle"))

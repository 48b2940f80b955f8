"""Tests for the OpenAI-compatible provider adapter."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from chatops.config import LLMConfig, LLMProviderConfig
from chatops.errors import ConfigError, LLMError
from chatops.llm import CompletionOptions, OpenAIProvider, create_provider


def completion(content="", tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def function_call(call_id, name, arguments):
    return SimpleNamespace(
        id=call_id, type="function", function=SimpleNamespace(name=name, arguments=arguments)
    )


@pytest.fixture
def provider():
    p = OpenAIProvider("openai", LLMProviderConfig(model="gpt-test", api_key="sk-test"))
    p._client.chat.completions.create = AsyncMock()
    return p


class TestComplete:
    @pytest.mark.asyncio
    async def test_text_response(self, provider):
        provider._client.chat.completions.create.return_value = completion("Hello.")
        response = await provider.complete([{"role": "user", "content": "hi"}])
        assert response.content == "Hello."
        assert response.tool_calls == []
        kwargs = provider._client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_calls(self, provider):
        provider._client.chat.completions.create.return_value = completion(
            None,
            [
                function_call("c1", "fs_read_file", '{"path": "/a"}'),
                SimpleNamespace(id="c2", type="custom"),
            ],
        )
        tools = [{"type": "function", "function": {"name": "fs_read_file"}}]
        response = await provider.complete([], tools)
        assert response.content == ""
        assert [(c.id, c.name, c.arguments) for c in response.tool_calls] == [
            ("c1", "fs_read_file", '{"path": "/a"}')
        ]
        assert provider._client.chat.completions.create.await_args.kwargs["tools"] == tools

    @pytest.mark.asyncio
    async def test_api_error_is_llm_error(self, provider):
        provider._client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        with pytest.raises(LLMError):
            await provider.complete([])

    @pytest.mark.asyncio
    async def test_timeout_is_llm_error(self, provider):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        provider._client.chat.completions.create.side_effect = slow
        with pytest.raises(LLMError, match="within"):
            await provider.complete([], options=CompletionOptions(model="gpt-test", timeout=0.1))

    @pytest.mark.asyncio
    async def test_no_choices(self, provider):
        provider._client.chat.completions.create.return_value = SimpleNamespace(choices=[])
        with pytest.raises(LLMError):
            await provider.complete([])


class TestCreate:
    def test_ollama_needs_no_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = LLMConfig(provider="ollama")
        provider = create_provider(config)
        assert provider.name == "ollama"
        assert provider.default_options().model == config.active.model

    def test_openai_without_any_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            OpenAIProvider("openai", LLMProviderConfig())

    def test_unknown_provider(self):
        with pytest.raises(ConfigError):
            create_provider(LLMConfig(provider="nope"))

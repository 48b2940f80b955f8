"""LLM provider contract and the OpenAI-compatible adapter."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import openai
from openai import AsyncOpenAI

from .config import PROVIDER_OLLAMA, PROVIDER_OPENAI, LLMConfig, LLMProviderConfig
from .errors import ConfigError, LLMError

log = logging.getLogger(__name__)


@dataclass
class LLMToolCall:
    id: str
    name: str
    # JSON text as the provider sent it, or an already-decoded object
    arguments: str | dict = ""


@dataclass
class LLMResponse:
    content: str = ""
    tool_calls: list[LLMToolCall] = field(default_factory=list)


@dataclass
class CompletionOptions:
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    timeout: float = 120.0


class LLMProvider(Protocol):
    name: str

    def default_options(self) -> CompletionOptions: ...

    async def complete(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        options: CompletionOptions | None = None,
    ) -> LLMResponse: ...

    async def close(self) -> None: ...


class OpenAIProvider:
    """Chat completions against any OpenAI-compatible endpoint (OpenAI, Ollama)."""

    def __init__(self, name: str, config: LLMProviderConfig):
        self.name = name
        self._config = config
        try:
            self._client = AsyncOpenAI(
                base_url=config.base_url,
                # None lets the SDK fall back to OPENAI_API_KEY
                api_key=config.api_key or None,
            )
        except openai.OpenAIError as e:
            raise ConfigError(f"LLM provider '{name}': {e}") from e

    def default_options(self) -> CompletionOptions:
        return CompletionOptions(
            model=self._config.model,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            timeout=self._config.timeout,
        )

    async def complete(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        options: CompletionOptions | None = None,
    ) -> LLMResponse:
        options = options or self.default_options()
        kwargs = {"model": options.model, "messages": messages}
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_tokens:
            kwargs["max_tokens"] = options.max_tokens
        if tools:
            kwargs["tools"] = tools

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs), options.timeout
            )
        except asyncio.TimeoutError:
            raise LLMError(
                f"{self.name}: no response from {options.model} within {options.timeout:.0f}s"
            ) from None
        except openai.OpenAIError as e:
            raise LLMError(f"{self.name}: {e}") from e

        if not response.choices:
            raise LLMError(f"{self.name}: response contained no choices")
        message = response.choices[0].message
        tool_calls = []
        for tool_call in message.tool_calls or []:
            function = getattr(tool_call, "function", None)
            if function is None:
                log.warning(f"Ignoring non-function tool call of type '{tool_call.type}'")
                continue
            tool_calls.append(LLMToolCall(tool_call.id, function.name, function.arguments))
        return LLMResponse(content=message.content or "", tool_calls=tool_calls)

    async def close(self) -> None:
        await self._client.close()


def create_provider(config: LLMConfig) -> LLMProvider:
    if config.provider in (PROVIDER_OPENAI, PROVIDER_OLLAMA):
        provider = OpenAIProvider(config.provider, config.active)
        log.info(f"LLM provider: {config.provider} (model {config.active.model})")
        return provider
    raise ConfigError(f"Unknown LLM provider '{config.provider}'")

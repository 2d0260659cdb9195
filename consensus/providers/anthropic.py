"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

import anthropic as anthropic_sdk

from consensus.models import TokenUsage
from consensus.providers.base import (
    AIProvider,
    ChatMessage,
    ChatResult,
    ProviderConfig,
    ProviderError,
    StreamChunk,
    split_system,
)

logger = logging.getLogger(__name__)


def _usage(usage) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.input_tokens,
        completion_tokens=usage.output_tokens,
        total_tokens=usage.input_tokens + usage.output_tokens,
    )


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        key_env = config.api_key_env or "ANTHROPIC_API_KEY"
        api_key = os.environ.get(key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, base_url=config.base_url)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _request(self, messages: list[ChatMessage], temperature: float, max_tokens: int) -> dict:
        system, rest = split_system(messages)
        request = {
            "model": self._config.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": rest,
        }
        if system:
            request["system"] = system
        return request

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> ChatResult:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**self._request(messages, temperature, max_tokens)),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        text_blocks = [b.text for b in response.content or [] if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        usage = _usage(response.usage)
        logger.info(
            "Anthropic %s: %.2fs, %s tokens",
            self._config.model,
            latency,
            usage.total_tokens if usage else None,
        )
        return ChatResult(content="\n".join(text_blocks), usage=usage)

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> AsyncIterator[StreamChunk]:
        try:
            async with self._client.messages.stream(**self._request(messages, temperature, max_tokens)) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamChunk(content=text)
                final = await stream.get_final_message()
        except Exception as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc

        yield StreamChunk(content="", done=True, usage=_usage(final.usage))

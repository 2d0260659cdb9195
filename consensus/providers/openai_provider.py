"""OpenAI provider using openai SDK with native async.

Also serves every OpenAI-compatible endpoint (OpenRouter, LM Studio,
Ollama) through ``base_url``.
"""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

from consensus.models import TokenUsage
from consensus.providers.base import AIProvider, ChatMessage, ChatResult, ProviderConfig, ProviderError, StreamChunk

logger = logging.getLogger(__name__)

# Local servers accept any key
_LOCAL_API_KEY = "not-needed"


def _usage(usage) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


class OpenAIProvider(AIProvider):
    """OpenAI-compatible chat completions provider via openai SDK."""

    def __init__(self, config: ProviderConfig, require_key: bool = True) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip() if config.api_key_env else ""
        if not api_key:
            if require_key:
                raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
            api_key = _LOCAL_API_KEY
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> ChatResult:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._config.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        usage = _usage(response.usage)
        logger.info(
            "%s %s: %.2fs, %s tokens",
            self._config.name,
            self._config.model,
            latency,
            usage.total_tokens if usage else None,
        )
        return ChatResult(content=choice.message.content, usage=usage)

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> AsyncIterator[StreamChunk]:
        usage: TokenUsage | None = None
        try:
            stream = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._config.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    stream=True,
                    stream_options={"include_usage": True},
                ),
                timeout=self._config.timeout_sec,
            )
            async for chunk in stream:
                if chunk.usage is not None:
                    usage = _usage(chunk.usage)
                if chunk.choices and chunk.choices[0].delta.content:
                    yield StreamChunk(content=chunk.choices[0].delta.content)
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc

        yield StreamChunk(content="", done=True, usage=usage)

"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

from google import genai
from google.genai import types as genai_types

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


def _usage(metadata) -> TokenUsage | None:
    if metadata is None:
        return None
    prompt = metadata.prompt_token_count or 0
    completion = metadata.candidates_token_count or 0
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=metadata.total_token_count or prompt + completion,
    )


def _contents(messages: list[ChatMessage]) -> list[genai_types.Content]:
    return [
        genai_types.Content(
            role="model" if m["role"] == "assistant" else "user",
            parts=[genai_types.Part(text=m["content"])],
        )
        for m in messages
    ]


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        key_env = config.api_key_env or "GOOGLE_API_KEY"
        api_key = os.environ.get(key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _request(self, messages: list[ChatMessage], temperature: float, max_tokens: int) -> dict:
        system, rest = split_system(messages)
        return {
            "model": self._config.model,
            "contents": _contents(rest),
            "config": genai_types.GenerateContentConfig(
                system_instruction=system or None,
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        }

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> ChatResult:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(**self._request(messages, temperature, max_tokens)),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")

        usage = _usage(response.usage_metadata)
        logger.info(
            "Gemini %s: %.2fs, %s tokens",
            self._config.model,
            latency,
            usage.total_tokens if usage else None,
        )
        return ChatResult(content=response.text, usage=usage)

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> AsyncIterator[StreamChunk]:
        usage: TokenUsage | None = None
        try:
            stream = await asyncio.wait_for(
                self._client.aio.models.generate_content_stream(**self._request(messages, temperature, max_tokens)),
                timeout=self._config.timeout_sec,
            )
            async for chunk in stream:
                if chunk.usage_metadata is not None:
                    usage = _usage(chunk.usage_metadata)
                if chunk.text:
                    yield StreamChunk(content=chunk.text)
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc

        yield StreamChunk(content="", done=True, usage=usage)

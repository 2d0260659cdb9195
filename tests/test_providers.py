"""Provider error wrapping, no real API calls."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from consensus.providers.base import ProviderConfig, ProviderError
from consensus.providers.gemini import GeminiProvider
from consensus.providers.openai_provider import OpenAIProvider

MESSAGES = [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Hi"}]


async def _drain(provider) -> list:
    return [chunk async for chunk in provider.chat_stream(MESSAGES)]


async def test_gemini_stream_wraps_transport_errors(monkeypatch):
    monkeypatch.setenv("TEST_GEMINI_KEY", "test-key")
    provider = GeminiProvider(ProviderConfig(name="Gemini", model="gemini-2.5-flash", api_key_env="TEST_GEMINI_KEY"))
    provider._client = MagicMock()
    provider._client.aio.models.generate_content_stream = AsyncMock(side_effect=ConnectionError("connection reset"))

    with pytest.raises(ProviderError, match="Stream failed: connection reset"):
        await _drain(provider)


async def test_gemini_chat_wraps_transport_errors(monkeypatch):
    monkeypatch.setenv("TEST_GEMINI_KEY", "test-key")
    provider = GeminiProvider(ProviderConfig(name="Gemini", model="gemini-2.5-flash", api_key_env="TEST_GEMINI_KEY"))
    provider._client = MagicMock()
    provider._client.aio.models.generate_content = AsyncMock(side_effect=ConnectionError("connection reset"))

    with pytest.raises(ProviderError, match="API call failed"):
        await provider.chat(MESSAGES)


async def test_openai_stream_wraps_transport_errors():
    provider = OpenAIProvider(
        ProviderConfig(name="Local", model="llama3.1", base_url="http://localhost:11434/v1"), require_key=False
    )
    provider._client = MagicMock()
    provider._client.chat.completions.create = AsyncMock(side_effect=ConnectionError("refused"))

    with pytest.raises(ProviderError, match="Stream failed: refused"):
        await _drain(provider)


def test_missing_key_is_reported(monkeypatch):
    monkeypatch.delenv("TEST_GEMINI_KEY", raising=False)
    with pytest.raises(ProviderError, match="Missing API key: TEST_GEMINI_KEY"):
        GeminiProvider(ProviderConfig(name="Gemini", model="gemini-2.5-flash", api_key_env="TEST_GEMINI_KEY"))

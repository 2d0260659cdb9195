"""Abstract base for all chat model providers."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from consensus.models import TokenUsage

logger = logging.getLogger(__name__)

# {"role": "system" | "user" | "assistant", "content": "..."}
ChatMessage = dict[str, str]

_PING_PROMPT = "Reply with the word OK only."
_PING_TIMEOUT_SEC = 15.0


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


@dataclass
class ProviderConfig:
    name: str                       # display name used in logs and errors
    model: str
    api_key_env: str | None = None
    base_url: str | None = None
    timeout_sec: float = 180


@dataclass
class ChatResult:
    content: str
    usage: TokenUsage | None = None


@dataclass
class StreamChunk:
    content: str
    done: bool = False
    usage: TokenUsage | None = None


class AIProvider(ABC):
    """Abstract base for all chat model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the provider name (e.g. 'anthropic', 'openrouter')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> ChatResult:
        """Send a chat conversation and return the full reply.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> AsyncIterator[StreamChunk]:
        """Stream the reply as chunks; the last chunk has ``done=True``.

        Providers without native streaming yield the whole reply at once.
        """
        result = await self.chat(messages, temperature=temperature, max_tokens=max_tokens)
        yield StreamChunk(content=result.content, done=True, usage=result.usage)

    async def is_available(self) -> bool:
        """Ping the model with a tiny prompt."""
        try:
            await asyncio.wait_for(
                self.chat([{"role": "user", "content": _PING_PROMPT}], temperature=0.0, max_tokens=5),
                timeout=_PING_TIMEOUT_SEC,
            )
            return True
        except (ProviderError, TimeoutError) as exc:
            logger.warning("%s/%s unavailable: %s", self.name(), self.model_string(), exc)
            return False


def split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Separate system messages for APIs that take the system prompt out of band."""
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    rest = [m for m in messages if m["role"] != "system"]
    return system, rest

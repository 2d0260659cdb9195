"""Build a provider client from a participant's provider/model settings."""

import logging

from consensus.models import Provider
from consensus.providers.anthropic import AnthropicProvider
from consensus.providers.base import AIProvider, ProviderConfig
from consensus.providers.gemini import GeminiProvider
from consensus.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

DEFAULT_API_KEY_ENV: dict[Provider, str | None] = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GOOGLE: "GOOGLE_API_KEY",
    Provider.OPENROUTER: "OPENROUTER_API_KEY",
    Provider.OLLAMA: None,
    Provider.LMSTUDIO: None,
}

DEFAULT_BASE_URL: dict[Provider, str | None] = {
    Provider.OPENROUTER: "https://openrouter.ai/api/v1",
    Provider.OLLAMA: "http://localhost:11434/v1",
    Provider.LMSTUDIO: "http://localhost:1234/v1",
}

_LOCAL_PROVIDERS = (Provider.OLLAMA, Provider.LMSTUDIO)


def create_provider(
    provider: Provider | str,
    model: str,
    api_key_env: str | None = None,
    base_url: str | None = None,
    timeout_sec: float = 180,
) -> AIProvider:
    """Instantiate the client for ``provider``.

    Raises:
        ValueError: Unknown provider name.
        ProviderError: Required API key missing from the environment.
    """
    kind = Provider(provider)
    config = ProviderConfig(
        name=kind.value,
        model=model,
        api_key_env=api_key_env or DEFAULT_API_KEY_ENV.get(kind),
        base_url=base_url or DEFAULT_BASE_URL.get(kind),
        timeout_sec=timeout_sec,
    )
    logger.debug("Creating %s provider for %s", kind.value, model)

    if kind == Provider.ANTHROPIC:
        return AnthropicProvider(config)
    if kind == Provider.GOOGLE:
        return GeminiProvider(config)
    return OpenAIProvider(config, require_key=kind not in _LOCAL_PROVIDERS)

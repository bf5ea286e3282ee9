"""Provider client construction."""

from __future__ import annotations

from typing import Optional

from ..keys.loader import KeyConfig, resolve_api_key
from .claude_provider import ClaudeProvider
from .gemini_provider import GeminiProvider
from .openai_provider import OpenAIProvider
from .types import ProviderConfig

ProviderInstance = ClaudeProvider | GeminiProvider | OpenAIProvider

ProviderClass = type[ClaudeProvider] | type[GeminiProvider] | type[OpenAIProvider]


PROVIDER_CLASSES: dict[str, ProviderClass] = {
    "claude": ClaudeProvider,
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
}


def create_provider_client(config: ProviderConfig, api_key: Optional[str]) -> ProviderInstance:
    """Instantiate the client for ``config.provider_id``.

    Raises:
        ValueError: unknown provider id
    """
    provider_class = PROVIDER_CLASSES.get(config.provider_id)
    if not provider_class:
        raise ValueError(f"Unsupported provider: {config.provider_id}")
    return provider_class(config, api_key)


def load_provider_client(config: ProviderConfig, key_config: KeyConfig) -> ProviderInstance:
    """Resolve the API key and instantiate the client.

    A missing key yields a client in ``key_missing`` state rather than an error.
    """
    return create_provider_client(config, resolve_api_key(config.provider_id, key_config))

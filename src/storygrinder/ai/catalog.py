"""Provider registry and provider lookup helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .types import ProviderConfig


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    """Static description of one supported provider."""

    provider_id: str
    display_name: str
    description: str
    env_var: str
    default_model: str
    context_window_tokens: int
    max_output_tokens_hard_limit: int
    supports_reasoning_budget: bool
    order: int


# Official documentation for limits:
# - Claude: https://docs.anthropic.com/en/docs/about-claude/models/overview
# - OpenAI: https://platform.openai.com/docs/models
# - Gemini: https://ai.google.dev/gemini-api/docs/models
PROVIDER_REGISTRY: dict[str, ProviderInfo] = {
    "gemini": ProviderInfo(
        provider_id="gemini",
        display_name="Gemini (Google)",
        description="Most cost-effective option for manuscript analysis",
        env_var="GEMINI_API_KEY",
        default_model="gemini-2.5-pro",
        context_window_tokens=1_048_576,
        max_output_tokens_hard_limit=65_536,
        supports_reasoning_budget=True,
        order=1,
    ),
    "openai": ProviderInfo(
        provider_id="openai",
        display_name="ChatGPT (OpenAI)",
        description="Industry standard with good quality",
        env_var="OPENAI_API_KEY",
        default_model="gpt-4.1-2025-04-14",
        context_window_tokens=1_047_576,
        max_output_tokens_hard_limit=32_768,
        supports_reasoning_budget=False,
        order=2,
    ),
    "claude": ProviderInfo(
        provider_id="claude",
        display_name="Claude (Anthropic)",
        description="Advanced reasoning and creative analysis",
        env_var="ANTHROPIC_API_KEY",
        default_model="claude-sonnet-4-20250514",
        context_window_tokens=200_000,
        max_output_tokens_hard_limit=32_000,
        supports_reasoning_budget=True,
        order=3,
    ),
}

_OPENAI_CHAT_MODEL_PATTERN = re.compile(r"^(gpt-|o\d+|chatgpt-)")


def get_provider_info(provider_id: str) -> ProviderInfo:
    """Get a provider's static description."""
    info = PROVIDER_REGISTRY.get(provider_id)
    if info is None:
        available = ", ".join(PROVIDER_REGISTRY)
        raise ValueError(f"Unknown provider: {provider_id}. Available: {available}")
    return info


def get_provider_ids() -> list[str]:
    """Get list of all supported provider ids."""
    return list(PROVIDER_REGISTRY.keys())


def get_providers_for_display() -> list[ProviderInfo]:
    """Get providers in display order."""
    return sorted(PROVIDER_REGISTRY.values(), key=lambda info: info.order)


def is_valid_provider(provider_id: str) -> bool:
    """Check whether a provider id is known."""
    return provider_id in PROVIDER_REGISTRY


def get_api_key_env_var(provider_id: str) -> str:
    """Get the environment variable holding a provider's API key."""
    return get_provider_info(provider_id).env_var


def default_provider_config(provider_id: str, model: Optional[str] = None) -> ProviderConfig:
    """Build a ProviderConfig from catalog defaults."""
    info = get_provider_info(provider_id)
    return ProviderConfig(
        provider_id=info.provider_id,
        model_name=model or info.default_model,
        context_window_tokens=info.context_window_tokens,
        max_output_tokens_hard_limit=info.max_output_tokens_hard_limit,
        supports_reasoning_budget=info.supports_reasoning_budget,
    )


def is_openai_chat_model(model_id: str) -> bool:
    """Check if an OpenAI model id names a chat-capable model."""
    return bool(_OPENAI_CHAT_MODEL_PATTERN.match(model_id or ""))

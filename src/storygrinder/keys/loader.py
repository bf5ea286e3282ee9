"""Resolve a provider's API key from its configured source."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Required, TypedDict

from ..constants import APP_NAME
from ..logging import log_event
from .backends import load_from_env, load_from_json, load_from_keyring

MIN_KEY_LENGTH = 20


class KeyConfig(TypedDict, total=False):
    """Where to find one provider's API key, discriminated by ``type``.

      env                    → key (variable name)
      keychain / credential  → service (default "storygrinder"), account (default: provider id)
      json                   → path, key (dotted; default: provider id)
      direct                 → value (tests only)
    """

    type: Required[str]
    key: str
    value: str
    service: str
    account: str
    path: str


def _from_env(provider: str, config: KeyConfig) -> str:
    return load_from_env(config["key"])


def _from_keyring(provider: str, config: KeyConfig) -> str:
    return load_from_keyring(config.get("service", APP_NAME), config.get("account", provider))


def _from_json(provider: str, config: KeyConfig) -> str:
    return load_from_json(config["path"], config.get("key", provider))


def _direct(provider: str, config: KeyConfig) -> str:
    return config["value"]


_SOURCES: dict[str, Callable[[str, KeyConfig], str]] = {
    "env": _from_env,
    "keychain": _from_keyring,
    "credential": _from_keyring,
    "json": _from_json,
    "direct": _direct,
}


def load_api_key(provider: str, config: KeyConfig) -> str:
    """Load a key, raising on any failure.

    Raises:
        ValueError: unknown source type or the source has no usable key
        KeyError: a required config field is missing

    Example configs:
        {"type": "env", "key": "ANTHROPIC_API_KEY"}
        {"type": "keychain", "account": "claude"}
        {"type": "json", "path": "~/.secrets/llm.json", "key": "google.gemini"}
    """
    key_type = config.get("type")
    source = _SOURCES.get(key_type or "")
    if source is None:
        raise ValueError(f"Unknown key type '{key_type}' for provider '{provider}'")
    return source(provider, config)


def validate_api_key(key: str) -> bool:
    """Cheap shape check; the provider decides whether the key really works."""
    return bool(key) and len(key.strip()) >= MIN_KEY_LENGTH


def resolve_api_key(provider: str, config: KeyConfig) -> Optional[str]:
    """Load a key, returning ``None`` when it is absent or unusable.

    A provider without a key is a normal state, so failures are logged
    rather than raised.
    """
    try:
        api_key = load_api_key(provider, config)
    except (ValueError, KeyError) as e:
        log_event(
            "provider_validation_error",
            level=logging.WARNING,
            provider=provider,
            key_source=config.get("type"),
            phase="key_load_failed",
            error_type=type(e).__name__,
            error=str(e).splitlines()[0] if str(e) else "",
        )
        return None

    if not validate_api_key(api_key):
        log_event(
            "provider_validation_error",
            level=logging.WARNING,
            provider=provider,
            key_source=config.get("type"),
            phase="key_validation_failed",
            error_type="ValueError",
            error=f"API key for {provider} is shorter than {MIN_KEY_LENGTH} characters",
        )
        return None

    return api_key.strip()

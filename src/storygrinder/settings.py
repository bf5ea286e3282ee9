"""User settings: provider selection, model choices, limits, and key sources.

Settings live in a JSON file (``~/.storygrinder/settings.json`` by default)::

    {
      "selected_provider": "claude",
      "models": {"claude": "claude-sonnet-4-20250514"},
      "language": "en-US",
      "projects_dir": "~/writing_with_storygrinder",
      "providers": {"claude": {"request_timeout": 600, "max_retries": 2}},
      "api_keys": {"claude": {"type": "keychain", "service": "storygrinder", "account": "claude"}}
    }

Every key is optional. A missing file yields defaults.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .ai.catalog import (
    PROVIDER_REGISTRY,
    default_provider_config,
    get_api_key_env_var,
    get_provider_info,
    get_providers_for_display,
)
from .ai.types import ProviderConfig
from .constants import DEFAULT_LANGUAGE, DEFAULT_PROJECTS_DIR, DEFAULT_SETTINGS_FILE
from .errors import ConfigurationError
from .keys.loader import KeyConfig
from .timeouts import normalize_max_retries, normalize_timeout

# Overrides that must be positive integers.
_POSITIVE_INT_FIELDS = (
    "context_window_tokens",
    "max_output_tokens_hard_limit",
    "desired_output_tokens",
    "preferred_reasoning_budget",
    "max_reasoning_budget",
)

_KNOWN_SETTINGS_KEYS = {
    "selected_provider",
    "models",
    "language",
    "projects_dir",
    "providers",
    "api_keys",
}


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


def _mapping(raw: Any, name: str) -> Mapping[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    return raw


def _default_selected_provider() -> str:
    return get_providers_for_display()[0].provider_id


@dataclass(slots=True)
class Settings:
    """Typed settings view consumed by the workbench and CLI."""

    selected_provider: str = field(default_factory=_default_selected_provider)
    models: dict[str, str] = field(default_factory=dict)
    language: str = DEFAULT_LANGUAGE
    projects_dir: str = DEFAULT_PROJECTS_DIR
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    api_keys: dict[str, KeyConfig] = field(default_factory=dict)
    settings_file: Optional[str] = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], settings_file: Optional[str] = None
    ) -> Settings:
        """Create settings from parsed JSON.

        Raises:
            ConfigurationError: wrong shapes or an unknown selected provider
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Settings must be a JSON object")

        selected = data.get("selected_provider") or _default_selected_provider()
        if selected not in PROVIDER_REGISTRY:
            raise ConfigurationError(
                f"Unknown selected_provider '{selected}'. "
                f"Available: {', '.join(PROVIDER_REGISTRY)}"
            )

        models = {
            str(provider): str(model)
            for provider, model in _mapping(data.get("models"), "models").items()
            if model
        }

        providers: dict[str, dict[str, Any]] = {}
        for provider, overrides in _mapping(data.get("providers"), "providers").items():
            if not isinstance(overrides, Mapping):
                raise ConfigurationError(f"Provider settings for '{provider}' must be a dictionary")
            providers[str(provider)] = dict(overrides)

        api_keys: dict[str, KeyConfig] = {}
        for provider, key_config in _mapping(data.get("api_keys"), "api_keys").items():
            if not isinstance(key_config, Mapping) or "type" not in key_config:
                raise ConfigurationError(
                    f"API key config for '{provider}' must be a dictionary with a 'type'"
                )
            api_keys[str(provider)] = dict(key_config)  # type: ignore[assignment]

        language = data.get("language", DEFAULT_LANGUAGE)
        if not isinstance(language, str):
            raise ConfigurationError("'language' must be a string")
        projects_dir = data.get("projects_dir", DEFAULT_PROJECTS_DIR)
        if not isinstance(projects_dir, str):
            raise ConfigurationError("'projects_dir' must be a string")

        return cls(
            selected_provider=str(selected),
            models=models,
            language=language,
            projects_dir=projects_dir,
            providers=providers,
            api_keys=api_keys,
            settings_file=settings_file,
            extras={str(k): v for k, v in data.items() if k not in _KNOWN_SETTINGS_KEYS},
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> Settings:
        """Load settings from ``path`` (default location when omitted).

        Raises:
            ConfigurationError: unreadable file or invalid JSON
        """
        settings_path = Path(path or DEFAULT_SETTINGS_FILE).expanduser()
        if not settings_path.exists():
            if path is not None:
                raise ConfigurationError(f"Settings file not found: {settings_path}")
            return cls(settings_file=str(settings_path))
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in settings file {settings_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read settings file {settings_path}: {e}") from e
        return cls.from_dict(data, settings_file=str(settings_path))

    def model_for(self, provider_id: str) -> str:
        """Configured model for a provider, else the catalog default."""
        return self.models.get(provider_id) or get_provider_info(provider_id).default_model

    def provider_config(self, provider_id: str, model: Optional[str] = None) -> ProviderConfig:
        """Build the ProviderConfig for a provider, applying overrides.

        Invalid numeric overrides are ignored in favour of catalog defaults.

        Raises:
            ValueError: unknown provider id
        """
        base = default_provider_config(provider_id, model or self.model_for(provider_id))
        overrides = self.providers.get(provider_id, {})

        values: dict[str, Any] = {}
        for name in _POSITIVE_INT_FIELDS:
            value = _positive_int(overrides.get(name))
            if value is not None:
                values[name] = value

        values["request_timeout"] = normalize_timeout(
            overrides.get("request_timeout"), base.request_timeout
        )
        values["max_retries"] = normalize_max_retries(
            overrides.get("max_retries"), base.max_retries
        )

        temperature = overrides.get("temperature")
        if (
            isinstance(temperature, (int, float))
            and not isinstance(temperature, bool)
            and math.isfinite(temperature)
        ):
            values["temperature"] = float(temperature)

        supports_reasoning = overrides.get("supports_reasoning_budget")
        if isinstance(supports_reasoning, bool):
            values["supports_reasoning_budget"] = supports_reasoning

        return ProviderConfig(
            provider_id=base.provider_id,
            model_name=base.model_name,
            context_window_tokens=values.get("context_window_tokens", base.context_window_tokens),
            max_output_tokens_hard_limit=values.get(
                "max_output_tokens_hard_limit", base.max_output_tokens_hard_limit
            ),
            supports_reasoning_budget=values.get(
                "supports_reasoning_budget", base.supports_reasoning_budget
            ),
            request_timeout=values["request_timeout"],
            max_retries=values["max_retries"],
            desired_output_tokens=values.get("desired_output_tokens", base.desired_output_tokens),
            preferred_reasoning_budget=values.get(
                "preferred_reasoning_budget", base.preferred_reasoning_budget
            ),
            max_reasoning_budget=values.get("max_reasoning_budget", base.max_reasoning_budget),
            temperature=values.get("temperature", base.temperature),
        )

    def key_config(self, provider_id: str) -> KeyConfig:
        """Key source for a provider; defaults to its environment variable."""
        configured = self.api_keys.get(provider_id)
        if configured is not None:
            return configured
        return {"type": "env", "key": get_api_key_env_var(provider_id)}

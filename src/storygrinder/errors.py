"""Exception taxonomy for provider calls and run orchestration."""

from __future__ import annotations


class StoryGrinderError(Exception):
    """Base class for all StoryGrinder errors."""


class ConfigurationError(StoryGrinderError):
    """Missing or invalid configuration, typically an API key.

    Recoverable by user action; never fatal to the process.
    """


class NotConfiguredError(ConfigurationError):
    """A provider client was asked to stream without an API key."""

    def __init__(self, provider_id: str, env_var: str | None = None):
        self.provider_id = provider_id
        self.env_var = env_var
        hint = f" (set {env_var})" if env_var else ""
        super().__init__(f"{provider_id} API key is not configured{hint}")


class ContextNotPreparedError(StoryGrinderError):
    """``stream_generate`` was called before ``prepare_context`` succeeded."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(
            f"No manuscript loaded for {provider_id}; call prepare_context() first"
        )


class ProviderTransportError(StoryGrinderError):
    """Network, rate-limit, or server failure after retries were exhausted."""


class ProviderTimeoutError(ProviderTransportError):
    """The provider did not answer within the configured request timeout."""


class UnknownRunError(StoryGrinderError, KeyError):
    """A run id was not found in the registry."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Unknown run: {run_id}")

    def __str__(self) -> str:
        return str(self.args[0])

"""Shared typed contracts for provider configuration and call metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, TypedDict

from ..timeouts import DEFAULT_MAX_RETRIES, DEFAULT_REQUEST_TIMEOUT_SEC

if TYPE_CHECKING:
    from ..orchestration.cancellation import CancellationToken


DEFAULT_DESIRED_OUTPUT_TOKENS = 8000
DEFAULT_PREFERRED_REASONING_BUDGET = 20000
DEFAULT_MAX_REASONING_BUDGET = 20000


class TokenUsage(TypedDict, total=False):
    """Token usage metadata returned by providers."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cached_tokens: int
    reasoning_tokens: int


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Immutable per-client provider configuration.

    ``desired_output_tokens`` is the visible-output headroom kept free of
    reasoning; ``preferred_reasoning_budget`` is the thinking budget below
    which a prompt is flagged as oversized; ``max_reasoning_budget`` caps
    the thinking budget.
    """

    provider_id: str
    model_name: str
    context_window_tokens: int
    max_output_tokens_hard_limit: int
    supports_reasoning_budget: bool = False
    request_timeout: int | float = DEFAULT_REQUEST_TIMEOUT_SEC
    max_retries: int = DEFAULT_MAX_RETRIES
    desired_output_tokens: int = DEFAULT_DESIRED_OUTPUT_TOKENS
    preferred_reasoning_budget: int = DEFAULT_PREFERRED_REASONING_BUDGET
    max_reasoning_budget: int = DEFAULT_MAX_REASONING_BUDGET
    temperature: Optional[float] = None


@dataclass(frozen=True, slots=True)
class TokenBudget:
    """Admissible token allocation for one provider call."""

    prompt_tokens: int
    context_window: int
    available_tokens: int
    max_output_tokens: int
    reasoning_budget_tokens: int
    is_prompt_oversized: bool


@dataclass(frozen=True, slots=True)
class PreparedContext:
    """Manuscript text prepended to every instruction until replaced."""

    text: str
    source_path: Optional[str] = None

    @property
    def char_count(self) -> int:
        return len(self.text)


@dataclass(slots=True)
class PrepareResult:
    """Outcome of ``prepare_context``: informational messages and errors."""

    messages: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class StreamOptions:
    """Per-call switches for ``stream_generate``."""

    include_reasoning: bool = False
    include_metadata: bool = True
    cancel_token: Optional["CancellationToken"] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


class ClientState(str, Enum):
    """Lifecycle of a provider client."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    KEY_MISSING = "key_missing"
    CONTEXT_LOADED = "context_loaded"
    STREAMING = "streaming"

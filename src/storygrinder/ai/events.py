"""Canonical stream events shared by every provider client.

Each provider translates its own wire protocol into this union; the run
registry and the UI only ever see these types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Literal, TypeAlias

from .types import TokenBudget, TokenUsage


ErrorCategory = Literal["configuration", "context", "timeout", "transport", "provider"]


@dataclass(slots=True, frozen=True)
class RunStarted:
    """The provider call for a run has begun."""

    provider_id: str
    model: str
    kind: Literal["run-started"] = "run-started"


@dataclass(slots=True, frozen=True)
class TextDelta:
    """A fragment of visible response text."""

    text: str
    kind: Literal["text-delta"] = "text-delta"


@dataclass(slots=True, frozen=True)
class ReasoningDelta:
    """A fragment of model reasoning; only emitted when the caller opts in."""

    text: str
    kind: Literal["reasoning-delta"] = "reasoning-delta"


@dataclass(slots=True, frozen=True)
class RateLimitInfo:
    """Rate-limit related HTTP headers of the streaming response."""

    headers: dict[str, str] = field(default_factory=dict)
    kind: Literal["rate-limit-info"] = "rate-limit-info"


@dataclass(slots=True, frozen=True)
class BudgetWarning:
    """The prompt ate into the reasoning budget or overflowed the window.

    Non-fatal: the call proceeds with the clamped budget.
    """

    message: str
    budget: TokenBudget
    kind: Literal["budget-warning"] = "budget-warning"


@dataclass(slots=True, frozen=True)
class RunCompleted:
    """Terminal success event."""

    usage: TokenUsage | None = None
    stop_reason: str | None = None
    kind: Literal["run-completed"] = "run-completed"


@dataclass(slots=True, frozen=True)
class RunError:
    """Terminal failure event.

    ``category`` separates configuration problems (prompt the user to set a
    key) from transient ones (``timeout``/``transport``; offer a retry).
    """

    message: str
    error_type: str = "Exception"
    category: ErrorCategory = "provider"
    retryable: bool = False
    kind: Literal["run-error"] = "run-error"


CanonicalStreamEvent: TypeAlias = (
    RunStarted
    | TextDelta
    | ReasoningDelta
    | RateLimitInfo
    | BudgetWarning
    | RunCompleted
    | RunError
)

TERMINAL_EVENTS = (RunCompleted, RunError)

EventCallback: TypeAlias = Callable[[CanonicalStreamEvent], None]


def is_terminal(event: CanonicalStreamEvent) -> bool:
    """Return True for ``run-completed`` and ``run-error``."""
    return isinstance(event, TERMINAL_EVENTS)


def rate_limit_headers(headers: object) -> dict[str, str]:
    """Pick the headers whose name mentions ``rate`` or ``limit``."""
    if headers is None:
        return {}
    items = getattr(headers, "items", None)
    if items is None:
        return {}
    selected: dict[str, str] = {}
    for name, value in items():
        lowered = str(name).lower()
        if "rate" in lowered or "limit" in lowered:
            selected[lowered] = str(value)
    return selected

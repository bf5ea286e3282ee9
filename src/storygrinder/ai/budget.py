"""Pre-flight token budgeting for provider calls.

Given a prompt's token count and a provider's declared limits, compute an
admissible ``(max_output_tokens, reasoning_budget_tokens)`` pair:

1. ``available = context_window - prompt_tokens`` (clamped at 0; negative
   means the prompt alone overflows the window and is flagged oversized)
2. ``max_output = min(available, hard_output_limit)``
3. with reasoning support: ``reasoning = max_output - desired_output``,
   capped at ``max_reasoning_budget``; an uncapped value below the
   preferred reasoning budget flags the prompt as oversized

Nothing here raises. Callers always get a best-effort budget and decide
whether to surface the oversized flag as a warning.
"""

from __future__ import annotations

import math
from typing import Any

from .types import ProviderConfig, TokenBudget


# Average UTF-8 bytes per token for English prose.
BYTES_PER_TOKEN = 4.0


def _non_negative_int(raw_value: Any) -> int:
    """Coerce a configured limit to a non-negative int (0 when invalid)."""
    if isinstance(raw_value, bool) or not isinstance(raw_value, (int, float)):
        return 0
    if isinstance(raw_value, float) and not math.isfinite(raw_value):
        return 0
    return max(int(raw_value), 0)


def estimate_tokens_approx(text: str) -> int:
    """Estimate tokens from UTF-8 byte length (~4 bytes per token)."""
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / BYTES_PER_TOKEN))


def resolve_prompt_tokens(counted: int, text: str) -> int:
    """Use the provider count when known, else the byte-length estimate."""
    if isinstance(counted, int) and not isinstance(counted, bool) and counted >= 0:
        return counted
    return estimate_tokens_approx(text)


def compute_token_budget(prompt_tokens: int, config: ProviderConfig) -> TokenBudget:
    """Compute the token budget for one call."""
    prompt = _non_negative_int(prompt_tokens)
    context_window = _non_negative_int(config.context_window_tokens)
    hard_limit = _non_negative_int(config.max_output_tokens_hard_limit)

    oversized = False
    available = context_window - prompt
    if available < 0:
        available = 0
        oversized = True

    max_output = min(available, hard_limit)

    reasoning = 0
    if config.supports_reasoning_budget:
        desired = _non_negative_int(config.desired_output_tokens)
        preferred = _non_negative_int(config.preferred_reasoning_budget)
        ceiling = _non_negative_int(config.max_reasoning_budget)

        # Visible output headroom larger than the whole output leaves no room to think.
        uncapped = max_output - desired if desired <= max_output else 0
        if uncapped < preferred:
            oversized = True

        reasoning = min(uncapped, ceiling)
        # Strictly less than max_output so some visible output always fits.
        reasoning = min(reasoning, max_output - 1) if max_output > 0 else 0
        reasoning = max(reasoning, 0)

    if max_output == 0:
        oversized = True

    return TokenBudget(
        prompt_tokens=prompt,
        context_window=context_window,
        available_tokens=available,
        max_output_tokens=max_output,
        reasoning_budget_tokens=reasoning,
        is_prompt_oversized=oversized,
    )


def budget_warning_message(budget: TokenBudget) -> str:
    """Build the user-facing warning for an oversized prompt."""
    if budget.available_tokens == 0:
        return (
            f"WARNING: Prompt ({budget.prompt_tokens} tokens) fills the whole "
            f"{budget.context_window}-token context window. The response will "
            "likely be cut short or rejected."
        )
    return (
        f"WARNING: Prompt is very large ({budget.prompt_tokens} tokens). Only "
        f"{budget.max_output_tokens} output tokens remain "
        f"(thinking budget {budget.reasoning_budget_tokens}). This may affect "
        "response quality."
    )

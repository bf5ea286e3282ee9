"""Shared helpers for provider implementations."""

from __future__ import annotations

import logging
from typing import Any

import aiofiles
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..constants import MANUSCRIPT_FOOTER, MANUSCRIPT_HEADER
from ..errors import ProviderTimeoutError, ProviderTransportError
from ..logging import before_sleep_log_event, log_event, sanitize_error_message
from ..timeouts import (
    RETRY_BACKOFF_EXP_BASE,
    RETRY_BACKOFF_INITIAL_SEC,
    RETRY_BACKOFF_JITTER,
    RETRY_BACKOFF_MAX_SEC,
)
from .events import ErrorCategory, RunError
from .types import ClientState, PreparedContext, PrepareResult, TokenBudget


def build_full_prompt(context: PreparedContext, instruction: str) -> str:
    """Prepend the manuscript to a per-run instruction."""
    return f"{MANUSCRIPT_HEADER}\n{context.text}\n{MANUSCRIPT_FOOTER}\n\n{instruction}"


async def load_prepared_context(
    provider: str, manuscript_path: str
) -> tuple[PreparedContext | None, PrepareResult]:
    """Read a manuscript file into a PreparedContext.

    Failures are reported in the result instead of raised.
    """
    result = PrepareResult()
    result.messages.append("Loading manuscript file...")
    try:
        async with aiofiles.open(manuscript_path, "r", encoding="utf-8") as f:
            content = await f.read()
    except (OSError, UnicodeDecodeError) as e:
        result.errors.append(f"Error loading manuscript: {e}")
        return None, result

    if not content.strip():
        result.errors.append("Error loading manuscript: Manuscript file is empty")
        return None, result

    result.messages.append("Manuscript file loaded successfully")
    result.messages.append(f"Manuscript length: {len(content)} characters")
    log_event(
        "context_prepared",
        level=logging.INFO,
        provider=provider,
        manuscript_file=manuscript_path,
        chars=len(content),
    )
    return PreparedContext(text=content, source_path=manuscript_path), result


def derive_client_state(
    *,
    has_key: bool,
    context: PreparedContext | None,
    active_streams: int,
) -> ClientState:
    """Map client internals onto the public lifecycle states."""
    if not has_key:
        return ClientState.KEY_MISSING
    if active_streams > 0:
        return ClientState.STREAMING
    if context is not None:
        return ClientState.CONTEXT_LOADED
    return ClientState.READY


def build_stream_retrying(
    *,
    provider: str,
    model: str | None = None,
    operation: str,
    max_retries: int,
    retry_on: tuple[type[BaseException], ...],
) -> AsyncRetrying:
    """Build a tenacity controller for opening a provider stream.

    ``max_retries`` counts extra attempts beyond the first one.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(retry_on),
        wait=wait_exponential_jitter(
            initial=RETRY_BACKOFF_INITIAL_SEC,
            max=RETRY_BACKOFF_MAX_SEC,
            exp_base=RETRY_BACKOFF_EXP_BASE,
            jitter=RETRY_BACKOFF_JITTER,
        ),
        stop=stop_after_attempt(max(max_retries, 0) + 1),
        before_sleep=before_sleep_log_event(
            provider=provider,
            operation=operation,
            model=model,
            level=logging.WARNING,
        ),
        reraise=True,
    )


def run_error_from_exception(
    error: BaseException,
    *,
    category: ErrorCategory,
    retryable: bool = False,
    message: str | None = None,
) -> RunError:
    """Convert an exception into a terminal ``run-error`` event."""
    return RunError(
        message=sanitize_error_message(message if message is not None else str(error)),
        error_type=type(error).__name__,
        category=category,
        retryable=retryable,
    )


def timeout_error_event(message: str) -> RunError:
    """Build the ``run-error`` event for an exhausted request timeout."""
    return run_error_from_exception(
        ProviderTimeoutError(message), category="timeout", retryable=True
    )


def transport_error_event(message: str) -> RunError:
    """Build the ``run-error`` event for exhausted network/rate-limit/5xx retries."""
    return run_error_from_exception(
        ProviderTransportError(message), category="transport", retryable=True
    )


def usage_field(usage: Any, name: str, default: int = 0) -> int:
    """Read an int usage counter from an SDK object, tolerating absence."""
    value = getattr(usage, name, None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


def log_token_budget(provider: str, model: str, budget: TokenBudget) -> None:
    """Emit the ``token_budget`` event for one call."""
    log_event(
        "token_budget",
        level=logging.WARNING if budget.is_prompt_oversized else logging.INFO,
        provider=provider,
        model=model,
        prompt_tokens=budget.prompt_tokens,
        context_window=budget.context_window,
        available_tokens=budget.available_tokens,
        max_output_tokens=budget.max_output_tokens,
        reasoning_budget_tokens=budget.reasoning_budget_tokens,
        is_prompt_oversized=budget.is_prompt_oversized,
    )

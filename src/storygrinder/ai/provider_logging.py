"""Provider log events and the run-error messages shared by all providers."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..logging import extract_http_error_context, log_event, sanitize_error_message


def _log_provider(level: int, provider: str, message: str, error: Optional[BaseException]) -> None:
    fields: dict[str, Any] = extract_http_error_context(error) if error is not None else {}
    log_event(
        "provider_log",
        level=level,
        provider=provider,
        message=sanitize_error_message(message),
        **fields,
    )


def log_provider_error(provider: str, message: str, *, error: Optional[BaseException] = None) -> None:
    """Log a provider failure; ``error`` adds its HTTP method, URL and status."""
    _log_provider(logging.ERROR, provider, message, error)


def log_provider_warning(provider: str, message: str, *, error: Optional[BaseException] = None) -> None:
    _log_provider(logging.WARNING, provider, message, error)


def authentication_failed_message(error: BaseException) -> str:
    return f"Authentication failed: {error}"


def bad_request_message(error: BaseException, *, detail: str | None = None) -> str:
    """Bad-request text, with an optional hint such as a context-length check."""
    if detail:
        return f"Bad request ({detail}): {error}"
    return f"Bad request: {error}"


def api_error_after_retries_message(error: BaseException) -> str:
    return f"API error after retries: {type(error).__name__}: {error}"


def timeout_message(error: BaseException, timeout_sec: int | float) -> str:
    return f"Request timed out after {timeout_sec}s (retries exhausted): {error}"


def truncated_response_message(stop_reason: str) -> str:
    """Warning for output cut short by the output-token cap."""
    return (
        f"Response truncated ({stop_reason}); the saved text may end mid-sentence. "
        "A shorter manuscript leaves more room for output."
    )


def unexpected_error_message(error: BaseException) -> str:
    return f"Unexpected error: {type(error).__name__}: {error}"

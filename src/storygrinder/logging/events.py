"""Structured event emission for runs, providers and the CLI."""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import json
import logging
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.parse import urlsplit, urlunsplit

from ..constants import APP_NAME
from .formatter import StructuredTextFormatter
from .sanitization import sanitize_error_message
from .schema import LOG_PATH_FIELDS

logger = logging.getLogger(APP_NAME)

# Provider SDK loggers that are chatty at INFO; httpx stays at INFO for request lines.
QUIET_LOGGERS = ("anthropic", "openai", "google_genai", "httpcore")

REQUEST_ID_HEADERS = ("request-id", "x-request-id")

_current_run_id: ContextVar[Optional[str]] = ContextVar("storygrinder_run_id", default=None)


@contextlib.contextmanager
def bind_run_id(run_id: str) -> Iterator[None]:
    """Stamp ``run_id`` on every event logged inside the block.

    Each run executes in its own asyncio task, so the binding never leaks
    between concurrent runs.
    """
    token = _current_run_id.set(run_id)
    try:
        yield
    finally:
        _current_run_id.reset(token)


def _to_log_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, enum.Enum):
        return _to_log_safe(value.value)
    if isinstance(value, Path):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_log_safe(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _to_log_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_log_safe(v) for v in value]
    return str(value)


def _absolute_path(path_value: str) -> str:
    value = path_value.strip()
    if not value:
        return path_value
    try:
        return str(Path(value).expanduser().resolve())
    except (OSError, RuntimeError):
        return path_value


def _strip_query(url: str) -> str:
    """Drop query and fragment; Gemini passes ``key=`` in the query string."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def extract_http_error_context(error: BaseException) -> dict[str, Any]:
    """Pull method, URL, status and request id out of an SDK/httpx error."""
    context: dict[str, Any] = {}

    response = getattr(error, "response", None)
    request = getattr(error, "request", None)
    if request is None and response is not None:
        request = getattr(response, "request", None)

    if request is not None:
        method = getattr(request, "method", None)
        if method:
            context["http_method"] = str(method)
        url = getattr(request, "url", None)
        if url:
            context["http_url"] = _strip_query(str(url))

    status = getattr(response, "status_code", None) if response is not None else None
    if status is None:
        status = getattr(error, "status_code", None)
    if status is not None:
        context["http_status"] = status

    if response is not None:
        reason = getattr(response, "reason_phrase", None)
        if reason:
            context["http_reason"] = str(reason)
        headers = getattr(response, "headers", None)
        if headers is not None:
            for name in REQUEST_ID_HEADERS:
                request_id = headers.get(name)
                if request_id:
                    context["request_id"] = str(request_id)
                    break

    return context


def summarize_text(text: Any, limit: int = 200) -> str:
    """Collapse whitespace and cap length, for instruction previews in logs."""
    if text is None:
        return ""
    summary = " ".join(str(text).split())
    if len(summary) > limit:
        return summary[: limit - 3] + "..."
    return summary


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured event as a single-line JSON message."""
    payload: dict[str, Any] = {
        "ts": datetime.now().astimezone().isoformat(),
        "event": event,
    }
    bound_run_id = _current_run_id.get()
    if bound_run_id is not None and "run_id" not in fields:
        payload["run_id"] = bound_run_id
    for key, value in fields.items():
        if key in LOG_PATH_FIELDS and isinstance(value, str):
            value = _absolute_path(value)
        payload[key] = _to_log_safe(value)
    logger.log(level, json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


def before_sleep_log_event(
    *,
    provider: str,
    operation: str,
    model: Optional[str] = None,
    level: int = logging.WARNING,
):
    """tenacity ``before_sleep`` hook that logs a ``provider_retry`` event."""

    def _callback(retry_state: Any) -> None:
        outcome = getattr(retry_state, "outcome", None)
        next_action = getattr(retry_state, "next_action", None)
        if outcome is None or next_action is None or not getattr(outcome, "failed", False):
            return

        error = outcome.exception()
        sleep = getattr(next_action, "sleep", None)
        log_event(
            "provider_retry",
            level=level,
            provider=provider,
            model=model,
            operation=operation,
            attempt=getattr(retry_state, "attempt_number", None),
            wait_sec=round(sleep, 3) if isinstance(sleep, (int, float)) else None,
            error_type=type(error).__name__ if error is not None else None,
            error=sanitize_error_message(str(error)) if error is not None else None,
        )

    return _callback


def setup_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> None:
    """Route structured events to ``log_file``.

    Without a log file, logging is disabled entirely.
    """
    if not log_file:
        logging.disable(logging.CRITICAL)
        return

    log_path = Path(log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(log_path), encoding="utf-8")
    handler.setFormatter(StructuredTextFormatter())
    logging.disable(logging.NOTSET)
    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

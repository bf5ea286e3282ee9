"""Structured logging primitives for StoryGrinder."""

from .events import (
    before_sleep_log_event,
    bind_run_id,
    extract_http_error_context,
    log_event,
    setup_logging,
    summarize_text,
)
from .formatter import StructuredTextFormatter
from .sanitization import sanitize_error_message
from .schema import DEFAULT_EVENT_KEY_ORDER, EVENT_KEY_ORDER, LOG_PATH_FIELDS

__all__ = [
    "DEFAULT_EVENT_KEY_ORDER",
    "EVENT_KEY_ORDER",
    "LOG_PATH_FIELDS",
    "StructuredTextFormatter",
    "before_sleep_log_event",
    "bind_run_id",
    "extract_http_error_context",
    "log_event",
    "sanitize_error_message",
    "setup_logging",
    "summarize_text",
]

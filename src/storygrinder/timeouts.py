"""Centralized timeout and retry policy helpers."""

from __future__ import annotations

import math
from typing import Any

import httpx


# Provider request defaults; manuscript runs are minutes-scale.
DEFAULT_REQUEST_TIMEOUT_SEC = 300
DEFAULT_MAX_RETRIES = 1

# Shared provider HTTP timeout buckets.
AI_HTTP_CONNECT_TIMEOUT_SEC = 10.0
AI_HTTP_WRITE_TIMEOUT_SEC = 60.0
AI_HTTP_POOL_TIMEOUT_SEC = 5.0

# Retry/backoff timing defaults.
RETRY_BACKOFF_INITIAL_SEC = 1.0
RETRY_BACKOFF_EXP_BASE = 2.0
RETRY_BACKOFF_JITTER = 0.5
RETRY_BACKOFF_MAX_SEC = 60.0


def normalize_timeout(value: Any, fallback: int | float = DEFAULT_REQUEST_TIMEOUT_SEC) -> int | float:
    """Normalize timeout-like values to non-negative finite int/float."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        normalized = float(fallback)
    else:
        normalized = float(value)
    if not math.isfinite(normalized) or normalized < 0:
        normalized = float(fallback)
    if normalized.is_integer():
        return int(normalized)
    return normalized


def normalize_max_retries(value: Any, fallback: int = DEFAULT_MAX_RETRIES) -> int:
    """Normalize a retry count to a non-negative int."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return fallback
    return value


def build_ai_httpx_timeout(read_timeout_sec: int | float) -> httpx.Timeout | None:
    """Build httpx timeout config for provider clients.

    Returns ``None`` (wait forever) when the timeout is 0.
    """
    timeout_sec = normalize_timeout(read_timeout_sec)
    if timeout_sec <= 0:
        return None
    return httpx.Timeout(
        connect=AI_HTTP_CONNECT_TIMEOUT_SEC,
        read=timeout_sec,
        write=AI_HTTP_WRITE_TIMEOUT_SEC,
        pool=AI_HTTP_POOL_TIMEOUT_SEC,
    )


def format_timeout(timeout: int | float) -> str:
    """Format timeout value for user-facing messages."""
    if timeout == 0:
        return "0 (wait forever)"
    return f"{timeout} seconds"

"""Shared date/time utilities used across the application."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Return a high-precision UTC timestamp with explicit ``Z`` marker.

    Format: ``2026-01-15T12:34:56.789012Z``
    """
    return utc_now().isoformat(timespec="microseconds").replace("+00:00", "Z")


def local_timestamp_for_filename(fmt: str) -> str:
    """Format the current local time for use inside a file name."""
    return datetime.now().strftime(fmt)

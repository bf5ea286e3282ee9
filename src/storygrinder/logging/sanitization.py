"""Redaction of credentials from log text and user-visible error messages."""

import re

_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    # Anthropic, then OpenAI (sk-proj-, sk-svcacct-, legacy sk-)
    (re.compile(r"sk-ant-[A-Za-z0-9_-]{10,}"), "[REDACTED_API_KEY]"),
    (re.compile(r"sk-[A-Za-z0-9_-]{10,}"), "[REDACTED_API_KEY]"),
    # Google AI Studio
    (re.compile(r"AIza[0-9A-Za-z_-]{20,}"), "[REDACTED_API_KEY]"),
    # Gemini REST calls carry the key as a query parameter
    (re.compile(r"([?&]key=)[^&\s\"']+"), r"\1[REDACTED]"),
    (
        re.compile(r"((?:x-api-key|x-goog-api-key)[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+", re.IGNORECASE),
        r"\1[REDACTED]",
    ),
    (re.compile(r"Bearer\s+[A-Za-z0-9_\-\.]{20,}"), "Bearer [REDACTED_TOKEN]"),
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "[REDACTED_JWT]"),
)


def sanitize_error_message(error_msg: str) -> str:
    """Replace API keys, bearer tokens and JWTs with placeholders."""
    sanitized = error_msg
    for pattern, replacement in _REDACTIONS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized

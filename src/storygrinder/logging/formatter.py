"""Plaintext block formatter for structured log records."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from ..time_utils import utc_now_iso
from .sanitization import sanitize_error_message
from .schema import DEFAULT_EVENT_KEY_ORDER, EVENT_KEY_ORDER

HTTPX_REQUEST_FORMAT = 'HTTP Request: %s %s "%s %d %s"'


class StructuredTextFormatter(logging.Formatter):
    """Render every record as an ``=== event ===`` block of ``key: value`` lines.

    JSON messages from ``log_event`` are expanded field by field, httpx
    request lines are decoded into HTTP fields, and anything else becomes a
    ``message`` field under the logger's name.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._separator = ""

    @staticmethod
    def _render(value: Any) -> str:
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        return str(value).replace("\n", "\\n")

    @staticmethod
    def _key_order(event_name: str, data: dict[str, Any]) -> list[str]:
        preferred = EVENT_KEY_ORDER.get(event_name, DEFAULT_EVENT_KEY_ORDER)
        present = [key for key in preferred if data.get(key) is not None]
        rest = sorted(key for key, value in data.items() if key not in preferred and value is not None)
        return present + rest

    @staticmethod
    def _decode_json(message: str) -> Optional[dict[str, Any]]:
        if not (message.startswith("{") and message.endswith("}")):
            return None
        try:
            decoded = json.loads(message)
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None

    @staticmethod
    def _decode_httpx(record: logging.LogRecord) -> Optional[dict[str, Any]]:
        if record.name != "httpx" or record.msg != HTTPX_REQUEST_FORMAT:
            return None
        if not isinstance(record.args, tuple) or len(record.args) != 5:
            return None
        method, url, version, status, reason = record.args
        parts = urlsplit(str(url))
        return {
            "event": "httpx_request",
            "http_method": str(method),
            "http_url": urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")),
            "http_version": str(version),
            "http_status": status if isinstance(status, int) else str(status),
            "http_reason": str(reason),
        }

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "ts_utc": utc_now_iso(),
            "level": record.levelname,
            "logger": record.name,
        }

        message = record.getMessage()
        fields = self._decode_json(message) or self._decode_httpx(record)
        if fields is None:
            fields = {"event": record.name, "message": sanitize_error_message(message)}
        data.update(fields)

        event_name = str(data.pop("event", record.name))
        lines = [f"=== {event_name} ==="]
        lines.extend(f"{key}: {self._render(data[key])}" for key in self._key_order(event_name, data))
        if record.exc_info:
            lines.append("traceback:")
            lines.append(self.formatException(record.exc_info))

        # Blank line between blocks, none before the first or after the last.
        block = self._separator + "\n".join(lines)
        self._separator = "\n"
        return block

"""Preferred key ordering for structured log blocks."""

from __future__ import annotations

# Fields holding filesystem paths; rendered as absolute paths.
LOG_PATH_FIELDS = frozenset(
    {
        "manuscript_file",
        "output_dir",
        "artifact_file",
        "project_path",
        "settings_file",
        "log_file",
    }
)

DEFAULT_EVENT_KEY_ORDER: tuple[str, ...] = (
    "ts_utc",
    "ts",
    "level",
    "logger",
    "run_id",
    "tool_id",
    "provider",
    "model",
    "message",
)

EVENT_KEY_ORDER: dict[str, tuple[str, ...]] = {
    "app_start": ("ts_utc", "ts", "level", "logger", "command", "provider", "settings_file", "log_file"),
    "app_stop": ("ts_utc", "ts", "level", "logger", "command", "exit_code", "uptime_ms"),
    "provider_log": ("ts_utc", "ts", "level", "logger", "provider", "run_id", "message"),
    "provider_retry": (
        "ts_utc",
        "ts",
        "level",
        "logger",
        "provider",
        "model",
        "operation",
        "attempt",
        "wait_sec",
        "error_type",
        "error",
    ),
    "token_budget": (
        "ts_utc",
        "ts",
        "level",
        "logger",
        "provider",
        "model",
        "prompt_tokens",
        "context_window",
        "available_tokens",
        "max_output_tokens",
        "reasoning_budget_tokens",
        "is_prompt_oversized",
    ),
    "run_started": (
        "ts_utc",
        "ts",
        "level",
        "logger",
        "run_id",
        "tool_id",
        "provider",
        "model",
        "instruction_preview",
    ),
    "artifact_recorded": ("ts_utc", "ts", "level", "logger", "run_id", "tool_id", "artifact_file"),
    "artifact_write_failed": (
        "ts_utc",
        "ts",
        "level",
        "logger",
        "run_id",
        "tool_id",
        "output_dir",
        "error_type",
        "error",
    ),
    "artifacts_cleared": ("ts_utc", "ts", "level", "logger", "tool_id", "count"),
    "run_finished": (
        "ts_utc",
        "ts",
        "level",
        "logger",
        "run_id",
        "tool_id",
        "provider",
        "status",
        "latency_ms",
        "output_chars",
        "error",
    ),
}

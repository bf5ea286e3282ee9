"""Typed run records exchanged between the registry and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..ai.events import ErrorCategory
from ..ai.types import TokenUsage
from ..constants import DEFAULT_LANGUAGE
from ..time_utils import utc_now
from .cancellation import CancellationToken


class RunStatus(str, Enum):
    """Run lifecycle: ``pending -> streaming -> completed | errored | cancelled``.

    A run that fails before its stream opens goes ``pending -> errored``.
    """

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ERRORED, RunStatus.CANCELLED)


@dataclass(slots=True, frozen=True)
class RunContext:
    """Explicit provider/project selection for one run.

    Replaces ambient "current provider/project" state so runs against
    different configurations can proceed side by side.
    """

    provider_id: str
    model_name: Optional[str] = None
    project_path: Optional[str] = None
    output_dir: Optional[str] = None
    language: str = DEFAULT_LANGUAGE


@dataclass(slots=True, frozen=True)
class RunRequest:
    """Per-run instruction and output switches."""

    instruction: str
    include_reasoning: bool = False
    include_metadata: bool = True
    persist_output: bool = True


@dataclass(slots=True)
class Run:
    """Mutable run record owned by the registry."""

    run_id: str
    tool_id: str
    provider_id: str
    model_name: Optional[str]
    cancellation_handle: CancellationToken = field(default_factory=CancellationToken)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    text_parts: list[str] = field(default_factory=list)
    reasoning_parts: list[str] = field(default_factory=list)
    output_file_paths: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rate_limit_headers: dict[str, str] = field(default_factory=dict)
    usage: Optional[TokenUsage] = None
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @property
    def accumulated_text(self) -> str:
        return "".join(self.text_parts)

    def add_output_path(self, path: str) -> None:
        if path not in self.output_file_paths:
            self.output_file_paths.append(path)

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            tool_id=self.tool_id,
            provider_id=self.provider_id,
            model_name=self.model_name,
            status=self.status,
            created_at=self.created_at,
            finished_at=self.finished_at,
            cancel_requested=self.cancellation_handle.cancelled,
            accumulated_text=self.accumulated_text,
            reasoning_text="".join(self.reasoning_parts),
            output_file_paths=tuple(self.output_file_paths),
            warnings=tuple(self.warnings),
            rate_limit_headers=dict(self.rate_limit_headers),
            usage=dict(self.usage) if self.usage is not None else None,  # type: ignore[arg-type]
            stop_reason=self.stop_reason,
            error_message=self.error_message,
            error_category=self.error_category,
        )


@dataclass(slots=True, frozen=True)
class RunSnapshot:
    """Read-only copy of a Run at one point in time."""

    run_id: str
    tool_id: str
    provider_id: str
    model_name: Optional[str]
    status: RunStatus
    created_at: datetime
    finished_at: Optional[datetime]
    cancel_requested: bool
    accumulated_text: str
    reasoning_text: str
    output_file_paths: tuple[str, ...]
    warnings: tuple[str, ...]
    rate_limit_headers: dict[str, str]
    usage: Optional[TokenUsage]
    stop_reason: Optional[str]
    error_message: Optional[str]
    error_category: Optional[ErrorCategory]

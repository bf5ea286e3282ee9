"""Run orchestration: registry, cancellation, and artifact bookkeeping."""

from .artifacts import ArtifactCache, write_artifact
from .cancellation import CancellationToken
from .registry import RunRegistry, RunSubscriber
from .types import Run, RunContext, RunRequest, RunSnapshot, RunStatus

__all__ = [
    "ArtifactCache",
    "CancellationToken",
    "Run",
    "RunContext",
    "RunRegistry",
    "RunRequest",
    "RunSnapshot",
    "RunStatus",
    "RunSubscriber",
    "write_artifact",
]

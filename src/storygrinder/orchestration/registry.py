"""Run registry: allocates runs, drives provider streams, fans out events.

Each run executes as its own asyncio task. For a given run, subscribers see
``run-started`` first, then deltas, then exactly one of ``run-completed`` /
``run-error``; a cancelled run stops early and never gets a terminal event.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Callable, Optional

from ..ai.base import ProviderClient
from ..ai.events import (
    BudgetWarning,
    CanonicalStreamEvent,
    RateLimitInfo,
    ReasoningDelta,
    RunCompleted,
    RunError,
    RunStarted,
    TextDelta,
)
from ..ai.provider_utils import run_error_from_exception
from ..ai.types import StreamOptions
from ..errors import ConfigurationError, ContextNotPreparedError, UnknownRunError
from ..logging import bind_run_id, extract_http_error_context, log_event, summarize_text
from ..time_utils import utc_now
from .artifacts import ArtifactCache, write_artifact
from .types import Run, RunContext, RunRequest, RunSnapshot, RunStatus

RunSubscriber = Callable[[str, CanonicalStreamEvent], None]
ClientResolver = Callable[[RunContext], ProviderClient]


class RunRegistry:
    """Owns the ``run_id -> Run`` map and every run's task.

    Runs stay inspectable until ``clear()`` evicts them.
    """

    def __init__(
        self,
        resolve_client: ClientResolver,
        artifacts: Optional[ArtifactCache] = None,
    ) -> None:
        """Create a registry.

        Args:
            resolve_client: returns the provider client for a run's context;
                any exception it raises fails the run as a configuration error
            artifacts: cache that receives every persisted output file
        """
        self._resolve_client = resolve_client
        self.artifacts = artifacts if artifacts is not None else ArtifactCache()
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._subscribers: list[RunSubscriber] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_run(self, tool_id: str, context: RunContext, request: RunRequest) -> str:
        """Allocate a run and start its generation task.

        Returns immediately. Failures show up in the run's status, never as
        an exception here. Must be called from inside the running event loop.
        """
        run_id = str(uuid.uuid4())
        run = Run(
            run_id=run_id,
            tool_id=tool_id,
            provider_id=context.provider_id,
            model_name=context.model_name,
        )
        with self._lock:
            self._runs[run_id] = run

        log_event(
            "run_started",
            level=logging.INFO,
            run_id=run_id,
            tool_id=tool_id,
            provider=context.provider_id,
            model=context.model_name,
            output_dir=context.output_dir,
            instruction_preview=summarize_text(request.instruction, limit=120),
        )

        task = asyncio.get_running_loop().create_task(
            self._execute(run, context, request),
            name=f"storygrinder-run-{run_id}",
        )
        with self._lock:
            self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._on_task_done(run_id, t))
        return run_id

    def cancel(self, run_id: str) -> bool:
        """Request cancellation. Returns False for unknown or finished runs.

        Text accumulated so far is kept.
        """
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status.is_finished:
                return False
            run.cancellation_handle.cancel("user")
            run.status = RunStatus.CANCELLED
            run.finished_at = utc_now()
            task = self._tasks.get(run_id)

        if task is not None and not task.done():
            # Interrupts a pending network read; the stream loop also polls the token.
            task.cancel()
        return True

    def get_status(self, run_id: str) -> RunSnapshot:
        """Return a read-only snapshot of a run.

        Raises:
            UnknownRunError: no such run
        """
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise UnknownRunError(run_id)
            return run.snapshot()

    def list_runs(self) -> list[RunSnapshot]:
        """Snapshots of every known run, oldest first."""
        with self._lock:
            return [run.snapshot() for run in self._runs.values()]

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def wait(self, run_id: str) -> RunSnapshot:
        """Wait for a run's task to finish and return its final snapshot."""
        with self._lock:
            if run_id not in self._runs:
                raise UnknownRunError(run_id)
            task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return self.get_status(run_id)

    def subscribe(self, callback: RunSubscriber) -> Callable[[], None]:
        """Register ``callback(run_id, event)``; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def clear(self, run_id: Optional[str] = None) -> int:
        """Evict one finished run, or every finished run. Active runs stay."""
        with self._lock:
            candidates = [run_id] if run_id is not None else list(self._runs)
            evicted = 0
            for candidate in candidates:
                run = self._runs.get(candidate)
                if run is None or candidate in self._tasks or not run.status.is_finished:
                    continue
                del self._runs[candidate]
                evicted += 1
        return evicted

    async def shutdown(self) -> None:
        """Cancel every active run and wait for the tasks to unwind."""
        with self._lock:
            active = [run_id for run_id, task in self._tasks.items() if not task.done()]
        for run_id in active:
            self.cancel(run_id)
        with self._lock:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks)

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    async def _execute(self, run: Run, context: RunContext, request: RunRequest) -> None:
        started = time.perf_counter()
        options = StreamOptions(
            include_reasoning=request.include_reasoning,
            include_metadata=request.include_metadata,
            cancel_token=run.cancellation_handle,
        )

        def on_event(event: CanonicalStreamEvent) -> None:
            self._handle_event(run, event)

        with bind_run_id(run.run_id):
            try:
                try:
                    client = self._resolve_client(context)
                except Exception as e:
                    # Unknown provider, unreadable key source and the like.
                    log_event(
                        "provider_log",
                        level=logging.ERROR,
                        provider=run.provider_id,
                        message=f"Client resolution failed: {type(e).__name__}: {e}",
                    )
                    self._fail(run, run_error_from_exception(e, category="configuration"))
                    return

                try:
                    await client.stream_generate(request.instruction, on_event, options)
                except ConfigurationError as e:
                    self._fail(run, run_error_from_exception(e, category="configuration"))
                except ContextNotPreparedError as e:
                    self._fail(run, run_error_from_exception(e, category="context"))
                except asyncio.CancelledError:
                    with self._lock:
                        if not run.status.is_finished:
                            run.status = RunStatus.CANCELLED
                            run.finished_at = utc_now()
                    raise
                except Exception as e:
                    log_event(
                        "provider_log",
                        level=logging.ERROR,
                        provider=run.provider_id,
                        run_id=run.run_id,
                        message=f"Unhandled stream failure: {type(e).__name__}: {e}",
                        **extract_http_error_context(e),
                    )
                    self._fail(run, run_error_from_exception(e, category="provider"))
                else:
                    self._settle(run)
            finally:
                await self._finalize(run, context, request, started)

    def _handle_event(self, run: Run, event: CanonicalStreamEvent) -> None:
        """Apply one canonical event to the run, then hand it to subscribers."""
        with self._lock:
            # Cancelled or already terminal: anything further is dropped.
            if run.status.is_finished:
                return
            if isinstance(event, RunStarted):
                run.status = RunStatus.STREAMING
            elif isinstance(event, TextDelta):
                run.text_parts.append(event.text)
            elif isinstance(event, ReasoningDelta):
                run.reasoning_parts.append(event.text)
            elif isinstance(event, RateLimitInfo):
                run.rate_limit_headers.update(event.headers)
            elif isinstance(event, BudgetWarning):
                run.warnings.append(event.message)
            elif isinstance(event, RunCompleted):
                run.status = RunStatus.COMPLETED
                run.usage = event.usage
                run.stop_reason = event.stop_reason
                run.finished_at = utc_now()
            elif isinstance(event, RunError):
                run.status = RunStatus.ERRORED
                run.error_message = event.message
                run.error_category = event.category
                run.finished_at = utc_now()
        self._dispatch(run.run_id, event)

    def _fail(self, run: Run, error: RunError) -> None:
        """Move a run to ``errored``, synthesizing ``run-started`` if it never streamed."""
        with self._lock:
            if run.status.is_finished:
                return
            never_started = run.status is RunStatus.PENDING
            run.status = RunStatus.ERRORED
            run.error_message = error.message
            run.error_category = error.category
            run.finished_at = utc_now()

        if never_started:
            self._dispatch(
                run.run_id, RunStarted(provider_id=run.provider_id, model=run.model_name or "")
            )
        self._dispatch(run.run_id, error)

    def _settle(self, run: Run) -> None:
        """Close out a run whose stream returned normally."""
        with self._lock:
            if run.status.is_finished:
                return
            if run.cancellation_handle.cancelled:
                run.status = RunStatus.CANCELLED
                run.finished_at = utc_now()
                return
        self._fail(
            run,
            RunError(
                message="Provider stream ended without a terminal event",
                error_type="ProviderTransportError",
                category="transport",
                retryable=True,
            ),
        )

    def _dispatch(self, run_id: str, event: CanonicalStreamEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(run_id, event)
            except Exception as e:
                log_event(
                    "run_event_dispatch_error",
                    level=logging.ERROR,
                    run_id=run_id,
                    event_kind=event.kind,
                    error_type=type(e).__name__,
                    error=str(e),
                )

    async def _finalize(
        self,
        run: Run,
        context: RunContext,
        request: RunRequest,
        started: float,
    ) -> None:
        with self._lock:
            status = run.status
            text = run.accumulated_text

        should_persist = status is RunStatus.COMPLETED or (
            status is RunStatus.CANCELLED and bool(text)
        )
        if should_persist and request.persist_output and context.output_dir:
            try:
                path = await write_artifact(context.output_dir, run.tool_id, text)
            except OSError as e:
                log_event(
                    "artifact_write_failed",
                    level=logging.ERROR,
                    run_id=run.run_id,
                    tool_id=run.tool_id,
                    output_dir=context.output_dir,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                with self._lock:
                    run.warnings.append(f"Could not save output: {e}")
            else:
                with self._lock:
                    run.add_output_path(path)
                self.artifacts.record_artifact(run.tool_id, run.run_id, path)

        log_event(
            "run_finished",
            level=logging.ERROR if status is RunStatus.ERRORED else logging.INFO,
            run_id=run.run_id,
            tool_id=run.tool_id,
            provider=run.provider_id,
            status=status.value,
            latency_ms=round((time.perf_counter() - started) * 1000, 1),
            output_chars=len(text),
            error=run.error_message,
        )

    def _on_task_done(self, run_id: str, task: asyncio.Task[None]) -> None:
        with self._lock:
            self._tasks.pop(run_id, None)
            run = self._runs.get(run_id)
            if task.cancelled() and run is not None and not run.status.is_finished:
                run.status = RunStatus.CANCELLED
                run.finished_at = utc_now()
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            log_event(
                "provider_log",
                level=logging.ERROR,
                run_id=run_id,
                message=f"Run task crashed: {type(error).__name__}: {error}",
            )

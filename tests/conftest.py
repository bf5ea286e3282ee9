"""Pytest configuration and fixtures for StoryGrinder tests."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import pytest

import storygrinder.ai.provider_utils as provider_utils
from storygrinder.ai.catalog import default_provider_config
from storygrinder.ai.events import RunCompleted, RunStarted, TextDelta
from storygrinder.ai.provider_utils import derive_client_state
from storygrinder.ai.types import PreparedContext, PrepareResult, ProviderConfig, StreamOptions
from storygrinder.errors import ContextNotPreparedError
from storygrinder.logging.events import QUIET_LOGGERS

TEST_API_KEY = "sk-test-0123456789abcdefghij"


class AsyncIter:
    """Async iterator over a fixed list (stands in for SDK pagers/streams)."""

    def __init__(self, items):
        self._items = list(items)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)

    async def aclose(self):
        self.closed = True


class FakeClient:
    """In-memory provider client.

    ``events`` replaces the default started/delta/completed script;
    ``pause_after`` blocks after emitting that index until ``resume`` is set;
    ``error`` is raised before anything is emitted.
    """

    def __init__(
        self,
        config: ProviderConfig,
        key_config: Any = None,
        *,
        events: Optional[list] = None,
        pause_after: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.provider_id = config.provider_id
        self.config = config
        self.key_config = key_config
        self.events = events
        self.pause_after = pause_after
        self.error = error
        self.resume = asyncio.Event()
        self.instructions: list[str] = []
        self.release_calls = 0
        self._context: Optional[PreparedContext] = None
        self._active_streams = 0

    @property
    def state(self):
        return derive_client_state(
            has_key=True, context=self._context, active_streams=self._active_streams
        )

    @property
    def context(self) -> Optional[PreparedContext]:
        return self._context

    async def verify_connectivity(self) -> bool:
        return True

    async def list_available_models(self) -> list[str]:
        return [self.config.model_name]

    async def prepare_context(self, manuscript_path: str) -> PrepareResult:
        text = Path(manuscript_path).read_text(encoding="utf-8")
        if not text.strip():
            self._context = None
            return PrepareResult(errors=["Error loading manuscript: Manuscript file is empty"])
        self._context = PreparedContext(text=text, source_path=manuscript_path)
        return PrepareResult(messages=["Manuscript file loaded successfully"])

    async def estimate_tokens(self, text: str) -> int:
        return len(text) // 4

    async def stream_generate(self, instruction, on_event, options=None) -> None:
        options = options or StreamOptions()
        if self.error is not None:
            raise self.error
        if self._context is None:
            raise ContextNotPreparedError(self.provider_id)
        self.instructions.append(instruction)
        events = self.events
        if events is None:
            events = [
                RunStarted(provider_id=self.provider_id, model=self.config.model_name),
                TextDelta(text=f"Notes on: {instruction}"),
                RunCompleted(usage={"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13}),
            ]
        self._active_streams += 1
        try:
            for index, event in enumerate(events):
                if options.cancelled:
                    return
                on_event(event)
                if index == self.pause_after:
                    await self.resume.wait()
                else:
                    await asyncio.sleep(0)
        finally:
            self._active_streams -= 1

    async def release_resources(self) -> None:
        self._context = None
        self.release_calls += 1


@pytest.fixture
def claude_config() -> ProviderConfig:
    return default_provider_config("claude")


@pytest.fixture
def openai_config() -> ProviderConfig:
    return default_provider_config("openai")


@pytest.fixture
def gemini_config() -> ProviderConfig:
    return default_provider_config("gemini")


@pytest.fixture
def manuscript_file(tmp_path) -> Path:
    path = tmp_path / "manuscript.txt"
    path.write_text("Chapter 1\n\nIt was a dark and stormy night.\n", encoding="utf-8")
    return path


@pytest.fixture
def no_retry_sleep(monkeypatch):
    """Make tenacity backoff instant."""
    monkeypatch.setattr(provider_utils, "RETRY_BACKOFF_INITIAL_SEC", 0)
    monkeypatch.setattr(provider_utils, "RETRY_BACKOFF_MAX_SEC", 0)
    monkeypatch.setattr(provider_utils, "RETRY_BACKOFF_JITTER", 0)


@pytest.fixture
def restore_logging():
    """Undo global logging changes made by setup_logging()."""
    yield
    logging.disable(logging.NOTSET)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)

"""Tests for the run registry."""

import asyncio
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import TEST_API_KEY, FakeClient
from storygrinder.ai.claude_provider import ClaudeProvider
from storygrinder.ai.events import RunError, RunStarted, TextDelta
from storygrinder.errors import NotConfiguredError, UnknownRunError
from storygrinder.orchestration.registry import RunRegistry
from storygrinder.orchestration.types import RunContext, RunRequest, RunStatus


class Recorder:
    """Subscriber collecting ``(run_id, event)`` pairs."""

    def __init__(self):
        self.events = []

    def __call__(self, run_id, event):
        self.events.append((run_id, event))

    def kinds(self, run_id):
        return [event.kind for rid, event in self.events if rid == run_id]


class PausingMessageStream:
    """Claude SDK message stream that blocks after one delta until ``resume`` is set."""

    def __init__(self, text, resume=None):
        self.text = text
        self.resume = resume
        self.started = asyncio.Event()
        self.response = SimpleNamespace(headers={})

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        yield SimpleNamespace(
            type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=self.text)
        )
        self.started.set()
        if self.resume is not None:
            await self.resume.wait()

    async def get_final_message(self):
        usage = SimpleNamespace(input_tokens=5, output_tokens=2, cache_read_input_tokens=None)
        return SimpleNamespace(usage=usage, stop_reason="end_turn")


def _context(config, output_dir=None):
    return RunContext(provider_id=config.provider_id, model_name=config.model_name, output_dir=output_dir)


async def _prepared(config, manuscript_file, **kwargs):
    client = FakeClient(config, **kwargs)
    result = await client.prepare_context(str(manuscript_file))
    assert result.ok
    return client


async def _wait_for_text(registry, run_id):
    for _ in range(1000):
        if registry.get_status(run_id).accumulated_text:
            return
        await asyncio.sleep(0)
    raise AssertionError("run produced no text")


@pytest.mark.asyncio
async def test_completed_run_persists_artifact(claude_config, manuscript_file, tmp_path):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    registry.subscribe(recorder)
    output_dir = tmp_path / "out"

    run_id = registry.start_run("summary", _context(claude_config, str(output_dir)), RunRequest("Summarize"))
    assert registry.get_status(run_id).status in (RunStatus.PENDING, RunStatus.STREAMING)

    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.COMPLETED
    assert snapshot.accumulated_text == "Notes on: Summarize"
    assert snapshot.usage == {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13}
    assert snapshot.finished_at is not None
    assert recorder.kinds(run_id) == ["run-started", "text-delta", "run-completed"]

    assert len(snapshot.output_file_paths) == 1
    path = Path(snapshot.output_file_paths[0])
    assert path.parent == output_dir
    assert path.name.startswith("summary_")
    assert path.read_text(encoding="utf-8") == "Notes on: Summarize"
    assert registry.artifacts.list_artifacts("summary") == [str(path)]
    assert registry.artifacts.list_run_artifacts(run_id) == [str(path)]
    assert not registry.is_active(run_id)


@pytest.mark.asyncio
async def test_no_artifact_without_output_dir_or_when_disabled(claude_config, manuscript_file, tmp_path):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)

    first = registry.start_run("summary", _context(claude_config), RunRequest("A"))
    second = registry.start_run(
        "summary",
        _context(claude_config, str(tmp_path)),
        RunRequest("B", persist_output=False),
    )

    assert (await registry.wait(first)).output_file_paths == ()
    assert (await registry.wait(second)).output_file_paths == ()
    assert list(tmp_path.glob("*.txt")) == []


@pytest.mark.asyncio
async def test_missing_key_fails_with_configuration_category(claude_config, manuscript_file):
    client = await _prepared(
        claude_config, manuscript_file, error=NotConfiguredError("claude", "ANTHROPIC_API_KEY")
    )
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_category == "configuration"
    assert "ANTHROPIC_API_KEY" in snapshot.error_message
    assert recorder.kinds(run_id) == ["run-started", "run-error"]


@pytest.mark.asyncio
async def test_unprepared_context_fails_with_context_category(claude_config):
    client = FakeClient(claude_config)
    registry = RunRegistry(lambda context: client)

    snapshot = await registry.wait(
        registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    )

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_category == "context"


@pytest.mark.asyncio
async def test_resolver_failure_fails_run(claude_config):
    def resolve(context):
        raise ValueError(f"Unknown provider: {context.provider_id}")

    registry = RunRegistry(resolve)
    recorder = Recorder()
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", RunContext(provider_id="mistral"), RunRequest("Summarize"))
    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_category == "configuration"
    assert snapshot.error_message == "Unknown provider: mistral"
    assert recorder.kinds(run_id) == ["run-started", "run-error"]


@pytest.mark.asyncio
async def test_unexpected_resolver_exception_fails_run(claude_config):
    def resolve(context):
        raise PermissionError(13, "Permission denied", "/secrets/keys.json")

    registry = RunRegistry(resolve)
    recorder = Recorder()
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_category == "configuration"
    assert snapshot.error_message == "[Errno 13] Permission denied: '/secrets/keys.json'"
    assert recorder.kinds(run_id) == ["run-started", "run-error"]
    assert not registry.is_active(run_id)

@pytest.mark.asyncio
async def test_provider_run_error_event(claude_config, manuscript_file, tmp_path):
    events = [
        RunStarted(provider_id="claude", model=claude_config.model_name),
        TextDelta(text="partial"),
        RunError(message="Bad request: too long", category="provider"),
    ]
    client = await _prepared(claude_config, manuscript_file, events=events)
    registry = RunRegistry(lambda context: client)

    snapshot = await registry.wait(
        registry.start_run("summary", _context(claude_config, str(tmp_path)), RunRequest("Summarize"))
    )

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_message == "Bad request: too long"
    assert snapshot.accumulated_text == "partial"
    assert snapshot.output_file_paths == ()


@pytest.mark.asyncio
async def test_unexpected_exception_is_provider_error(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file, error=RuntimeError("socket exploded"))
    registry = RunRegistry(lambda context: client)

    snapshot = await registry.wait(
        registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    )

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_category == "provider"
    assert snapshot.error_message == "socket exploded"


@pytest.mark.asyncio
async def test_stream_without_terminal_event_is_transport_error(claude_config, manuscript_file):
    events = [RunStarted(provider_id="claude", model="m"), TextDelta(text="half")]
    client = await _prepared(claude_config, manuscript_file, events=events)
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.ERRORED
    assert snapshot.error_category == "transport"
    assert recorder.kinds(run_id) == ["run-started", "text-delta", "run-error"]


@pytest.mark.asyncio
async def test_cancel_before_task_starts(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    assert registry.cancel(run_id) is True
    assert registry.get_status(run_id).status is RunStatus.CANCELLED

    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.CANCELLED
    assert snapshot.cancel_requested is True
    assert recorder.kinds(run_id) == []
    assert client.instructions == []
    assert registry.cancel(run_id) is False


@pytest.mark.asyncio
async def test_cancel_mid_stream_keeps_partial_text(claude_config, manuscript_file, tmp_path):
    client = await _prepared(claude_config, manuscript_file, pause_after=1)
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", _context(claude_config, str(tmp_path)), RunRequest("Summarize"))
    await _wait_for_text(registry, run_id)

    assert registry.cancel(run_id) is True
    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.CANCELLED
    assert snapshot.accumulated_text == "Notes on: Summarize"
    assert recorder.kinds(run_id) == ["run-started", "text-delta"]
    assert len(snapshot.output_file_paths) == 1
    assert Path(snapshot.output_file_paths[0]).read_text(encoding="utf-8") == "Notes on: Summarize"
    assert not registry.is_active(run_id)


@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_run(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    await registry.wait(run_id)

    assert registry.cancel("no-such-run") is False
    assert registry.cancel(run_id) is False
    assert registry.get_status(run_id).status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_others(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)

    def broken(run_id, event):
        raise RuntimeError("ui went away")

    recorder = Recorder()
    registry.subscribe(broken)
    registry.subscribe(recorder)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    snapshot = await registry.wait(run_id)

    assert snapshot.status is RunStatus.COMPLETED
    assert recorder.kinds(run_id) == ["run-started", "text-delta", "run-completed"]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    unsubscribe = registry.subscribe(recorder)
    unsubscribe()
    unsubscribe()

    await registry.wait(registry.start_run("summary", _context(claude_config), RunRequest("x")))

    assert recorder.events == []


@pytest.mark.asyncio
async def test_concurrent_runs_are_isolated(claude_config, manuscript_file, tmp_path):
    client = await _prepared(claude_config, manuscript_file)
    registry = RunRegistry(lambda context: client)
    recorder = Recorder()
    registry.subscribe(recorder)
    context = _context(claude_config, str(tmp_path))

    first = registry.start_run("summary", context, RunRequest("first"))
    second = registry.start_run("summary", context, RunRequest("second"))
    snapshots = await asyncio.gather(registry.wait(first), registry.wait(second))

    assert [s.accumulated_text for s in snapshots] == ["Notes on: first", "Notes on: second"]
    assert recorder.kinds(first) == ["run-started", "text-delta", "run-completed"]
    assert recorder.kinds(second) == ["run-started", "text-delta", "run-completed"]
    paths = registry.artifacts.list_artifacts("summary")
    assert len(paths) == 2
    assert len(set(paths)) == 2


@pytest.mark.asyncio
async def test_clear_evicts_only_finished_runs(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file, pause_after=1)
    registry = RunRegistry(lambda context: client)
    context = _context(claude_config)

    active = registry.start_run("summary", context, RunRequest("slow"))
    await _wait_for_text(registry, active)
    client.pause_after = None
    done = registry.start_run("summary", context, RunRequest("fast"))
    await registry.wait(done)

    assert [s.run_id for s in registry.list_runs()] == [active, done]
    assert registry.clear() == 1
    assert [s.run_id for s in registry.list_runs()] == [active]
    with pytest.raises(UnknownRunError):
        registry.get_status(done)

    client.resume.set()
    assert (await registry.wait(active)).status is RunStatus.COMPLETED
    assert registry.clear(active) == 1
    assert registry.list_runs() == []


@pytest.mark.asyncio
async def test_unknown_run_raises():
    registry = RunRegistry(lambda context: None)

    with pytest.raises(UnknownRunError, match="Unknown run: nope"):
        registry.get_status("nope")
    with pytest.raises(KeyError):
        await registry.wait("nope")


@pytest.mark.asyncio
async def test_shutdown_cancels_active_runs(claude_config, manuscript_file):
    client = await _prepared(claude_config, manuscript_file, pause_after=0)
    registry = RunRegistry(lambda context: client)

    run_id = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    await asyncio.sleep(0)
    await registry.shutdown()

    assert registry.get_status(run_id).status is RunStatus.CANCELLED
    assert not registry.is_active(run_id)


@pytest.mark.asyncio
async def test_in_flight_run_keeps_manuscript_it_started_with(claude_config, manuscript_file, tmp_path):
    resume = asyncio.Event()
    first_stream = PausingMessageStream("first", resume)
    second_stream = PausingMessageStream("second")
    sdk = MagicMock()
    sdk.messages.count_tokens = AsyncMock(return_value=SimpleNamespace(input_tokens=100))
    sdk.messages.stream = MagicMock(side_effect=[first_stream, second_stream])
    provider = ClaudeProvider(claude_config, api_key=TEST_API_KEY)
    provider._client = sdk
    assert (await provider.prepare_context(str(manuscript_file))).ok
    registry = RunRegistry(lambda context: provider)

    first = registry.start_run("summary", _context(claude_config), RunRequest("Summarize"))
    await asyncio.wait_for(first_stream.started.wait(), timeout=5)

    revised = tmp_path / "revised.txt"
    revised.write_text("Chapter 1\n\nThe sun rose over a quiet harbor.\n", encoding="utf-8")
    assert (await provider.prepare_context(str(revised))).ok

    second = registry.start_run("characters", _context(claude_config), RunRequest("List characters"))
    second_snapshot = await registry.wait(second)
    resume.set()
    first_snapshot = await registry.wait(first)

    assert first_snapshot.status is RunStatus.COMPLETED
    assert second_snapshot.status is RunStatus.COMPLETED
    assert first_snapshot.accumulated_text == "first"
    assert second_snapshot.accumulated_text == "second"

    first_prompt, second_prompt = (
        call.kwargs["messages"][0]["content"] for call in sdk.messages.stream.call_args_list
    )
    assert "dark and stormy" in first_prompt
    assert "quiet harbor" not in first_prompt
    assert "quiet harbor" in second_prompt
    assert "dark and stormy" not in second_prompt

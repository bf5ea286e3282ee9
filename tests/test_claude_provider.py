"""Tests for the Claude provider client."""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIConnectionError, APIStatusError, AuthenticationError

from conftest import TEST_API_KEY, AsyncIter
from storygrinder.ai.budget import compute_token_budget
from storygrinder.ai.claude_provider import ClaudeProvider
from storygrinder.ai.types import ClientState, PreparedContext, StreamOptions
from storygrinder.errors import ContextNotPreparedError, NotConfiguredError
from storygrinder.orchestration.cancellation import CancellationToken

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class FakeMessageStream:
    """Stands in for the SDK's message stream manager and stream."""

    def __init__(self, events, final_message=None, headers=None):
        self.events = list(events)
        self.final_message = final_message or _final_message()
        self.response = SimpleNamespace(headers=httpx.Headers(headers or {}))
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event

    async def get_final_message(self):
        return self.final_message


def _text(text):
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


def _thinking(text):
    return SimpleNamespace(
        type="content_block_delta", delta=SimpleNamespace(type="thinking_delta", thinking=text)
    )


def _final_message(stop_reason="end_turn", cache_read=None):
    usage = SimpleNamespace(input_tokens=120, output_tokens=30, cache_read_input_tokens=cache_read)
    return SimpleNamespace(usage=usage, stop_reason=stop_reason)


def _make_provider(config, stream=None, input_tokens=1_000):
    provider = ClaudeProvider(config, api_key=TEST_API_KEY)
    client = MagicMock()
    client.messages.count_tokens = AsyncMock(return_value=SimpleNamespace(input_tokens=input_tokens))
    client.messages.stream = MagicMock(return_value=stream or FakeMessageStream([_text("Hello")]))
    client.close = AsyncMock()
    provider._client = client
    provider._context = PreparedContext(text="Chapter 1. Rain.", source_path="manuscript.txt")
    return provider, client


async def _collect(provider, instruction="Summarize.", **options):
    events = []
    await provider.stream_generate(instruction, events.append, StreamOptions(**options))
    return events


@pytest.mark.asyncio
async def test_stream_emits_canonical_event_order(claude_config):
    stream = FakeMessageStream(
        [
            SimpleNamespace(type="message_start"),
            _thinking("Let me think."),
            _text("Hello"),
            _text(" world"),
        ],
        final_message=_final_message(cache_read=50),
        headers={"anthropic-ratelimit-tokens-remaining": "9000", "content-type": "text/event-stream"},
    )
    provider, _ = _make_provider(claude_config, stream)

    events = await _collect(provider)

    assert [event.kind for event in events] == [
        "run-started",
        "rate-limit-info",
        "text-delta",
        "text-delta",
        "run-completed",
    ]
    assert events[0].provider_id == "claude"
    assert events[1].headers == {"anthropic-ratelimit-tokens-remaining": "9000"}
    assert "".join(event.text for event in events if event.kind == "text-delta") == "Hello world"
    assert events[-1].usage == {
        "prompt_tokens": 120,
        "completion_tokens": 30,
        "total_tokens": 150,
        "cached_tokens": 50,
    }
    assert events[-1].stop_reason == "end_turn"
    assert stream.closed
    assert provider.state is ClientState.CONTEXT_LOADED


@pytest.mark.asyncio
async def test_reasoning_deltas_only_when_requested(claude_config):
    stream = FakeMessageStream([_thinking("Plan."), _text("Answer")])
    provider, _ = _make_provider(claude_config, stream)

    events = await _collect(provider, include_reasoning=True, include_metadata=False)

    assert [event.kind for event in events] == [
        "run-started",
        "reasoning-delta",
        "text-delta",
        "run-completed",
    ]
    assert events[1].text == "Plan."


@pytest.mark.asyncio
async def test_prompt_includes_manuscript_and_instruction(claude_config):
    provider, client = _make_provider(claude_config)

    await _collect(provider, "List the characters.")

    kwargs = client.messages.stream.call_args.kwargs
    content = kwargs["messages"][0]["content"]
    assert "Chapter 1. Rain." in content
    assert content.endswith("List the characters.")
    assert kwargs["model"] == claude_config.model_name
    assert kwargs["thinking"] == {"type": "enabled", "budget_tokens": 20_000}
    assert kwargs["max_tokens"] == 32_000


@pytest.mark.asyncio
async def test_oversized_prompt_warns_and_clamps_budget(claude_config):
    provider, client = _make_provider(claude_config, input_tokens=190_000)

    events = await _collect(provider)

    warnings = [event for event in events if event.kind == "budget-warning"]
    assert len(warnings) == 1
    assert warnings[0].budget.max_output_tokens == 10_000
    assert warnings[0].budget.reasoning_budget_tokens == 2_000
    assert events[0].kind == "run-started"
    assert events[-1].kind == "run-completed"

    kwargs = client.messages.stream.call_args.kwargs
    assert kwargs["max_tokens"] == 10_000
    assert kwargs["thinking"] == {"type": "enabled", "budget_tokens": 2_000}


@pytest.mark.asyncio
async def test_token_count_failure_falls_back_to_estimate(claude_config):
    provider, client = _make_provider(claude_config)
    client.messages.count_tokens = AsyncMock(side_effect=RuntimeError("count unavailable"))

    events = await _collect(provider)

    assert events[-1].kind == "run-completed"
    assert not any(event.kind == "budget-warning" for event in events)


def test_build_request_skips_thinking_below_minimum(claude_config):
    config = dataclasses.replace(claude_config, temperature=0.3)
    provider = ClaudeProvider(config, api_key=TEST_API_KEY)

    budget = compute_token_budget(191_500, config)
    kwargs = provider.build_request("prompt", budget)

    assert budget.reasoning_budget_tokens == 500
    assert "thinking" not in kwargs
    assert kwargs["temperature"] == 0.3
    assert kwargs["max_tokens"] == 8_500


def test_build_request_keeps_one_output_token_for_full_window(claude_config):
    provider = ClaudeProvider(claude_config, api_key=TEST_API_KEY)

    kwargs = provider.build_request("prompt", compute_token_budget(250_000, claude_config))

    assert kwargs["max_tokens"] == 1
    assert "thinking" not in kwargs


@pytest.mark.asyncio
async def test_authentication_error_is_configuration_category(claude_config):
    provider, client = _make_provider(claude_config)
    client.messages.stream = MagicMock(
        side_effect=AuthenticationError(
            "invalid x-api-key", response=httpx.Response(401, request=REQUEST), body=None
        )
    )

    events = await _collect(provider)

    assert [event.kind for event in events] == ["run-started", "run-error"]
    assert events[-1].category == "configuration"
    assert events[-1].message == "Authentication failed: invalid x-api-key"
    assert events[-1].retryable is False


@pytest.mark.asyncio
async def test_connection_error_is_retried(claude_config, no_retry_sleep):
    stream = FakeMessageStream([_text("ok")])
    provider, client = _make_provider(claude_config)
    client.messages.stream = MagicMock(side_effect=[APIConnectionError(request=REQUEST), stream])

    events = await _collect(provider)

    assert client.messages.stream.call_count == 2
    assert events[-1].kind == "run-completed"


@pytest.mark.asyncio
async def test_exhausted_retries_are_transport_errors(claude_config, no_retry_sleep):
    provider, client = _make_provider(claude_config)
    client.messages.stream = MagicMock(side_effect=APIConnectionError(request=REQUEST))

    events = await _collect(provider)

    # default max_retries=1: two attempts in total
    assert client.messages.stream.call_count == 2
    assert events[-1].kind == "run-error"
    assert events[-1].category == "transport"
    assert events[-1].retryable is True


@pytest.mark.asyncio
async def test_overloaded_status_is_transport_error(claude_config):
    provider, client = _make_provider(claude_config)
    client.messages.stream = MagicMock(
        side_effect=APIStatusError("overloaded", response=httpx.Response(529, request=REQUEST), body=None)
    )

    events = await _collect(provider)

    assert events[-1].category == "transport"
    assert "529" in events[-1].message


@pytest.mark.asyncio
async def test_cancel_mid_stream_closes_stream_without_terminal_event(claude_config):
    stream = FakeMessageStream([_text("one"), _text("two"), _text("three")])
    provider, _ = _make_provider(claude_config, stream)
    token = CancellationToken()
    events = []

    def on_event(event):
        events.append(event)
        if event.kind == "text-delta":
            token.cancel("user")

    await provider.stream_generate(
        "Summarize.", on_event, StreamOptions(cancel_token=token, include_metadata=False)
    )

    assert [event.kind for event in events] == ["run-started", "text-delta"]
    assert stream.closed


@pytest.mark.asyncio
async def test_cancel_before_stream_opens(claude_config):
    provider, client = _make_provider(claude_config)
    token = CancellationToken()
    token.cancel()

    events = await _collect(provider, cancel_token=token)

    assert [event.kind for event in events] == ["run-started"]
    client.messages.stream.assert_not_called()


@pytest.mark.asyncio
async def test_stream_generate_requires_key(claude_config):
    provider = ClaudeProvider(claude_config)

    assert provider.state is ClientState.KEY_MISSING
    assert await provider.estimate_tokens("text") == -1
    assert await provider.verify_connectivity() is False
    assert await provider.list_available_models() == []
    with pytest.raises(NotConfiguredError, match="ANTHROPIC_API_KEY"):
        await provider.stream_generate("Summarize.", lambda event: None)


@pytest.mark.asyncio
async def test_stream_generate_requires_context(claude_config):
    provider, _ = _make_provider(claude_config)
    provider._context = None

    with pytest.raises(ContextNotPreparedError):
        await provider.stream_generate("Summarize.", lambda event: None)


@pytest.mark.asyncio
async def test_prepare_context_loads_and_replaces_manuscript(claude_config, manuscript_file, tmp_path):
    provider = ClaudeProvider(claude_config, api_key=TEST_API_KEY)
    assert provider.state is ClientState.READY

    result = await provider.prepare_context(str(manuscript_file))

    assert result.ok
    assert provider.state is ClientState.CONTEXT_LOADED
    assert "dark and stormy" in provider.context.text

    failed = await provider.prepare_context(str(tmp_path / "missing.txt"))

    assert not failed.ok
    assert provider.context is None


@pytest.mark.asyncio
async def test_verify_connectivity_and_list_models(claude_config):
    provider, client = _make_provider(claude_config)
    models = [SimpleNamespace(id=claude_config.model_name), SimpleNamespace(id="claude-3-5-haiku-latest")]
    client.models.list = MagicMock(side_effect=lambda: AsyncIter(models))

    assert await provider.verify_connectivity() is True
    assert await provider.list_available_models() == [
        claude_config.model_name,
        "claude-3-5-haiku-latest",
    ]


@pytest.mark.asyncio
async def test_verify_connectivity_fails_when_model_missing(claude_config):
    provider, client = _make_provider(claude_config)
    client.models.list = MagicMock(return_value=AsyncIter([SimpleNamespace(id="claude-other")]))

    assert await provider.verify_connectivity() is False


@pytest.mark.asyncio
async def test_release_resources_is_idempotent(claude_config):
    provider, client = _make_provider(claude_config)

    await provider.release_resources()
    await provider.release_resources()

    assert provider.context is None
    assert provider._client is None
    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_release_during_stream_defers_close(claude_config):
    provider, client = _make_provider(claude_config)
    provider._active_streams = 1

    await provider.release_resources()

    client.close.assert_not_awaited()
    assert provider.context is None

    provider._active_streams = 0
    await provider._close_retired_clients()
    client.close.assert_awaited_once()

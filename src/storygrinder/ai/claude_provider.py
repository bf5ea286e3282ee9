"""Claude (Anthropic) provider client for StoryGrinder."""

import logging
from contextlib import AsyncExitStack
from typing import Any, Optional

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)

from ..errors import ContextNotPreparedError, NotConfiguredError
from ..logging import log_event
from ..timeouts import build_ai_httpx_timeout
from .budget import budget_warning_message, compute_token_budget, resolve_prompt_tokens
from .catalog import get_api_key_env_var
from .events import (
    BudgetWarning,
    EventCallback,
    RateLimitInfo,
    ReasoningDelta,
    RunCompleted,
    RunStarted,
    TextDelta,
    rate_limit_headers,
)
from .provider_logging import (
    api_error_after_retries_message,
    authentication_failed_message,
    bad_request_message,
    log_provider_error,
    log_provider_warning,
    timeout_message,
    truncated_response_message,
    unexpected_error_message,
)
from .provider_utils import (
    build_full_prompt,
    build_stream_retrying,
    derive_client_state,
    load_prepared_context,
    log_token_budget,
    run_error_from_exception,
    timeout_error_event,
    transport_error_event,
    usage_field,
)
from .types import (
    ClientState,
    PreparedContext,
    PrepareResult,
    ProviderConfig,
    StreamOptions,
    TokenBudget,
    TokenUsage,
)


class ClaudeProvider:
    """Claude (Anthropic) provider client.

    Claude interleaves ``thinking`` content blocks with visible ``text``
    blocks inside one message stream, so the normalizer has to split
    deltas by block type. Thinking text is dropped unless the caller asks
    for it.
    """

    provider_id = "claude"

    # Anthropic rejects extended thinking below this budget.
    MIN_THINKING_BUDGET = 1024

    RETRYABLE_ERRORS = (APIConnectionError, RateLimitError, APITimeoutError, InternalServerError)

    def __init__(self, config: ProviderConfig, api_key: Optional[str] = None):
        """Initialize Claude provider.

        Args:
            config: Provider configuration (model, limits, timeout, retries)
            api_key: Anthropic API key; ``None`` leaves the client in ``key_missing``
        """
        self.config = config
        self.api_key = api_key
        self._client: Optional[AsyncAnthropic] = None
        self._retired_clients: list[AsyncAnthropic] = []
        self._context: Optional[PreparedContext] = None
        self._active_streams = 0

        if not api_key:
            log_provider_warning(
                self.provider_id,
                f"{get_api_key_env_var(self.provider_id)} not found; Claude client unavailable",
            )

    @property
    def state(self) -> ClientState:
        return derive_client_state(
            has_key=bool(self.api_key),
            context=self._context,
            active_streams=self._active_streams,
        )

    @property
    def context(self) -> Optional[PreparedContext]:
        return self._context

    @property
    def client(self) -> AsyncAnthropic:
        """SDK client, created on first use and after ``release_resources``."""
        if self._client is None:
            # Disable SDK retries - we handle retries explicitly with tenacity
            self._client = AsyncAnthropic(
                api_key=self.api_key,
                timeout=build_ai_httpx_timeout(self.config.request_timeout),
                max_retries=0,
            )
        return self._client

    async def _fetch_model_ids(self) -> list[str]:
        return [model.id async for model in self.client.models.list()]

    async def verify_connectivity(self) -> bool:
        """Verify the API key by listing models and finding the configured one."""
        if not self.api_key:
            return False

        try:
            model_ids = await self._fetch_model_ids()
        except Exception as e:
            log_provider_error(self.provider_id, f"Claude API verification failed: {e}")
            return False

        if self.config.model_name in model_ids:
            log_event(
                "provider_log",
                level=logging.INFO,
                provider=self.provider_id,
                message=f"Claude model accessible: {self.config.model_name}",
            )
            return True

        log_provider_error(self.provider_id, f"Claude model not found: {self.config.model_name}")
        return False

    async def list_available_models(self) -> list[str]:
        """List model ids; every Claude model is chat-capable."""
        if not self.api_key:
            return []
        try:
            return await self._fetch_model_ids()
        except Exception as e:
            log_provider_error(self.provider_id, f"Claude models list error: {e}")
            return []

    async def prepare_context(self, manuscript_path: str) -> PrepareResult:
        """Load the manuscript to prepend to every instruction."""
        context, result = await load_prepared_context(self.provider_id, manuscript_path)
        self._context = context
        return result

    async def estimate_tokens(self, text: str) -> int:
        """Count tokens with the Anthropic token-counting endpoint."""
        if not self.api_key:
            return -1
        try:
            response = await self.client.messages.count_tokens(
                model=self.config.model_name,
                messages=[{"role": "user", "content": text}],
            )
            return response.input_tokens
        except Exception as e:
            log_provider_warning(self.provider_id, f"Claude token counting error: {e}")
            return -1

    def build_request(self, prompt: str, budget: TokenBudget) -> dict[str, Any]:
        """Build ``messages.stream`` keyword arguments for one call."""
        kwargs: dict[str, Any] = {
            "model": self.config.model_name,
            "max_tokens": max(budget.max_output_tokens, 1),
            "messages": [{"role": "user", "content": prompt}],
        }
        thinking_budget = budget.reasoning_budget_tokens
        if self.config.supports_reasoning_budget and thinking_budget >= self.MIN_THINKING_BUDGET:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        elif self.config.temperature is not None:
            # Temperature is not accepted together with extended thinking.
            kwargs["temperature"] = self.config.temperature
        return kwargs

    async def _open_stream(self, stack: AsyncExitStack, kwargs: dict[str, Any]) -> Any:
        """Open the message stream, retrying transient failures."""
        async for attempt in build_stream_retrying(
            provider=self.provider_id,
            model=self.config.model_name,
            operation="messages.stream",
            max_retries=self.config.max_retries,
            retry_on=self.RETRYABLE_ERRORS,
        ):
            with attempt:
                return await stack.enter_async_context(self.client.messages.stream(**kwargs))
        raise RuntimeError("unreachable: retry loop exited without result")

    async def stream_generate(
        self,
        instruction: str,
        on_event: EventCallback,
        options: Optional[StreamOptions] = None,
    ) -> None:
        """Stream a response with thinking for one instruction."""
        options = options or StreamOptions()
        if not self.api_key:
            raise NotConfiguredError(self.provider_id, get_api_key_env_var(self.provider_id))
        # Snapshot: a later prepare_context() does not affect this call.
        context = self._context
        if context is None:
            raise ContextNotPreparedError(self.provider_id)

        self._active_streams += 1
        try:
            await self._stream(context, instruction, on_event, options)
        finally:
            self._active_streams -= 1
            if self._active_streams == 0:
                await self._close_retired_clients()

    async def _stream(
        self,
        context: PreparedContext,
        instruction: str,
        on_event: EventCallback,
        options: StreamOptions,
    ) -> None:
        on_event(RunStarted(provider_id=self.provider_id, model=self.config.model_name))

        full_prompt = build_full_prompt(context, instruction)
        prompt_tokens = resolve_prompt_tokens(await self.estimate_tokens(full_prompt), full_prompt)
        budget = compute_token_budget(prompt_tokens, self.config)
        log_token_budget(self.provider_id, self.config.model_name, budget)
        if budget.is_prompt_oversized:
            on_event(BudgetWarning(message=budget_warning_message(budget), budget=budget))

        if options.cancelled:
            return

        kwargs = self.build_request(full_prompt, budget)
        try:
            async with AsyncExitStack() as stack:
                stream = await self._open_stream(stack, kwargs)

                if options.include_metadata:
                    headers = rate_limit_headers(
                        getattr(getattr(stream, "response", None), "headers", None)
                    )
                    if headers:
                        on_event(RateLimitInfo(headers=headers))

                async for event in stream:
                    if options.cancelled:
                        # Leaving the exit stack closes the HTTP response.
                        return
                    if getattr(event, "type", None) != "content_block_delta":
                        continue
                    delta = event.delta
                    if delta.type == "text_delta":
                        on_event(TextDelta(text=delta.text))
                    elif delta.type == "thinking_delta" and options.include_reasoning:
                        on_event(ReasoningDelta(text=delta.thinking))

                if options.cancelled:
                    return

                final_message = await stream.get_final_message()

            usage = final_message.usage
            prompt = usage_field(usage, "input_tokens")
            completion = usage_field(usage, "output_tokens")
            token_usage: TokenUsage = {
                "prompt_tokens": prompt,
                "completion_tokens": completion,
                "total_tokens": prompt + completion,
            }
            cache_read = usage_field(usage, "cache_read_input_tokens")
            if cache_read:
                token_usage["cached_tokens"] = cache_read

            stop_reason = final_message.stop_reason
            if stop_reason == "max_tokens":
                log_provider_warning(self.provider_id, truncated_response_message(stop_reason))
            on_event(RunCompleted(usage=token_usage, stop_reason=stop_reason))

        except APITimeoutError as e:
            message = timeout_message(e, self.config.request_timeout)
            log_provider_error(self.provider_id, message, error=e)
            on_event(timeout_error_event(message))
        except AuthenticationError as e:
            message = authentication_failed_message(e)
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category="configuration", message=message))
        except PermissionDeniedError as e:
            message = f"Permission denied: {e}"
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category="configuration", message=message))
        except BadRequestError as e:
            message = bad_request_message(e)
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category="provider", message=message))
        except (APIConnectionError, RateLimitError, InternalServerError) as e:
            message = api_error_after_retries_message(e)
            log_provider_error(self.provider_id, message, error=e)
            on_event(transport_error_event(message))
        except APIStatusError as e:
            if e.status_code == 529:
                message = (
                    f"Anthropic system overloaded (529): {e}. "
                    "System is under heavy load; try again later."
                )
                log_provider_error(self.provider_id, message, error=e)
                on_event(transport_error_event(message))
            else:
                message = f"API status error ({e.status_code}): {e}"
                log_provider_error(self.provider_id, message, error=e)
                on_event(run_error_from_exception(e, category="provider", message=message))
        except Exception as e:
            message = unexpected_error_message(e)
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category="provider", message=message))

    async def _close_retired_clients(self) -> None:
        retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            try:
                await client.close()
            except Exception as e:
                log_provider_warning(self.provider_id, f"Error closing Claude client: {e}")

    async def release_resources(self) -> None:
        """Clear the manuscript and drop the SDK client.

        A client still serving an in-flight stream is closed once that
        stream finishes.
        """
        self._context = None
        client, self._client = self._client, None
        if client is not None:
            self._retired_clients.append(client)
        if self._active_streams == 0:
            await self._close_retired_clients()

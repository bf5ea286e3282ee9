"""OpenAI provider client for StoryGrinder.

This provider uses the OpenAI Responses API.
See: https://platform.openai.com/docs/guides/text
"""

import logging
from typing import Any, Optional

import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
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
from .catalog import get_api_key_env_var, is_openai_chat_model
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

FALLBACK_ENCODING = "cl100k_base"


def usage_from_response(response: Any) -> Optional[TokenUsage]:
    """Map a Responses API ``usage`` object to TokenUsage."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    prompt = usage_field(usage, "input_tokens")
    completion = usage_field(usage, "output_tokens")
    token_usage: TokenUsage = {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": usage_field(usage, "total_tokens", prompt + completion),
    }
    reasoning = usage_field(getattr(usage, "output_tokens_details", None), "reasoning_tokens")
    if reasoning:
        token_usage["reasoning_tokens"] = reasoning
    cached = usage_field(getattr(usage, "input_tokens_details", None), "cached_tokens")
    if cached:
        token_usage["cached_tokens"] = cached
    return token_usage


class OpenAIProvider:
    """OpenAI (GPT) provider client using the Responses API."""

    provider_id = "openai"

    RETRYABLE_ERRORS = (APIConnectionError, RateLimitError, APITimeoutError, InternalServerError)

    def __init__(self, config: ProviderConfig, api_key: Optional[str] = None):
        """Initialize OpenAI provider.

        Args:
            config: Provider configuration (model, limits, timeout, retries)
            api_key: OpenAI API key; ``None`` leaves the client in ``key_missing``
        """
        self.config = config
        self.api_key = api_key
        self._client: Optional[AsyncOpenAI] = None
        self._retired_clients: list[AsyncOpenAI] = []
        self._encoding: Optional[tiktoken.Encoding] = None
        self._context: Optional[PreparedContext] = None
        self._active_streams = 0

        if not api_key:
            log_provider_warning(
                self.provider_id,
                f"{get_api_key_env_var(self.provider_id)} not found; OpenAI client unavailable",
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
    def client(self) -> AsyncOpenAI:
        """SDK client, created on first use and after ``release_resources``."""
        if self._client is None:
            # Disable default retries - we handle retries explicitly
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=build_ai_httpx_timeout(self.config.request_timeout),
                max_retries=0,
            )
        return self._client

    @property
    def encoding(self) -> tiktoken.Encoding:
        """tiktoken encoding for the configured model."""
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.config.model_name)
            except KeyError:
                self._encoding = tiktoken.get_encoding(FALLBACK_ENCODING)
        return self._encoding

    async def _fetch_model_ids(self) -> list[str]:
        return [model.id async for model in self.client.models.list()]

    async def verify_connectivity(self) -> bool:
        """Verify the API key by listing models and finding the configured one."""
        if not self.api_key:
            return False

        try:
            model_ids = await self._fetch_model_ids()
        except Exception as e:
            log_provider_error(self.provider_id, f"OpenAI API verification failed: {e}")
            return False

        if self.config.model_name in model_ids:
            log_event(
                "provider_log",
                level=logging.INFO,
                provider=self.provider_id,
                message=f"OpenAI model accessible: {self.config.model_name}",
            )
            return True

        log_provider_error(self.provider_id, f"OpenAI model not found: {self.config.model_name}")
        return False

    async def list_available_models(self) -> list[str]:
        """List chat-capable model ids (``gpt-*``, ``o<N>*``, ``chatgpt-*``)."""
        if not self.api_key:
            return []
        try:
            model_ids = await self._fetch_model_ids()
        except Exception as e:
            log_provider_error(self.provider_id, f"OpenAI models list error: {e}")
            return []
        return sorted(model_id for model_id in model_ids if is_openai_chat_model(model_id))

    async def prepare_context(self, manuscript_path: str) -> PrepareResult:
        """Load the manuscript to prepend to every instruction."""
        context, result = await load_prepared_context(self.provider_id, manuscript_path)
        self._context = context
        return result

    async def estimate_tokens(self, text: str) -> int:
        """Count tokens locally with tiktoken."""
        try:
            return len(self.encoding.encode(text, disallowed_special=()))
        except Exception as e:
            log_provider_warning(self.provider_id, f"OpenAI token counting error: {e}")
            return -1

    def build_request(
        self, prompt: str, budget: TokenBudget, options: StreamOptions
    ) -> dict[str, Any]:
        """Build ``responses.create`` keyword arguments for one call."""
        kwargs: dict[str, Any] = {
            "model": self.config.model_name,
            "input": prompt,
            "stream": True,
        }
        if budget.max_output_tokens > 0:
            kwargs["max_output_tokens"] = budget.max_output_tokens
        if self.config.supports_reasoning_budget:
            reasoning: dict[str, Any] = {"effort": "high"}
            if options.include_reasoning:
                reasoning["summary"] = "auto"
            kwargs["reasoning"] = reasoning
        elif self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature
        return kwargs

    async def _open_stream(self, kwargs: dict[str, Any]) -> Any:
        """Create the streaming response, retrying transient failures."""
        async for attempt in build_stream_retrying(
            provider=self.provider_id,
            model=self.config.model_name,
            operation="responses.create",
            max_retries=self.config.max_retries,
            retry_on=self.RETRYABLE_ERRORS,
        ):
            with attempt:
                return await self.client.responses.with_raw_response.create(**kwargs)
        raise RuntimeError("unreachable: retry loop exited without result")

    async def stream_generate(
        self,
        instruction: str,
        on_event: EventCallback,
        options: Optional[StreamOptions] = None,
    ) -> None:
        """Stream a response for one instruction."""
        options = options or StreamOptions()
        if not self.api_key:
            raise NotConfiguredError(self.provider_id, get_api_key_env_var(self.provider_id))
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

        kwargs = self.build_request(full_prompt, budget, options)
        try:
            raw_response = await self._open_stream(kwargs)
            if options.include_metadata:
                headers = rate_limit_headers(raw_response.headers)
                if headers:
                    on_event(RateLimitInfo(headers=headers))

            terminal_seen = False
            async with raw_response.parse() as stream:
                async for event in stream:
                    if options.cancelled:
                        return
                    event_type = getattr(event, "type", "")
                    if event_type == "response.output_text.delta":
                        if event.delta:
                            on_event(TextDelta(text=event.delta))
                    elif event_type == "response.reasoning_summary_text.delta":
                        if options.include_reasoning and event.delta:
                            on_event(ReasoningDelta(text=event.delta))
                    elif event_type == "response.completed":
                        terminal_seen = True
                        on_event(
                            RunCompleted(
                                usage=usage_from_response(event.response),
                                stop_reason="completed",
                            )
                        )
                    elif event_type == "response.incomplete":
                        terminal_seen = True
                        details = getattr(event.response, "incomplete_details", None)
                        reason = getattr(details, "reason", None) or "incomplete"
                        log_provider_warning(self.provider_id, truncated_response_message(reason))
                        on_event(
                            RunCompleted(
                                usage=usage_from_response(event.response),
                                stop_reason=reason,
                            )
                        )
                    elif event_type == "response.failed":
                        terminal_seen = True
                        error = getattr(event.response, "error", None)
                        message = getattr(error, "message", None) or "Response generation failed"
                        log_provider_error(self.provider_id, message)
                        on_event(
                            run_error_from_exception(
                                RuntimeError(message), category="provider", message=message
                            )
                        )
                    elif event_type == "error":
                        terminal_seen = True
                        message = getattr(event, "message", None) or "Stream error"
                        log_provider_error(self.provider_id, message)
                        on_event(
                            run_error_from_exception(
                                RuntimeError(message), category="provider", message=message
                            )
                        )
                    if terminal_seen:
                        break

            if not terminal_seen and not options.cancelled:
                message = "Stream ended without a completion event"
                log_provider_error(self.provider_id, message)
                on_event(transport_error_event(message))

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
            message = bad_request_message(e, detail="check context length, invalid params")
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category="provider", message=message))
        except (APIConnectionError, RateLimitError, InternalServerError) as e:
            message = api_error_after_retries_message(e)
            log_provider_error(self.provider_id, message, error=e)
            on_event(transport_error_event(message))
        except APIStatusError as e:
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
                log_provider_warning(self.provider_id, f"Error closing OpenAI client: {e}")

    async def release_resources(self) -> None:
        """Clear the manuscript and drop the SDK client."""
        self._context = None
        client, self._client = self._client, None
        if client is not None:
            self._retired_clients.append(client)
        if self._active_streams == 0:
            await self._close_retired_clients()

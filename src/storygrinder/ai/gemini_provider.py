"""Gemini (Google) provider client for StoryGrinder."""

import contextlib
import logging
from typing import Any, Optional

import httpx
from google import genai
from google.genai import types
from google.genai.errors import ClientError, ServerError

from ..constants import DISPLAY_UNKNOWN
from ..errors import ContextNotPreparedError, NotConfiguredError
from ..logging import log_event
from ..timeouts import (
    RETRY_BACKOFF_EXP_BASE,
    RETRY_BACKOFF_INITIAL_SEC,
    RETRY_BACKOFF_JITTER,
    RETRY_BACKOFF_MAX_SEC,
)
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
    log_provider_error,
    log_provider_warning,
    timeout_message,
    truncated_response_message,
    unexpected_error_message,
)
from .provider_utils import (
    build_full_prompt,
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

# Gemini 2.5 Pro rejects thinking budgets below this value.
MIN_THINKING_BUDGET = 128

BLOCKED_FINISH_REASONS = {
    "SAFETY": "Response was blocked by safety filter",
    "RECITATION": "Response was blocked due to copyright concerns",
    "PROHIBITED_CONTENT": "Response was blocked due to prohibited content",
    "BLOCKLIST": "Response was blocked by a term blocklist",
}


def finish_reason_name(reason: Any) -> Optional[str]:
    """Normalize a FinishReason enum (or raw string) to its upper-case name."""
    if reason is None:
        return None
    return str(getattr(reason, "value", reason)).upper()


def usage_from_metadata(usage_meta: Any) -> Optional[TokenUsage]:
    """Map Gemini ``usage_metadata`` to TokenUsage."""
    if usage_meta is None:
        return None
    token_usage: TokenUsage = {
        "prompt_tokens": usage_field(usage_meta, "prompt_token_count"),
        "completion_tokens": usage_field(usage_meta, "candidates_token_count"),
        "total_tokens": usage_field(usage_meta, "total_token_count"),
    }
    thoughts = usage_field(usage_meta, "thoughts_token_count")
    if thoughts:
        token_usage["reasoning_tokens"] = thoughts
    cached = usage_field(usage_meta, "cached_content_token_count")
    if cached:
        token_usage["cached_tokens"] = cached
    return token_usage


class GeminiProvider:
    """Gemini (Google) provider client.

    Thought summaries arrive as ``Part`` objects flagged ``thought=True``
    inside ordinary response chunks; usage is only present on the final
    chunk.
    """

    provider_id = "gemini"

    def __init__(self, config: ProviderConfig, api_key: Optional[str] = None):
        """Initialize Gemini provider.

        Args:
            config: Provider configuration (model, limits, timeout, retries)
            api_key: Google API key; ``None`` leaves the client in ``key_missing``
        """
        self.config = config
        self.api_key = api_key
        self._client: Optional[genai.Client] = None
        self._retired_clients: list[genai.Client] = []
        self._context: Optional[PreparedContext] = None
        self._active_streams = 0

        if not api_key:
            log_provider_warning(
                self.provider_id,
                f"{get_api_key_env_var(self.provider_id)} not found; Gemini client unavailable",
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

    def _http_options(self) -> types.HttpOptions:
        # Configure retry policy for transient errors
        retry_policy = types.HttpRetryOptions(
            attempts=max(self.config.max_retries, 0) + 1,
            initial_delay=RETRY_BACKOFF_INITIAL_SEC,
            exp_base=RETRY_BACKOFF_EXP_BASE,
            jitter=RETRY_BACKOFF_JITTER,
            max_delay=RETRY_BACKOFF_MAX_SEC,
            http_status_codes=[429, 500, 503, 504],
        )
        # Gemini SDK uses ms; 0 means no timeout
        timeout = self.config.request_timeout
        timeout_ms = int(timeout * 1000) if timeout > 0 else None
        if timeout_ms:
            return types.HttpOptions(timeout=timeout_ms, retry_options=retry_policy)
        return types.HttpOptions(retry_options=retry_policy)

    @property
    def client(self) -> genai.Client:
        """SDK client, created on first use and after ``release_resources``."""
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key, http_options=self._http_options())
        return self._client

    async def _fetch_models(self) -> list[Any]:
        pager = await self.client.aio.models.list()
        return [model async for model in pager]

    @staticmethod
    def _model_id(model: Any) -> str:
        name = getattr(model, "name", "") or ""
        return name.removeprefix("models/")

    async def verify_connectivity(self) -> bool:
        """Verify the API key by listing models and finding the configured one."""
        if not self.api_key:
            return False

        try:
            models = await self._fetch_models()
        except Exception as e:
            log_provider_error(self.provider_id, f"Gemini API verification failed: {e}")
            return False

        model_ids = {self._model_id(model) for model in models}
        if self.config.model_name.removeprefix("models/") in model_ids:
            log_event(
                "provider_log",
                level=logging.INFO,
                provider=self.provider_id,
                message=f"Gemini model accessible: {self.config.model_name}",
            )
            return True

        log_provider_error(self.provider_id, f"Gemini model not found: {self.config.model_name}")
        return False

    async def list_available_models(self) -> list[str]:
        """List models that support ``generateContent``."""
        if not self.api_key:
            return []
        try:
            models = await self._fetch_models()
        except Exception as e:
            log_provider_error(self.provider_id, f"Gemini models list error: {e}")
            return []
        return sorted(
            self._model_id(model)
            for model in models
            if "generateContent" in (getattr(model, "supported_actions", None) or [])
        )

    async def prepare_context(self, manuscript_path: str) -> PrepareResult:
        """Load the manuscript to prepend to every instruction."""
        context, result = await load_prepared_context(self.provider_id, manuscript_path)
        self._context = context
        return result

    async def estimate_tokens(self, text: str) -> int:
        """Count tokens with the Gemini ``countTokens`` endpoint."""
        if not self.api_key:
            return -1
        try:
            response = await self.client.aio.models.count_tokens(
                model=self.config.model_name,
                contents=text,
            )
            return response.total_tokens if response.total_tokens is not None else -1
        except Exception as e:
            log_provider_warning(self.provider_id, f"Gemini token counting error: {e}")
            return -1

    def build_config(self, budget: TokenBudget, options: StreamOptions) -> types.GenerateContentConfig:
        """Build the GenerateContentConfig for one call."""
        config_kwargs: dict[str, Any] = {}
        if budget.max_output_tokens > 0:
            config_kwargs["max_output_tokens"] = budget.max_output_tokens
        if self.config.temperature is not None:
            config_kwargs["temperature"] = self.config.temperature
        if (
            self.config.supports_reasoning_budget
            and budget.reasoning_budget_tokens >= MIN_THINKING_BUDGET
        ):
            config_kwargs["thinking_config"] = types.ThinkingConfig(
                thinking_budget=budget.reasoning_budget_tokens,
                include_thoughts=options.include_reasoning,
            )
        return types.GenerateContentConfig(**config_kwargs)

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

        try:
            # Timeout and retry are configured in the Client via http_options
            response = await self.client.aio.models.generate_content_stream(
                model=self.config.model_name,
                contents=full_prompt,
                config=self.build_config(budget, options),
            )

            final_chunk = None
            finish_reason: Optional[str] = None
            headers_sent = False
            # Releases the HTTP response on early return.
            async with contextlib.aclosing(response):
                async for chunk in response:
                    if options.cancelled:
                        return
                    final_chunk = chunk

                    if options.include_metadata and not headers_sent:
                        headers_sent = True
                        http_response = getattr(chunk, "sdk_http_response", None)
                        headers = rate_limit_headers(getattr(http_response, "headers", None))
                        if headers:
                            on_event(RateLimitInfo(headers=headers))

                    if not chunk.candidates:
                        continue
                    candidate = chunk.candidates[0]
                    reason = finish_reason_name(getattr(candidate, "finish_reason", None))
                    if reason:
                        finish_reason = reason

                    content = getattr(candidate, "content", None)
                    for part in getattr(content, "parts", None) or []:
                        text = getattr(part, "text", None)
                        if not text:
                            continue
                        if getattr(part, "thought", False):
                            if options.include_reasoning:
                                on_event(ReasoningDelta(text=text))
                        else:
                            on_event(TextDelta(text=text))

            if options.cancelled:
                return

            if finish_reason in BLOCKED_FINISH_REASONS:
                message = BLOCKED_FINISH_REASONS[finish_reason]
                log_provider_warning(self.provider_id, message)
                on_event(
                    run_error_from_exception(
                        RuntimeError(message), category="provider", message=message
                    )
                )
                return
            if finish_reason == "MAX_TOKENS":
                log_provider_warning(self.provider_id, truncated_response_message(finish_reason))

            on_event(
                RunCompleted(
                    usage=usage_from_metadata(getattr(final_chunk, "usage_metadata", None)),
                    stop_reason=finish_reason,
                )
            )

        except ClientError as e:
            # 400-499 errors - don't retry, these are client-side issues
            status_code = getattr(e, "code", None) or getattr(e, "status_code", DISPLAY_UNKNOWN)
            message = f"Client error ({status_code}): {e}"
            if status_code == 429:
                message += " Rate limit exceeded - retries exhausted."
                log_provider_error(self.provider_id, message, error=e)
                on_event(transport_error_event(message))
                return
            category = "provider"
            if status_code == 400:
                message += " Bad request - check message format and parameters."
            elif status_code in (401, 403):
                message += " Permission denied - check API key and access."
                category = "configuration"
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category=category, message=message))
        except ServerError as e:
            # 500-599 errors - retry handled by SDK, but if all retries fail:
            status_code = getattr(e, "code", None) or getattr(e, "status_code", DISPLAY_UNKNOWN)
            message = f"Server error ({status_code}) after retries: {e}"
            log_provider_error(self.provider_id, message, error=e)
            on_event(transport_error_event(message))
        except httpx.TimeoutException as e:
            message = timeout_message(e, self.config.request_timeout)
            log_provider_error(self.provider_id, message, error=e)
            on_event(timeout_error_event(message))
        except httpx.TransportError as e:
            message = f"Connection error: {type(e).__name__}: {e}"
            log_provider_error(self.provider_id, message, error=e)
            on_event(transport_error_event(message))
        except Exception as e:
            message = unexpected_error_message(e)
            log_provider_error(self.provider_id, message, error=e)
            on_event(run_error_from_exception(e, category="provider", message=message))

    async def _close_retired_clients(self) -> None:
        retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            try:
                await client.aio.aclose()
            except Exception as e:
                log_provider_warning(self.provider_id, f"Error closing Gemini client: {e}")

    async def release_resources(self) -> None:
        """Clear the manuscript and drop the SDK client."""
        self._context = None
        client, self._client = self._client, None
        if client is not None:
            self._retired_clients.append(client)
        if self._active_streams == 0:
            await self._close_retired_clients()

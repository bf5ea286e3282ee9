"""Structural interface shared by every provider client."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from .events import EventCallback
from .types import ClientState, PreparedContext, PrepareResult, ProviderConfig, StreamOptions


@runtime_checkable
class ProviderClient(Protocol):
    """Capability set implemented independently by each backend.

    Lifecycle: ``uninitialized -> ready`` (key found) or ``key_missing``;
    ``ready -> context_loaded`` after ``prepare_context``;
    ``context_loaded -> streaming -> context_loaded`` around each call.
    """

    provider_id: str
    config: ProviderConfig

    @property
    def state(self) -> ClientState:
        ...

    @property
    def context(self) -> Optional[PreparedContext]:
        ...

    async def verify_connectivity(self) -> bool:
        """Return True if the key works and the configured model is listed."""
        ...

    async def list_available_models(self) -> list[str]:
        """Return chat-capable model ids; empty on any failure."""
        ...

    async def prepare_context(self, manuscript_path: str) -> PrepareResult:
        """Load the manuscript; failures are reported, never raised."""
        ...

    async def estimate_tokens(self, text: str) -> int:
        """Count tokens in ``text``; -1 when counting fails."""
        ...

    async def stream_generate(
        self,
        instruction: str,
        on_event: EventCallback,
        options: Optional[StreamOptions] = None,
    ) -> None:
        """Stream one generation, reporting canonical events to ``on_event``.

        Raises:
            NotConfiguredError: no API key
            ContextNotPreparedError: ``prepare_context`` has not succeeded
        """
        ...

    async def release_resources(self) -> None:
        """Drop the prepared context and connection handles (idempotent)."""
        ...

"""Outbound facade used by the UI/CLI layer.

The workbench owns one provider client per ``(provider, model)`` pair, the
run registry, and the artifact cache. Switching project or provider clears
every artifact listing and every prepared manuscript.
"""

from __future__ import annotations

from typing import Callable, Optional

from .ai.base import ProviderClient
from .ai.catalog import is_valid_provider
from .ai.provider_logging import log_provider_warning
from .ai.runtime import load_provider_client
from .ai.types import PrepareResult, ProviderConfig
from .keys.loader import KeyConfig
from .orchestration.artifacts import ArtifactCache
from .orchestration.registry import RunRegistry, RunSubscriber
from .orchestration.types import RunContext, RunRequest, RunSnapshot
from .settings import Settings

ClientFactory = Callable[[ProviderConfig, KeyConfig], ProviderClient]


class Workbench:
    """Entry point for starting, observing, and cleaning up tool runs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client_factory: ClientFactory = load_provider_client,
    ) -> None:
        self.settings = settings if settings is not None else Settings()
        self._client_factory = client_factory
        self._clients: dict[tuple[str, str], ProviderClient] = {}
        self.artifacts = ArtifactCache()
        self.registry = RunRegistry(self._client_for_context, self.artifacts)
        self.provider_id = self.settings.selected_provider
        self.project_path: Optional[str] = None

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def client(self, provider_id: Optional[str] = None, model: Optional[str] = None) -> ProviderClient:
        """Get (creating on first use) the client for a provider and model.

        Raises:
            ValueError: unknown provider id
        """
        provider = provider_id or self.provider_id
        config = self.settings.provider_config(provider, model)
        key = (provider, config.model_name)
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(config, self.settings.key_config(provider))
            self._clients[key] = client
        return client

    def _client_for_context(self, context: RunContext) -> ProviderClient:
        return self.client(context.provider_id, context.model_name)

    async def _release_all(self) -> None:
        for client in list(self._clients.values()):
            await client.release_resources()

    # ------------------------------------------------------------------
    # Project / provider switching
    # ------------------------------------------------------------------

    async def open_project(self, project_path: str) -> None:
        """Make ``project_path`` the active project."""
        self.project_path = project_path
        self.artifacts.clear_all()
        await self._release_all()

    async def switch_provider(self, provider_id: str) -> None:
        """Make ``provider_id`` the default provider for new runs.

        Raises:
            ValueError: unknown provider id
        """
        if not is_valid_provider(provider_id):
            raise ValueError(f"Unknown provider: {provider_id}")
        self.provider_id = provider_id
        self.artifacts.clear_all()
        await self._release_all()

    async def prepare_manuscript(
        self,
        manuscript_path: str,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> PrepareResult:
        """Load a manuscript into the provider client used for later runs."""
        return await self.client(provider_id, model).prepare_context(manuscript_path)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_context(
        self,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> RunContext:
        provider = provider_id or self.provider_id
        model_name = model
        if model_name is None and is_valid_provider(provider):
            model_name = self.settings.model_for(provider)
        return RunContext(
            provider_id=provider,
            model_name=model_name,
            project_path=self.project_path,
            output_dir=output_dir or self.project_path,
            language=self.settings.language,
        )

    def start_run(
        self,
        tool_id: str,
        request: RunRequest | str,
        *,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> str:
        """Start a tool run; returns its run id immediately."""
        if isinstance(request, str):
            request = RunRequest(instruction=request)
        return self.registry.start_run(
            tool_id, self.run_context(provider_id, model, output_dir), request
        )

    def cancel_run(self, run_id: str) -> bool:
        return self.registry.cancel(run_id)

    def get_run(self, run_id: str) -> RunSnapshot:
        return self.registry.get_status(run_id)

    async def wait_run(self, run_id: str) -> RunSnapshot:
        return await self.registry.wait(run_id)

    def subscribe(self, callback: RunSubscriber) -> Callable[[], None]:
        return self.registry.subscribe(callback)

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def get_artifacts(self, tool_id: str) -> list[str]:
        return self.artifacts.list_artifacts(tool_id)

    def clear_artifacts(self, tool_id: Optional[str] = None) -> int:
        """Clear one tool's artifact listing, or all of them."""
        if tool_id is None:
            return self.artifacts.clear_all()
        return self.artifacts.clear(tool_id)

    # ------------------------------------------------------------------
    # Provider checks (best-effort, never raise)
    # ------------------------------------------------------------------

    async def verify_connectivity(self, provider_id: Optional[str] = None) -> bool:
        try:
            client = self.client(provider_id)
        except Exception as e:
            log_provider_warning(provider_id or self.provider_id, f"Client unavailable: {type(e).__name__}: {e}")
            return False
        return await client.verify_connectivity()

    async def list_available_models(self, provider_id: Optional[str] = None) -> list[str]:
        try:
            client = self.client(provider_id)
        except Exception as e:
            log_provider_warning(provider_id or self.provider_id, f"Client unavailable: {type(e).__name__}: {e}")
            return []
        return await client.list_available_models()

    async def aclose(self) -> None:
        """Cancel active runs and release every client."""
        await self.registry.shutdown()
        await self._release_all()
        self._clients.clear()

"""Integration service -- the operations behind the integrations settings page.

Composes the token manager, sync orchestrator and demo service into the
user-facing lifecycle: authorize, callback, status, sync, disconnect.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from src.app.config import Settings, get_settings
from src.app.integrations.demo import DemoIntegrationService
from src.app.integrations.encryption import encrypt
from src.app.integrations.exceptions import (
    ConfigurationError,
    IntegrationError,
    IntegrationNotActiveError,
    IntegrationNotFoundError,
    OAuthStateProviderMismatchError,
    SyncInProgressError,
)
from src.app.integrations.oauth import (
    TokenManager,
    generate_oauth_state,
    get_redirect_uri,
    get_webhook_url,
    verify_oauth_state,
)
from src.app.integrations.providers import get_provider_adapter, parse_provider
from src.app.integrations.providers.base import CRMProviderAdapter
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    CRMProvider,
    EntityType,
    IntegrationCheck,
    IntegrationRead,
    IntegrationStatus,
    IntegrationStatusRead,
    OAuthTokens,
    SyncLogRead,
    SyncRunResult,
)
from src.app.integrations.sync import SyncOrchestrator

logger = structlog.get_logger(__name__)

RECENT_LOG_COUNT = 10


class IntegrationService:
    """Organization-facing CRM integration operations.

    Args:
        repository: Integration persistence.
        token_manager: Credential storage and refresh.
        orchestrator: Sync runs.
        demo: Demo integration service.
        demo_mode: Whether demo integrations may be connected.
        adapter_factory: provider -> adapter; defaults to get_provider_adapter.
        settings: Source of callback URLs; defaults to get_settings().
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        token_manager: TokenManager,
        orchestrator: SyncOrchestrator,
        demo: DemoIntegrationService,
        demo_mode: bool = False,
        adapter_factory: Callable[[CRMProvider], CRMProviderAdapter] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._repository = repository
        self._tokens = token_manager
        self._orchestrator = orchestrator
        self._demo = demo
        self._demo_mode = demo_mode
        self._adapter_factory = adapter_factory or get_provider_adapter
        self._settings = settings or get_settings()

    @property
    def demo_mode(self) -> bool:
        return self._demo_mode

    # ── OAuth ───────────────────────────────────────────────────────────────

    def begin_authorization(self, organization_id: str, provider: str | CRMProvider) -> str:
        """Provider consent URL carrying a signed state for the organization."""
        provider = parse_provider(provider)
        adapter = self._adapter_factory(provider)
        state = generate_oauth_state(organization_id, provider)
        return adapter.get_auth_url(state, get_redirect_uri(provider, self._settings))

    async def complete_authorization(
        self, provider: str | CRMProvider, code: str, state: str
    ) -> str:
        """Finish the OAuth callback and return the connected organization id.

        Raises:
            AuthFlowError: State invalid, expired, for another provider, or the
                code exchange failed.
        """
        provider = parse_provider(provider)
        claims = verify_oauth_state(state)
        if claims.provider != provider:
            raise OAuthStateProviderMismatchError(claims.provider.value, provider.value)

        adapter = self._adapter_factory(provider)
        tokens = await adapter.exchange_code(code, get_redirect_uri(provider, self._settings))
        integration = await self._tokens.store_integration_tokens(
            claims.organization_id, provider, tokens
        )
        await self._register_webhook(integration, adapter, tokens)
        logger.info(
            "integration.connected",
            organization_id=claims.organization_id,
            provider=provider.value,
        )
        return claims.organization_id

    async def _register_webhook(
        self,
        integration: IntegrationRead,
        adapter: CRMProviderAdapter,
        tokens: OAuthTokens,
    ) -> None:
        """Best effort; a connection without webhooks still syncs on demand."""
        try:
            registration = await adapter.register_webhook(
                tokens.access_token,
                get_webhook_url(integration.provider, self._settings),
                instance_url=tokens.instance_url,
            )
        except IntegrationError as exc:
            logger.warning(
                "integration.webhook_registration_failed",
                organization_id=integration.organization_id,
                provider=integration.provider.value,
                error=str(exc),
            )
            return
        await self._repository.update_integration(
            integration.id,
            webhook_id=registration.webhook_id,
            webhook_secret=encrypt(registration.secret) if registration.secret else None,
        )

    # ── Status ──────────────────────────────────────────────────────────────

    async def get_status(self, organization_id: str) -> IntegrationStatusRead:
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            return IntegrationStatusRead(connected=False)
        logs = await self._repository.list_sync_logs(integration.id, limit=RECENT_LOG_COUNT)
        return IntegrationStatusRead(
            connected=True,
            provider=integration.provider,
            status=integration.status,
            last_sync_at=integration.last_sync_at,
            last_sync_status=integration.last_sync_status,
            last_sync_error=integration.last_sync_error,
            is_demo=integration.is_demo,
            recent_logs=logs,
        )

    async def check_integration(self, organization_id: str) -> IntegrationCheck:
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            return IntegrationCheck(has_integration=False)
        return IntegrationCheck(
            has_integration=True,
            provider=integration.provider,
            status=integration.status,
        )

    async def get_sync_logs(self, organization_id: str, limit: int = 20) -> list[SyncLogRead]:
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            return []
        return await self._repository.list_sync_logs(integration.id, limit=limit)

    # ── Sync ────────────────────────────────────────────────────────────────

    async def trigger_sync(self, organization_id: str) -> SyncRunResult:
        """Run the appropriate sync: demo, first full sync, or incremental.

        Raises:
            IntegrationNotFoundError: No integration.
            SyncInProgressError: A run is already in progress.
            IntegrationNotActiveError: Integration is in ERROR or DISCONNECTED.
        """
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)
        if integration.status == IntegrationStatus.SYNCING:
            raise SyncInProgressError(organization_id)
        if integration.status != IntegrationStatus.CONNECTED:
            raise IntegrationNotActiveError(organization_id, integration.status.value)

        if integration.is_demo:
            return await self._demo.simulate_demo_sync(organization_id)
        if integration.last_sync_at is None:
            return await self._orchestrator.run_full_sync(organization_id)
        return await self._orchestrator.run_incremental_sync(organization_id)

    async def push_to_crm(
        self,
        organization_id: str,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
    ) -> SyncRunResult:
        return await self._orchestrator.push_to_crm(
            organization_id, entity_type, external_id, fields
        )

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def connect_demo(
        self, organization_id: str, provider: str | CRMProvider
    ) -> IntegrationRead:
        """Create a demo integration.

        Raises:
            ConfigurationError: Demo mode is disabled.
            IntegrationAlreadyExistsError: Organization already has an integration.
        """
        if not self._demo_mode:
            raise ConfigurationError("Demo mode is not enabled")
        return await self._demo.create_demo_integration(organization_id, parse_provider(provider))

    async def disconnect(self, organization_id: str) -> None:
        """Remove the integration and detach every record it synced.

        Local rows are kept. Remote webhook deletion is best effort and never
        blocks the local disconnect.
        """
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)

        if integration.webhook_id and not integration.is_demo:
            try:
                adapter = self._adapter_factory(integration.provider)
                token = await self._tokens.access_token_for(integration)
                await adapter.delete_webhook(
                    token.access_token,
                    integration.webhook_id,
                    instance_url=token.instance_url,
                )
            except Exception as exc:
                logger.warning(
                    "integration.webhook_delete_failed",
                    organization_id=organization_id,
                    provider=integration.provider.value,
                    error=str(exc),
                )

        await self._repository.delete_integration(integration.id)
        cleared = await self._repository.clear_all_external_references(
            organization_id, integration.provider
        )
        logger.info(
            "integration.disconnected",
            organization_id=organization_id,
            provider=integration.provider.value,
            records_detached=cleared,
        )

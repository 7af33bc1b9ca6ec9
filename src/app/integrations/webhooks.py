"""Inbound CRM webhook ingestion.

The signature is checked against every candidate integration's secret before
the body is decoded; an unverified body is never parsed. Each event is
applied on its own and gets its own webhook/inbound sync log, so one bad
event does not reject the delivery.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import structlog
from pydantic import ValidationError

from src.app.core.monitoring import crm_webhook_events_total
from src.app.integrations.encryption import decrypt
from src.app.integrations.exceptions import (
    EncryptionError,
    IntegrationError,
    WebhookPayloadError,
    WebhookVerificationError,
)
from src.app.integrations.oauth import TokenManager
from src.app.integrations.providers import get_provider_adapter, parse_provider
from src.app.integrations.providers.base import CRMProviderAdapter
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    CRMProvider,
    ExternalRecord,
    IntegrationRead,
    IntegrationStatus,
    SyncCounts,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    WebhookAction,
    WebhookEvent,
    WebhookResult,
)
from src.app.integrations.sync import SKIPPED, UPDATED, SyncOrchestrator, tally

logger = structlog.get_logger(__name__)

# Header names carrying the body signature, tried in order
SIGNATURE_HEADERS: dict[CRMProvider, tuple[str, ...]] = {
    CRMProvider.HUBSPOT: ("X-HubSpot-Signature-v3", "X-HubSpot-Signature"),
    CRMProvider.SALESFORCE: ("X-Salesforce-Signature",),
    CRMProvider.ATTIO: ("X-Attio-Signature", "Attio-Signature"),
}

_LISTENING_STATUSES = {IntegrationStatus.CONNECTED, IntegrationStatus.SYNCING}


def signature_headers(provider: CRMProvider) -> tuple[str, ...]:
    return SIGNATURE_HEADERS[CRMProvider(provider)]


class WebhookProcessor:
    """Verifies, decodes and applies webhook deliveries."""

    def __init__(
        self,
        repository: IntegrationRepository,
        orchestrator: SyncOrchestrator,
        token_manager: TokenManager,
        adapter_factory: Callable[[CRMProvider], CRMProviderAdapter] | None = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._tokens = token_manager
        self._adapter_factory = adapter_factory or get_provider_adapter

    async def handle(
        self, provider: str | CRMProvider, body: bytes, signature: str | None
    ) -> WebhookResult:
        """Process one delivery.

        Raises:
            UnknownProviderError: Provider is not supported.
            WebhookVerificationError: Signature missing or matches no integration.
            WebhookPayloadError: Verified body is not valid JSON or event data.
        """
        provider = parse_provider(provider)
        if not signature:
            raise WebhookVerificationError(f"Missing {provider.value} webhook signature")

        adapter = self._adapter_factory(provider)
        candidates = [
            c
            for c in await self._repository.list_integrations_for_provider(provider)
            if c.status in _LISTENING_STATUSES
        ]
        if not candidates:
            logger.info("webhook.no_integrations", provider=provider.value)
            return WebhookResult(received=True, processed=0)

        target = self._match_signature(adapter, candidates, body, signature)
        if target is None:
            logger.warning("webhook.signature_rejected", provider=provider.value)
            raise WebhookVerificationError(f"{provider.value} webhook signature did not verify")

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise WebhookPayloadError(f"Webhook body is not valid JSON: {exc}") from exc
        try:
            events = adapter.parse_webhook_payload(payload)
        except (ValidationError, TypeError, KeyError, AttributeError, ValueError) as exc:
            raise WebhookPayloadError(f"Webhook payload could not be parsed: {exc}") from exc

        result = WebhookResult(received=True)
        for event in events:
            if event.entity_type is None:
                logger.info(
                    "webhook.event_ignored",
                    provider=provider.value,
                    event_type=event.event_type,
                )
                continue
            if await self._apply_event(adapter, target, event):
                result.processed += 1
                crm_webhook_events_total.labels(provider=provider.value, outcome="processed").inc()
            else:
                result.failed += 1
                crm_webhook_events_total.labels(provider=provider.value, outcome="failed").inc()

        logger.info(
            "webhook.delivery_processed",
            provider=provider.value,
            organization_id=target.organization_id,
            processed=result.processed,
            failed=result.failed,
        )
        return result

    def _match_signature(
        self,
        adapter: CRMProviderAdapter,
        candidates: list[IntegrationRead],
        body: bytes,
        signature: str,
    ) -> IntegrationRead | None:
        for integration in candidates:
            try:
                secret = decrypt(integration.webhook_secret or "")
            except EncryptionError as exc:
                logger.warning(
                    "webhook.secret_unreadable",
                    integration_id=integration.id,
                    error=str(exc),
                )
                continue
            if adapter.verify_webhook_signature(body, signature, secret):
                return integration
        return None

    async def _apply_event(
        self,
        adapter: CRMProviderAdapter,
        integration: IntegrationRead,
        event: WebhookEvent,
    ) -> bool:
        entity_type = event.entity_type
        log = await self._repository.create_sync_log(
            integration.id,
            entity_type.value,
            SyncOperation.WEBHOOK,
            SyncDirection.INBOUND,
            metadata={
                "event_type": event.event_type,
                "action": event.action.value,
                "external_id": event.external_id,
            },
        )
        counts = SyncCounts()
        try:
            if event.action == WebhookAction.DELETE:
                cleared = await self._repository.clear_external_reference(
                    entity_type,
                    integration.organization_id,
                    event.external_id,
                    integration.provider,
                )
                tally(counts, UPDATED if cleared else SKIPPED)
            else:
                record = await self._event_record(adapter, integration, event)
                if record is None:
                    tally(counts, SKIPPED)
                else:
                    outcome = await self._orchestrator.apply_record(integration, entity_type, record)
                    tally(counts, outcome)
        except (IntegrationError, ValidationError) as exc:
            counts.processed = 1
            counts.failed = 1
            await self._repository.complete_sync_log(
                log.id, SyncLogStatus.FAILED, counts, error_message=str(exc)
            )
            logger.warning(
                "webhook.event_failed",
                provider=integration.provider.value,
                entity_type=entity_type.value,
                external_id=event.external_id,
                error=str(exc),
            )
            return False

        await self._repository.complete_sync_log(log.id, SyncLogStatus.COMPLETED, counts)
        return True

    async def _event_record(
        self,
        adapter: CRMProviderAdapter,
        integration: IntegrationRead,
        event: WebhookEvent,
    ) -> ExternalRecord | None:
        """Record carried by the event, else fetched from the provider."""
        if event.data:
            return ExternalRecord.model_validate(event.data)
        token = await self._tokens.access_token_for(integration)
        return await adapter.fetch_record(
            event.entity_type,
            token.access_token,
            event.external_id,
            instance_url=token.instance_url,
        )

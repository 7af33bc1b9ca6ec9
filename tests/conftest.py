"""Shared fixtures for the CRM sync engine tests.

Provides:
- InMemoryIntegrationRepository, a dict-backed stand-in for IntegrationRepository
- Integration factory with tokens encrypted under the development key
- A MagicMock provider adapter and the services wired around it
- Tenacity waits disabled so rate-limit retries run instantly
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from tenacity import wait_none

from src.app.integrations.demo import DemoIntegrationService
from src.app.integrations.encryption import encrypt, get_cipher
from src.app.integrations.exceptions import ReconciliationError
from src.app.integrations.oauth import TokenManager
from src.app.integrations.providers.base import CRMProviderAdapter
from src.app.integrations.schemas import (
    CRMProvider,
    EntityType,
    IntegrationRead,
    IntegrationStatus,
    PaginatedRecords,
    SyncCounts,
    SyncDirection,
    SyncLogRead,
    SyncLogStatus,
    SyncOperation,
)
from src.app.integrations.service import IntegrationService
from src.app.integrations.sync import SyncOrchestrator
from src.app.integrations.webhooks import WebhookProcessor

ORG_ID = "org-acme"
WEBHOOK_SECRET = "whsec-test-0123456789"

_CLEARED = {
    "external_id": None,
    "external_source": None,
    "external_url": None,
    "sync_status": None,
    "last_synced_at": None,
}


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryIntegrationRepository:
    """In-memory IntegrationRepository for testing without a database."""

    def __init__(self) -> None:
        self.integrations: dict[str, IntegrationRead] = {}
        self.logs: dict[str, SyncLogRead] = {}
        self.records: dict[EntityType, dict[str, dict[str, Any]]] = {e: {} for e in EntityType}
        self.stages: dict[str, list[dict[str, Any]]] = {}
        # upsert_record raises ReconciliationError for these external ids
        self.fail_external_ids: set[str] = set()

    # Integrations

    async def get_integration(self, organization_id: str) -> IntegrationRead | None:
        for integration in self.integrations.values():
            if integration.organization_id == organization_id:
                return integration
        return None

    async def get_integration_by_id(self, integration_id: str) -> IntegrationRead | None:
        return self.integrations.get(integration_id)

    async def list_integrations_for_provider(self, provider: CRMProvider) -> list[IntegrationRead]:
        return [
            i
            for i in self.integrations.values()
            if i.provider == provider and i.webhook_secret is not None and not i.is_demo
        ]

    async def save_integration_tokens(
        self,
        organization_id: str,
        provider: CRMProvider,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        instance_url: str | None,
    ) -> IntegrationRead:
        fields = {
            "provider": provider,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_expires_at": token_expires_at,
            "instance_url": instance_url,
            "status": IntegrationStatus.CONNECTED,
            "last_sync_error": None,
            "is_demo": False,
        }
        existing = await self.get_integration(organization_id)
        if existing is not None:
            updated = existing.model_copy(update=fields)
            self.integrations[existing.id] = updated
            return updated
        fields.pop("provider")
        return await self.create_integration(organization_id, provider, **fields)

    async def create_integration(
        self, organization_id: str, provider: CRMProvider, **fields: Any
    ) -> IntegrationRead:
        integration = IntegrationRead(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            provider=provider,
            **fields,
        )
        self.integrations[integration.id] = integration
        return integration

    async def update_integration(self, integration_id: str, **fields: Any) -> IntegrationRead | None:
        current = self.integrations.get(integration_id)
        if current is None:
            return None
        updated = current.model_copy(update=fields)
        self.integrations[integration_id] = updated
        return updated

    async def try_begin_sync(self, integration_id: str) -> bool:
        current = self.integrations.get(integration_id)
        if current is None or current.status != IntegrationStatus.CONNECTED:
            return False
        self.integrations[integration_id] = current.model_copy(
            update={"status": IntegrationStatus.SYNCING}
        )
        return True

    async def delete_integration(self, integration_id: str) -> None:
        self.integrations.pop(integration_id, None)
        self.logs = {k: v for k, v in self.logs.items() if v.integration_id != integration_id}

    # Sync logs

    async def create_sync_log(
        self,
        integration_id: str,
        entity_type: str,
        operation: SyncOperation,
        direction: SyncDirection,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogRead:
        log = SyncLogRead(
            id=str(uuid.uuid4()),
            integration_id=integration_id,
            entity_type=getattr(entity_type, "value", entity_type),
            operation=operation,
            direction=direction,
            status=SyncLogStatus.STARTED,
            started_at=datetime.now(timezone.utc),
            metadata=metadata or {},
        )
        self.logs[log.id] = log
        return log

    async def complete_sync_log(
        self,
        log_id: str,
        status: SyncLogStatus,
        counts: SyncCounts,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogRead | None:
        log = self.logs.get(log_id)
        if log is None or log.status != SyncLogStatus.STARTED:
            return log
        completed = log.model_copy(
            update={
                "status": status,
                "records_processed": counts.processed,
                "records_created": counts.created,
                "records_updated": counts.updated,
                "records_skipped": counts.skipped,
                "records_failed": counts.failed,
                "completed_at": datetime.now(timezone.utc),
                "error_message": error_message,
                "metadata": {**log.metadata, **(metadata or {})},
            }
        )
        self.logs[log_id] = completed
        return completed

    async def list_sync_logs(self, integration_id: str, limit: int = 20) -> list[SyncLogRead]:
        logs = [log for log in self.logs.values() if log.integration_id == integration_id]
        return list(reversed(logs))[:limit]

    # Synced entities

    def rows(self, entity_type: EntityType, organization_id: str = ORG_ID) -> list[dict[str, Any]]:
        return [
            r for r in self.records[entity_type].values() if r["organization_id"] == organization_id
        ]

    def _match(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_id: str,
        external_source: CRMProvider,
    ) -> dict[str, Any] | None:
        for row in self.records[entity_type].values():
            if (
                row["organization_id"] == organization_id
                and row.get("external_id") == external_id
                and row.get("external_source") == external_source
            ):
                return row
        return None

    async def find_record_id(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_id: str,
        external_source: CRMProvider,
    ) -> str | None:
        row = self._match(entity_type, organization_id, external_id, external_source)
        return row["id"] if row else None

    async def upsert_record(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_source: CRMProvider,
        external_id: str,
        values: dict[str, Any],
        create_only: dict[str, Any] | None = None,
    ) -> tuple[str, bool]:
        if external_id in self.fail_external_ids:
            raise ReconciliationError(f"Upsert of {entity_type.value} {external_id} failed")
        row = self._match(entity_type, organization_id, external_id, external_source)
        created = row is None
        if created:
            row = {
                "id": str(uuid.uuid4()),
                "organization_id": organization_id,
                "external_id": external_id,
                "external_source": external_source,
                **(create_only or {}),
            }
            self.records[entity_type][row["id"]] = row
        row.update(values)
        return row["id"], created

    async def create_record(
        self, entity_type: EntityType, organization_id: str, values: dict[str, Any]
    ) -> str:
        row = {"id": str(uuid.uuid4()), "organization_id": organization_id, **values}
        self.records[entity_type][row["id"]] = row
        return row["id"]

    async def get_or_create_deal_stage(
        self, organization_id: str, preferred_name: str | None = None
    ) -> str:
        stages = self.stages.setdefault(organization_id, [])
        for stage in stages:
            if preferred_name and stage["name"] == preferred_name:
                return stage["id"]
        if stages:
            return min(stages, key=lambda s: s["order"])["id"]
        stage = {"id": str(uuid.uuid4()), "name": "Prospecting", "order": 0, "probability": 10}
        stages.append(stage)
        return stage["id"]

    async def seed_deal_pipeline(
        self, organization_id: str, stages: list[tuple[str, int, int]]
    ) -> str:
        existing = self.stages.setdefault(organization_id, [])
        if not existing:
            for name, order, probability in stages:
                existing.append(
                    {"id": str(uuid.uuid4()), "name": name, "order": order, "probability": probability}
                )
        return min(existing, key=lambda s: s["order"])["id"]

    async def clear_external_reference(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_id: str,
        external_source: CRMProvider,
    ) -> bool:
        row = self._match(entity_type, organization_id, external_id, external_source)
        if row is None:
            return False
        row.update(_CLEARED)
        return True

    async def clear_all_external_references(
        self, organization_id: str, external_source: CRMProvider
    ) -> int:
        cleared = 0
        for entity_type in EntityType:
            for row in self.rows(entity_type, organization_id):
                if row.get("external_source") == external_source:
                    row.update(_CLEARED)
                    cleared += 1
        return cleared

    async def touch_synced_records(
        self, organization_id: str, external_source: CRMProvider, synced_at: datetime
    ) -> int:
        touched = 0
        for entity_type in EntityType:
            for row in self.rows(entity_type, organization_id):
                if row.get("external_source") == external_source:
                    row["last_synced_at"] = synced_at
                    touched += 1
        return touched


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _instant_retries(monkeypatch):
    """Rate-limit retries run without backoff sleeps."""
    monkeypatch.setattr(CRMProviderAdapter._send.retry, "wait", wait_none())


@pytest.fixture(autouse=True)
def _fresh_cipher():
    """Rebuild the cipher per test so patched settings take effect."""
    get_cipher.cache_clear()
    yield
    get_cipher.cache_clear()


@pytest.fixture
def repo() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture
def make_integration(repo):
    """Factory creating a CONNECTED integration with encrypted credentials."""

    async def _make(
        organization_id: str = ORG_ID,
        provider: CRMProvider = CRMProvider.HUBSPOT,
        **overrides: Any,
    ) -> IntegrationRead:
        fields: dict[str, Any] = {
            "access_token": encrypt("access-token"),
            "refresh_token": encrypt("refresh-token"),
            "token_expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
            "status": IntegrationStatus.CONNECTED,
            "webhook_id": "webhook-1",
            "webhook_secret": encrypt(WEBHOOK_SECRET),
        }
        fields.update(overrides)
        return await repo.create_integration(organization_id, provider, **fields)

    return _make


@pytest.fixture
def adapter() -> MagicMock:
    """Provider adapter double; record calls return empty results by default."""
    mock = MagicMock(spec=CRMProviderAdapter)
    mock.fetch_records = AsyncMock(return_value=PaginatedRecords())
    mock.fetch_records_modified_since = AsyncMock(return_value=[])
    mock.fetch_record = AsyncMock(return_value=None)
    mock.update_record = AsyncMock()
    mock.refresh_token = AsyncMock()
    mock.exchange_code = AsyncMock()
    mock.register_webhook = AsyncMock()
    mock.delete_webhook = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def token_manager(repo, adapter) -> TokenManager:
    return TokenManager(repo, adapter_factory=lambda provider: adapter)


@pytest.fixture
def orchestrator(repo, token_manager, adapter) -> SyncOrchestrator:
    return SyncOrchestrator(
        repo, token_manager, adapter_factory=lambda provider: adapter, page_size=2, concurrency=2
    )


@pytest.fixture
def demo(repo) -> DemoIntegrationService:
    return DemoIntegrationService(repo, sync_delay_seconds=0)


@pytest.fixture
def service(repo, token_manager, orchestrator, demo, adapter) -> IntegrationService:
    return IntegrationService(
        repo,
        token_manager,
        orchestrator,
        demo,
        demo_mode=True,
        adapter_factory=lambda provider: adapter,
    )


@pytest.fixture
def webhook_processor(repo, orchestrator, token_manager) -> WebhookProcessor:
    """Processor using the real provider adapters (signature and parsing are local)."""
    return WebhookProcessor(repo, orchestrator, token_manager)

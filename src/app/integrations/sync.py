"""Sync orchestrator -- full, incremental and outbound CRM synchronization.

Full sync walks entity types in dependency order (companies, contacts,
leads, deals), draining each provider cursor before moving on. Records in a
page are mapped and upserted concurrently up to a fixed bound; entity types
are barriers so a contact never resolves its company before companies are in.

Per-record MappingError/ReconciliationError is counted as failed and never
aborts the run. Anything raised while talking to the provider aborts the run
and moves the integration to ERROR (full) or records FAILED (incremental).
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import record_sync_counts, track_sync_run
from src.app.integrations.exceptions import (
    IntegrationNotActiveError,
    IntegrationNotFoundError,
    MappingError,
    ReconciliationError,
    SyncInProgressError,
    TokenRefreshError,
)
from src.app.integrations.mappers import MappedRecord, map_external_to_local
from src.app.integrations.oauth import TokenManager, refresh_failure_reason
from src.app.integrations.providers import get_provider_adapter
from src.app.integrations.providers.base import CRMProviderAdapter
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    SYNC_ALL_ENTITIES,
    SYNC_ORDER,
    AccessToken,
    CRMProvider,
    EntityType,
    ExternalRecord,
    FetchOptions,
    IntegrationRead,
    IntegrationStatus,
    LastSyncStatus,
    MappedContact,
    MappedDeal,
    MappedLead,
    SyncCounts,
    SyncDirection,
    SyncLogRead,
    SyncLogStatus,
    SyncOperation,
    SyncRunResult,
    utc_now,
)

logger = structlog.get_logger(__name__)

# Watermark for an integration that has never synced
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"
FAILED = "failed"

# Mapped fields that are link hints, not columns
_LINK_FIELDS = {
    "external_id",
    "external_source",
    "external_company_id",
    "external_contact_id",
    "external_stage_id",
    "stage_name",
}


def tally(counts: SyncCounts, outcome: str) -> None:
    counts.processed += 1
    setattr(counts, outcome, getattr(counts, outcome) + 1)


def failure_reason(exc: BaseException) -> str:
    """last_sync_error text; refresh failures keep the token manager's wording."""
    if isinstance(exc, asyncio.CancelledError):
        return "Sync was cancelled"
    if isinstance(exc, TokenRefreshError):
        return refresh_failure_reason(exc)
    return str(exc)


def _result_status(counts: SyncCounts) -> LastSyncStatus:
    return LastSyncStatus.SUCCESS if counts.failed == 0 else LastSyncStatus.PARTIAL


class SyncOrchestrator:
    """Moves records between an organization's CRM and local storage.

    Args:
        repository: Integration and entity persistence.
        token_manager: Source of decrypted, refreshed credentials.
        adapter_factory: provider -> adapter; defaults to get_provider_adapter.
        page_size: Records requested per listing call.
        concurrency: Max records of one page reconciled at once.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        token_manager: TokenManager,
        adapter_factory: Callable[[CRMProvider], CRMProviderAdapter] | None = None,
        page_size: int = 100,
        concurrency: int = 5,
    ) -> None:
        self._repository = repository
        self._tokens = token_manager
        self._adapter_factory = adapter_factory or get_provider_adapter
        self._page_size = page_size
        self._concurrency = max(1, concurrency)
        # Serializes default-stage creation for deals reconciled in parallel
        self._stage_locks: dict[str, asyncio.Lock] = {}

    # ── Full Sync ───────────────────────────────────────────────────────────

    async def run_full_sync(self, organization_id: str) -> SyncRunResult:
        """List every record of every entity type and reconcile it locally.

        Once the SYNCING lock is taken, any failure moves the integration to
        ERROR and fails the log, so the lock is never left behind.

        Raises:
            IntegrationNotFoundError: No integration for the organization.
            SyncInProgressError: Another run holds the integration.
            IntegrationNotActiveError: Integration is neither CONNECTED nor SYNCING.
        """
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)

        if not await self._repository.try_begin_sync(integration.id):
            current = await self._repository.get_integration(organization_id)
            status = (current or integration).status
            if status == IntegrationStatus.SYNCING:
                logger.info("sync.full_declined", organization_id=organization_id)
                raise SyncInProgressError(organization_id)
            raise IntegrationNotActiveError(organization_id, status.value)

        provider = integration.provider
        log: SyncLogRead | None = None
        totals = SyncCounts()
        by_entity: dict[str, SyncCounts] = {}
        async with track_sync_run(provider.value, SyncOperation.FULL_SYNC.value) as tracker:
            try:
                log = await self._repository.create_sync_log(
                    integration.id,
                    SYNC_ALL_ENTITIES,
                    SyncOperation.FULL_SYNC,
                    SyncDirection.INBOUND,
                )
                logger.info(
                    "sync.full_started",
                    organization_id=organization_id,
                    provider=provider.value,
                    sync_log_id=log.id,
                )
                adapter = self._adapter_factory(provider)
                token = await self._tokens.access_token_for(integration)
                for entity_type in SYNC_ORDER:
                    counts = await self._drain_entity(integration, adapter, token, entity_type)
                    by_entity[entity_type.value] = counts
                    totals.merge(counts)
                    record_sync_counts(provider.value, entity_type.value, counts)

                status = _result_status(totals)
                tracker["status"] = status.value
                await self._repository.update_integration(
                    integration.id,
                    status=IntegrationStatus.CONNECTED,
                    last_sync_at=utc_now(),
                    last_sync_status=status,
                    last_sync_error=None,
                )
                await self._repository.complete_sync_log(
                    log.id,
                    SyncLogStatus.COMPLETED,
                    totals,
                    metadata=self._entity_metadata(by_entity),
                )
            except (Exception, asyncio.CancelledError) as exc:
                reason = failure_reason(exc)
                await self._repository.update_integration(
                    integration.id,
                    status=IntegrationStatus.ERROR,
                    last_sync_status=LastSyncStatus.FAILED,
                    last_sync_error=reason,
                )
                if log is not None:
                    await self._repository.complete_sync_log(
                        log.id,
                        SyncLogStatus.FAILED,
                        totals,
                        error_message=reason,
                        metadata=self._entity_metadata(by_entity),
                    )
                logger.error(
                    "sync.full_failed",
                    organization_id=organization_id,
                    provider=provider.value,
                    error=reason,
                )
                raise

        logger.info(
            "sync.full_completed",
            organization_id=organization_id,
            provider=provider.value,
            status=status.value,
            **totals.model_dump(),
        )
        return SyncRunResult(
            sync_log_id=log.id,
            operation=SyncOperation.FULL_SYNC,
            status=status,
            counts=totals,
            by_entity=by_entity,
        )

    async def _drain_entity(
        self,
        integration: IntegrationRead,
        adapter: CRMProviderAdapter,
        token: AccessToken,
        entity_type: EntityType,
    ) -> SyncCounts:
        counts = SyncCounts()
        synced_at = utc_now()
        cursor: str | None = None
        while True:
            page = await adapter.fetch_records(
                entity_type,
                token.access_token,
                FetchOptions(limit=self._page_size, cursor=cursor),
                instance_url=token.instance_url,
            )
            await self._apply_page(integration, entity_type, page.records, counts, synced_at)
            cursor = page.next_cursor
            if not cursor:
                return counts

    # ── Incremental Sync ────────────────────────────────────────────────────

    async def run_incremental_sync(self, organization_id: str) -> SyncRunResult:
        """Reconcile records modified since the last sync watermark.

        Does not take the SYNCING lock. The watermark always advances to the
        completion time, not to the newest record seen.
        """
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)
        if integration.status == IntegrationStatus.SYNCING:
            raise SyncInProgressError(organization_id)
        if integration.status != IntegrationStatus.CONNECTED:
            raise IntegrationNotActiveError(organization_id, integration.status.value)

        provider = integration.provider
        since = integration.last_sync_at or EPOCH
        log = await self._repository.create_sync_log(
            integration.id,
            SYNC_ALL_ENTITIES,
            SyncOperation.INCREMENTAL,
            SyncDirection.INBOUND,
            metadata={"since": since.isoformat()},
        )
        logger.info(
            "sync.incremental_started",
            organization_id=organization_id,
            provider=provider.value,
            since=since.isoformat(),
        )

        totals = SyncCounts()
        by_entity: dict[str, SyncCounts] = {}
        async with track_sync_run(provider.value, SyncOperation.INCREMENTAL.value) as tracker:
            try:
                adapter = self._adapter_factory(provider)
                token = await self._tokens.access_token_for(integration)
                synced_at = utc_now()
                for entity_type in SYNC_ORDER:
                    records = await adapter.fetch_records_modified_since(
                        entity_type,
                        token.access_token,
                        since,
                        instance_url=token.instance_url,
                    )
                    counts = SyncCounts()
                    await self._apply_page(integration, entity_type, records, counts, synced_at)
                    by_entity[entity_type.value] = counts
                    totals.merge(counts)
                    record_sync_counts(provider.value, entity_type.value, counts)
            except Exception as exc:
                reason = failure_reason(exc)
                await self._repository.complete_sync_log(
                    log.id,
                    SyncLogStatus.FAILED,
                    totals,
                    error_message=reason,
                    metadata=self._entity_metadata(by_entity),
                )
                await self._repository.update_integration(
                    integration.id,
                    last_sync_status=LastSyncStatus.FAILED,
                    last_sync_error=reason,
                )
                logger.error(
                    "sync.incremental_failed",
                    organization_id=organization_id,
                    provider=provider.value,
                    error=reason,
                )
                raise

            status = _result_status(totals)
            tracker["status"] = status.value
            await self._repository.update_integration(
                integration.id,
                last_sync_at=utc_now(),
                last_sync_status=status,
                last_sync_error=None,
            )
            await self._repository.complete_sync_log(
                log.id,
                SyncLogStatus.COMPLETED,
                totals,
                metadata=self._entity_metadata(by_entity),
            )

        logger.info(
            "sync.incremental_completed",
            organization_id=organization_id,
            status=status.value,
            **totals.model_dump(),
        )
        return SyncRunResult(
            sync_log_id=log.id,
            operation=SyncOperation.INCREMENTAL,
            status=status,
            counts=totals,
            by_entity=by_entity,
        )

    # ── Outbound Push ───────────────────────────────────────────────────────

    async def push_to_crm(
        self,
        organization_id: str,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
    ) -> SyncRunResult:
        """Write allow-listed local fields to one CRM record.

        No retry beyond the adapter's rate-limit handling; failures complete
        the log as failed and propagate.
        """
        entity_type = EntityType(entity_type)
        token = await self._tokens.get_valid_access_token(organization_id)
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)

        log = await self._repository.create_sync_log(
            integration.id,
            entity_type.value,
            SyncOperation.PUSH,
            SyncDirection.OUTBOUND,
            metadata={"external_id": external_id, "fields": fields},
        )
        counts = SyncCounts(processed=1)
        try:
            adapter = self._adapter_factory(integration.provider)
            await adapter.update_record(
                entity_type,
                token.access_token,
                external_id,
                fields,
                instance_url=token.instance_url,
            )
        except Exception as exc:
            counts.failed = 1
            await self._repository.complete_sync_log(
                log.id, SyncLogStatus.FAILED, counts, error_message=str(exc)
            )
            logger.error(
                "sync.push_failed",
                organization_id=organization_id,
                entity_type=entity_type.value,
                external_id=external_id,
                error=str(exc),
            )
            raise

        counts.updated = 1
        await self._repository.complete_sync_log(log.id, SyncLogStatus.COMPLETED, counts)
        logger.info(
            "sync.push_completed",
            organization_id=organization_id,
            entity_type=entity_type.value,
            external_id=external_id,
        )
        return SyncRunResult(
            sync_log_id=log.id,
            operation=SyncOperation.PUSH,
            status=LastSyncStatus.SUCCESS,
            counts=counts,
            by_entity={entity_type.value: counts},
        )

    # ── Reconciliation ──────────────────────────────────────────────────────

    async def _apply_page(
        self,
        integration: IntegrationRead,
        entity_type: EntityType,
        records: list[ExternalRecord],
        counts: SyncCounts,
        synced_at: datetime,
    ) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def reconcile(record: ExternalRecord) -> str:
            async with semaphore:
                try:
                    return await self.apply_record(integration, entity_type, record, synced_at)
                except (MappingError, ReconciliationError) as exc:
                    logger.warning(
                        "sync.record_failed",
                        organization_id=integration.organization_id,
                        entity_type=entity_type.value,
                        external_id=record.id,
                        error=str(exc),
                    )
                    return FAILED

        for outcome in await asyncio.gather(*(reconcile(r) for r in records)):
            tally(counts, outcome)

    async def apply_record(
        self,
        integration: IntegrationRead,
        entity_type: EntityType,
        record: ExternalRecord,
        synced_at: datetime | None = None,
    ) -> str:
        """Map one provider record and upsert it.

        Returns:
            "created", "updated" or "skipped".

        Raises:
            MappingError: Record could not be mapped.
            ReconciliationError: Record could not be stored.
        """
        mapped = map_external_to_local(
            integration.provider,
            entity_type,
            record,
            instance_url=integration.instance_url,
            synced_at=synced_at,
        )
        if isinstance(mapped, MappedLead) and not mapped.email:
            logger.debug("sync.lead_skipped_no_email", external_id=mapped.external_id)
            return SKIPPED

        values = await self._column_values(integration, mapped)
        create_only: dict[str, Any] = {}
        if isinstance(mapped, MappedDeal):
            existing = await self._repository.find_record_id(
                entity_type,
                integration.organization_id,
                mapped.external_id,
                integration.provider,
            )
            if existing is None:
                lock = self._stage_locks.setdefault(integration.organization_id, asyncio.Lock())
                async with lock:
                    stage_id = await self._repository.get_or_create_deal_stage(
                        integration.organization_id, mapped.stage_name
                    )
                create_only["stage_id"] = uuid.UUID(stage_id)

        _, created = await self._repository.upsert_record(
            entity_type,
            integration.organization_id,
            integration.provider,
            mapped.external_id,
            values,
            create_only,
        )
        return CREATED if created else UPDATED

    async def _column_values(
        self, integration: IntegrationRead, mapped: MappedRecord
    ) -> dict[str, Any]:
        values = mapped.model_dump(exclude=_LINK_FIELDS)
        values["sync_status"] = "SYNCED"
        # A record without a link reference leaves the stored link untouched
        if isinstance(mapped, (MappedContact, MappedDeal)) and mapped.external_company_id:
            values["company_id"] = await self._resolve(
                integration, EntityType.COMPANY, mapped.external_company_id
            )
        if isinstance(mapped, MappedDeal) and mapped.external_contact_id:
            values["contact_id"] = await self._resolve(
                integration, EntityType.CONTACT, mapped.external_contact_id
            )
        return values

    async def _resolve(
        self,
        integration: IntegrationRead,
        entity_type: EntityType,
        external_id: str | None,
    ) -> uuid.UUID | None:
        """Local id for a linked record; None when it has not been synced yet."""
        if not external_id:
            return None
        found = await self._repository.find_record_id(
            entity_type,
            integration.organization_id,
            external_id,
            integration.provider,
        )
        return uuid.UUID(found) if found else None

    @staticmethod
    def _entity_metadata(by_entity: dict[str, SyncCounts]) -> dict[str, Any]:
        return {"by_entity": {name: counts.model_dump() for name, counts in by_entity.items()}}

"""CRM integration repository -- async persistence for integrations, sync logs and synced entities.

Provides IntegrationRepository with the session_factory callable pattern.
Handles serialization between SQLAlchemy models and the Pydantic read schemas,
the compare-and-set sync lock, and idempotent upserts of canonical entities
keyed by (organization_id, external_id, external_source).

Any SQLAlchemyError raised while reconciling entity rows is surfaced as
ReconciliationError so the sync orchestrator can count it per record.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.integrations.exceptions import ReconciliationError
from src.app.integrations.models import (
    CompanyModel,
    ContactModel,
    DealModel,
    DealStageModel,
    IntegrationModel,
    LeadModel,
    SyncLogModel,
)
from src.app.integrations.schemas import (
    CRMProvider,
    EntityType,
    IntegrationRead,
    IntegrationStatus,
    LastSyncStatus,
    SyncCounts,
    SyncDirection,
    SyncLogRead,
    SyncLogStatus,
    SyncOperation,
)

logger = structlog.get_logger(__name__)

ENTITY_MODELS: dict[EntityType, type] = {
    EntityType.COMPANY: CompanyModel,
    EntityType.CONTACT: ContactModel,
    EntityType.LEAD: LeadModel,
    EntityType.DEAL: DealModel,
}

# Used when an organization has no pipeline yet
DEFAULT_STAGE_NAME = "Prospecting"
DEFAULT_STAGE_ORDER = 0
DEFAULT_STAGE_PROBABILITY = 10

_EXTERNAL_REFERENCE_CLEARED = {
    "external_id": None,
    "external_source": None,
    "external_url": None,
    "sync_status": None,
    "last_synced_at": None,
}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_integration(model: IntegrationModel) -> IntegrationRead:
    """Convert IntegrationModel to IntegrationRead schema."""
    return IntegrationRead(
        id=str(model.id),
        organization_id=model.organization_id,
        provider=CRMProvider(model.provider),
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        token_expires_at=model.token_expires_at,
        instance_url=model.instance_url,
        status=IntegrationStatus(model.status),
        last_sync_at=model.last_sync_at,
        last_sync_status=LastSyncStatus(model.last_sync_status) if model.last_sync_status else None,
        last_sync_error=model.last_sync_error,
        webhook_id=model.webhook_id,
        webhook_secret=model.webhook_secret,
        is_demo=bool(model.is_demo),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_sync_log(model: SyncLogModel) -> SyncLogRead:
    """Convert SyncLogModel to SyncLogRead schema."""
    return SyncLogRead(
        id=str(model.id),
        integration_id=str(model.integration_id),
        entity_type=model.entity_type,
        operation=SyncOperation(model.operation),
        direction=SyncDirection(model.direction),
        status=SyncLogStatus(model.status),
        records_processed=model.records_processed or 0,
        records_created=model.records_created or 0,
        records_updated=model.records_updated or 0,
        records_skipped=model.records_skipped or 0,
        records_failed=model.records_failed or 0,
        started_at=model.started_at,
        completed_at=model.completed_at,
        error_message=model.error_message,
        metadata=model.metadata_json or {},
    )


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


# ── Repository ──────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async persistence for CRM integrations and the entities they sync.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Integrations ────────────────────────────────────────────────────────

    async def get_integration(self, organization_id: str) -> IntegrationRead | None:
        """Get the organization's integration, if any."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.organization_id == organization_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_integration(model) if model else None

    async def get_integration_by_id(self, integration_id: str) -> IntegrationRead | None:
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, uuid.UUID(integration_id))
            return _model_to_integration(model) if model else None

    async def list_integrations_for_provider(
        self, provider: CRMProvider
    ) -> list[IntegrationRead]:
        """List non-demo integrations of a provider that hold a webhook secret."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.provider == provider.value,
                IntegrationModel.webhook_secret.is_not(None),
                IntegrationModel.is_demo.is_(False),
            )
            result = await session.execute(stmt)
            return [_model_to_integration(m) for m in result.scalars().all()]

    async def save_integration_tokens(
        self,
        organization_id: str,
        provider: CRMProvider,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        instance_url: str | None,
    ) -> IntegrationRead:
        """Upsert encrypted tokens for the organization.

        Marks the integration CONNECTED and clears any previous error.
        """
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.organization_id == organization_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = IntegrationModel(organization_id=organization_id)
                session.add(model)
            model.provider = provider.value
            model.access_token = access_token
            model.refresh_token = refresh_token
            model.token_expires_at = token_expires_at
            model.instance_url = instance_url
            model.status = IntegrationStatus.CONNECTED.value
            model.last_sync_error = None
            model.is_demo = False
            await session.commit()
            await session.refresh(model)
            return _model_to_integration(model)

    async def create_integration(
        self, organization_id: str, provider: CRMProvider, **fields: Any
    ) -> IntegrationRead:
        async for session in self._session_factory():
            model = IntegrationModel(
                organization_id=organization_id,
                provider=provider.value,
                **{k: _enum_value(v) for k, v in fields.items()},
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_integration(model)

    async def update_integration(
        self, integration_id: str, **fields: Any
    ) -> IntegrationRead | None:
        """Apply field updates. Enum values are stored by value."""
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, uuid.UUID(integration_id))
            if model is None:
                return None
            for key, value in fields.items():
                setattr(model, key, _enum_value(value))
            await session.commit()
            await session.refresh(model)
            return _model_to_integration(model)

    async def try_begin_sync(self, integration_id: str) -> bool:
        """Atomically move CONNECTED -> SYNCING.

        Returns:
            True if this caller acquired the sync, False if the row was not CONNECTED.
        """
        async for session in self._session_factory():
            stmt = (
                update(IntegrationModel)
                .where(
                    IntegrationModel.id == uuid.UUID(integration_id),
                    IntegrationModel.status == IntegrationStatus.CONNECTED.value,
                )
                .values(status=IntegrationStatus.SYNCING.value)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def delete_integration(self, integration_id: str) -> None:
        """Delete the integration and its sync history."""
        async for session in self._session_factory():
            key = uuid.UUID(integration_id)
            await session.execute(delete(SyncLogModel).where(SyncLogModel.integration_id == key))
            await session.execute(delete(IntegrationModel).where(IntegrationModel.id == key))
            await session.commit()

    # ── Sync Logs ───────────────────────────────────────────────────────────

    async def create_sync_log(
        self,
        integration_id: str,
        entity_type: str,
        operation: SyncOperation,
        direction: SyncDirection,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogRead:
        async for session in self._session_factory():
            model = SyncLogModel(
                integration_id=uuid.UUID(integration_id),
                entity_type=_enum_value(entity_type),
                operation=operation.value,
                direction=direction.value,
                status=SyncLogStatus.STARTED.value,
                started_at=datetime.now(timezone.utc),
                metadata_json=metadata or {},
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_log(model)

    async def complete_sync_log(
        self,
        log_id: str,
        status: SyncLogStatus,
        counts: SyncCounts,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogRead | None:
        """Finalize a started log. A log that is already final is left untouched."""
        async for session in self._session_factory():
            model = await session.get(SyncLogModel, uuid.UUID(log_id))
            if model is None:
                return None
            if model.status != SyncLogStatus.STARTED.value:
                logger.warning("sync_log.already_completed", log_id=log_id, status=model.status)
                return _model_to_sync_log(model)
            model.status = status.value
            model.records_processed = counts.processed
            model.records_created = counts.created
            model.records_updated = counts.updated
            model.records_skipped = counts.skipped
            model.records_failed = counts.failed
            model.completed_at = datetime.now(timezone.utc)
            model.error_message = error_message
            if metadata:
                model.metadata_json = {**(model.metadata_json or {}), **metadata}
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_log(model)

    async def list_sync_logs(self, integration_id: str, limit: int = 20) -> list[SyncLogRead]:
        """Most recent logs first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncLogModel)
                .where(SyncLogModel.integration_id == uuid.UUID(integration_id))
                .order_by(SyncLogModel.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_log(m) for m in result.scalars().all()]

    # ── Synced Entities ─────────────────────────────────────────────────────

    async def find_record_id(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_id: str,
        external_source: CRMProvider,
    ) -> str | None:
        """Resolve a local id by external reference."""
        model_cls = ENTITY_MODELS[entity_type]
        try:
            async for session in self._session_factory():
                stmt = select(model_cls.id).where(
                    model_cls.organization_id == organization_id,
                    model_cls.external_id == external_id,
                    model_cls.external_source == external_source.value,
                )
                result = await session.execute(stmt)
                found = result.scalar_one_or_none()
                return str(found) if found else None
        except SQLAlchemyError as exc:
            raise ReconciliationError(
                f"Lookup of {entity_type.value} {external_id} failed: {exc}"
            ) from exc

    async def upsert_record(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_source: CRMProvider,
        external_id: str,
        values: dict[str, Any],
        create_only: dict[str, Any] | None = None,
    ) -> tuple[str, bool]:
        """Create or update the row matching the external reference.

        Args:
            values: Columns written on both create and update.
            create_only: Columns written only when the row is new.

        Returns:
            (local id, created flag).

        Raises:
            ReconciliationError: Any database failure.
        """
        model_cls = ENTITY_MODELS[entity_type]
        try:
            async for session in self._session_factory():
                stmt = select(model_cls).where(
                    model_cls.organization_id == organization_id,
                    model_cls.external_id == external_id,
                    model_cls.external_source == external_source.value,
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                created = model is None
                if created:
                    model = model_cls(
                        organization_id=organization_id,
                        external_id=external_id,
                        external_source=external_source.value,
                        **{k: _enum_value(v) for k, v in (create_only or {}).items()},
                    )
                    session.add(model)
                for key, value in values.items():
                    setattr(model, key, _enum_value(value))
                await session.commit()
                await session.refresh(model)
                return str(model.id), created
        except SQLAlchemyError as exc:
            raise ReconciliationError(
                f"Upsert of {entity_type.value} {external_id} failed: {exc}"
            ) from exc

    async def create_record(
        self, entity_type: EntityType, organization_id: str, values: dict[str, Any]
    ) -> str:
        """Insert a local entity row (demo seeding)."""
        model_cls = ENTITY_MODELS[entity_type]
        try:
            async for session in self._session_factory():
                model = model_cls(
                    organization_id=organization_id,
                    **{k: _enum_value(v) for k, v in values.items()},
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return str(model.id)
        except SQLAlchemyError as exc:
            raise ReconciliationError(f"Insert of {entity_type.value} failed: {exc}") from exc

    async def get_or_create_deal_stage(
        self, organization_id: str, preferred_name: str | None = None
    ) -> str:
        """Resolve the stage for a new deal.

        Order: stage named ``preferred_name``; else the lowest-ordered stage;
        else a newly created default stage.
        """
        try:
            async for session in self._session_factory():
                if preferred_name:
                    stmt = select(DealStageModel.id).where(
                        DealStageModel.organization_id == organization_id,
                        DealStageModel.name == preferred_name,
                    )
                    found = (await session.execute(stmt)).scalars().first()
                    if found:
                        return str(found)

                stmt = (
                    select(DealStageModel.id)
                    .where(DealStageModel.organization_id == organization_id)
                    .order_by(DealStageModel.order.asc())
                    .limit(1)
                )
                found = (await session.execute(stmt)).scalar_one_or_none()
                if found:
                    return str(found)

                stage = DealStageModel(
                    organization_id=organization_id,
                    name=DEFAULT_STAGE_NAME,
                    order=DEFAULT_STAGE_ORDER,
                    probability=DEFAULT_STAGE_PROBABILITY,
                )
                session.add(stage)
                await session.commit()
                await session.refresh(stage)
                logger.info("deal_stage.default_created", organization_id=organization_id)
                return str(stage.id)
        except SQLAlchemyError as exc:
            raise ReconciliationError(f"Deal stage resolution failed: {exc}") from exc

    async def seed_deal_pipeline(
        self, organization_id: str, stages: list[tuple[str, int, int]]
    ) -> str:
        """Create (name, order, probability) stages when the organization has none.

        Returns:
            Id of the organization's lowest-ordered stage.
        """
        async for session in self._session_factory():
            stmt = (
                select(DealStageModel)
                .where(DealStageModel.organization_id == organization_id)
                .order_by(DealStageModel.order.asc())
                .limit(1)
            )
            first = (await session.execute(stmt)).scalar_one_or_none()
            if first is not None:
                return str(first.id)

            created = [
                DealStageModel(
                    organization_id=organization_id,
                    name=name,
                    order=order,
                    probability=probability,
                )
                for name, order, probability in stages
            ]
            session.add_all(created)
            await session.commit()
            first = min(created, key=lambda s: s.order)
            await session.refresh(first)
            return str(first.id)

    async def clear_external_reference(
        self,
        entity_type: EntityType,
        organization_id: str,
        external_id: str,
        external_source: CRMProvider,
    ) -> bool:
        """Detach one local row from its CRM record. Returns True if a row matched."""
        model_cls = ENTITY_MODELS[entity_type]
        try:
            async for session in self._session_factory():
                stmt = (
                    update(model_cls)
                    .where(
                        model_cls.organization_id == organization_id,
                        model_cls.external_id == external_id,
                        model_cls.external_source == external_source.value,
                    )
                    .values(**_EXTERNAL_REFERENCE_CLEARED)
                )
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise ReconciliationError(
                f"Clearing {entity_type.value} {external_id} failed: {exc}"
            ) from exc

    async def clear_all_external_references(
        self, organization_id: str, external_source: CRMProvider
    ) -> int:
        """Detach every local entity synced from the provider. Rows are kept."""
        cleared = 0
        async for session in self._session_factory():
            for model_cls in ENTITY_MODELS.values():
                stmt = (
                    update(model_cls)
                    .where(
                        model_cls.organization_id == organization_id,
                        model_cls.external_source == external_source.value,
                    )
                    .values(**_EXTERNAL_REFERENCE_CLEARED)
                )
                result = await session.execute(stmt)
                cleared += result.rowcount or 0
            await session.commit()
        return cleared

    async def touch_synced_records(
        self, organization_id: str, external_source: CRMProvider, synced_at: datetime
    ) -> int:
        """Stamp last_synced_at on every entity synced from the provider."""
        touched = 0
        async for session in self._session_factory():
            for model_cls in ENTITY_MODELS.values():
                stmt = (
                    update(model_cls)
                    .where(
                        model_cls.organization_id == organization_id,
                        model_cls.external_source == external_source.value,
                    )
                    .values(last_synced_at=synced_at)
                )
                result = await session.execute(stmt)
                touched += result.rowcount or 0
            await session.commit()
        return touched

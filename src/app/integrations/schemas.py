"""Pydantic schemas for CRM integrations -- provider I/O, canonical entities, sync records.

Defines all structured types shared by adapters, mappers, the token manager
and the sync orchestrator:
- Enums: CRMProvider, EntityType, IntegrationStatus, LastSyncStatus, SyncOperation,
  SyncDirection, SyncLogStatus, WebhookAction, LeadSource, LeadStatus, DealStatus
- Provider I/O: OAuthTokens, FetchOptions, ExternalRecord, PaginatedRecords,
  WebhookRegistration, WebhookEvent
- Canonical entities: MappedLead, MappedContact, MappedCompany, MappedDeal
- Persistence reads: IntegrationRead, SyncLogRead
- Results: AccessToken, SyncCounts, SyncRunResult, WebhookResult, IntegrationStatusRead,
  IntegrationCheck
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Log entity_type for runs spanning every entity type
SYNC_ALL_ENTITIES = "all"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class CRMProvider(str, Enum):
    """Supported external CRMs."""

    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"
    ATTIO = "attio"


class EntityType(str, Enum):
    """Canonical entity kinds synchronized with a CRM."""

    LEAD = "lead"
    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"


# Dependency order for full and incremental syncs
SYNC_ORDER: tuple[EntityType, ...] = (
    EntityType.COMPANY,
    EntityType.CONTACT,
    EntityType.LEAD,
    EntityType.DEAL,
)


class IntegrationStatus(str, Enum):
    """Lifecycle status of an organization's CRM integration."""

    CONNECTED = "CONNECTED"
    SYNCING = "SYNCING"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class LastSyncStatus(str, Enum):
    """Outcome of the most recent sync run."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class SyncOperation(str, Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL = "incremental"
    PUSH = "push"
    WEBHOOK = "webhook"


class SyncDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SyncLogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class LeadSource(str, Enum):
    """Product vocabulary for where a lead came from."""

    WEBSITE = "WEBSITE"
    REFERRAL = "REFERRAL"
    LINKEDIN = "LINKEDIN"
    EVENT = "EVENT"
    COLD_OUTREACH = "COLD_OUTREACH"
    ADVERTISING = "ADVERTISING"
    OTHER = "OTHER"


class LeadStatus(str, Enum):
    """Product vocabulary for lead qualification state."""

    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    UNQUALIFIED = "UNQUALIFIED"
    CONVERTED = "CONVERTED"


class DealStatus(str, Enum):
    OPEN = "OPEN"
    WON = "WON"
    LOST = "LOST"


# ── Provider I/O ────────────────────────────────────────────────────────────


class OAuthTokens(BaseModel):
    """Token set returned by a code exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime
    instance_url: str | None = None
    token_type: str = "Bearer"


class FetchOptions(BaseModel):
    """Paging options for a record listing call."""

    limit: int = Field(default=100, ge=1)
    cursor: str | None = None
    modified_since: datetime | None = None


class ExternalRecord(BaseModel):
    """Provider-neutral raw record: id plus a flat property bag."""

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaginatedRecords(BaseModel):
    records: list[ExternalRecord] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


class WebhookRegistration(BaseModel):
    """Result of registering a webhook; webhook_id may be a provider placeholder."""

    webhook_id: str
    secret: str | None = None


class WebhookEvent(BaseModel):
    """One parsed inbound webhook notification."""

    event_type: str
    action: WebhookAction
    entity_type: EntityType | None = None
    external_id: str
    occurred_at: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] | None = None


class OAuthState(BaseModel):
    """Claims carried by a signed OAuth state token."""

    organization_id: str
    provider: CRMProvider
    timestamp: int
    nonce: str


# ── Canonical Entities ──────────────────────────────────────────────────────


class MappedEntity(BaseModel):
    """External reference fields shared by every canonical entity."""

    external_id: str
    external_source: CRMProvider
    external_url: str | None = None
    last_synced_at: datetime = Field(default_factory=utc_now)


class MappedLead(MappedEntity):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    source: LeadSource = LeadSource.OTHER
    status: LeadStatus = LeadStatus.NEW


class MappedContact(MappedEntity):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    job_title: str | None = None
    department: str | None = None
    linkedin_url: str | None = None
    external_company_id: str | None = None


class MappedCompany(MappedEntity):
    name: str
    domain: str | None = None
    industry: str | None = None
    size: str | None = None
    revenue: float | None = None
    website: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    description: str | None = None


class MappedDeal(MappedEntity):
    name: str
    value: float | None = None
    currency: str = "USD"
    status: DealStatus = DealStatus.OPEN
    probability: int | None = None
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    notes: str | None = None
    external_contact_id: str | None = None
    external_company_id: str | None = None
    external_stage_id: str | None = None
    stage_name: str | None = None


# ── Persistence Reads ───────────────────────────────────────────────────────


class IntegrationRead(BaseModel):
    """Integration row as seen by services. Token fields stay encrypted."""

    id: str
    organization_id: str
    provider: CRMProvider
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    instance_url: str | None = None
    status: IntegrationStatus = IntegrationStatus.CONNECTED
    last_sync_at: datetime | None = None
    last_sync_status: LastSyncStatus | None = None
    last_sync_error: str | None = None
    webhook_id: str | None = None
    webhook_secret: str | None = None
    is_demo: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SyncLogRead(BaseModel):
    id: str
    integration_id: str
    entity_type: str
    operation: SyncOperation
    direction: SyncDirection
    status: SyncLogStatus
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Results ─────────────────────────────────────────────────────────────────


class AccessToken(BaseModel):
    """Decrypted, currently valid credentials for a provider call."""

    access_token: str
    provider: CRMProvider
    instance_url: str | None = None


class SyncCounts(BaseModel):
    """Per-run record counters."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def merge(self, other: SyncCounts) -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed


class SyncRunResult(BaseModel):
    """Summary returned by every sync entry point."""

    sync_log_id: str
    operation: SyncOperation
    status: LastSyncStatus
    counts: SyncCounts = Field(default_factory=SyncCounts)
    by_entity: dict[str, SyncCounts] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    received: bool = True
    processed: int = 0
    failed: int = 0


class IntegrationStatusRead(BaseModel):
    """Status view for the integrations settings page."""

    connected: bool
    provider: CRMProvider | None = None
    status: IntegrationStatus | None = None
    last_sync_at: datetime | None = None
    last_sync_status: LastSyncStatus | None = None
    last_sync_error: str | None = None
    is_demo: bool = False
    recent_logs: list[SyncLogRead] = Field(default_factory=list)


class IntegrationCheck(BaseModel):
    """Lightweight presence check used by navigation and guards."""

    has_integration: bool
    provider: CRMProvider | None = None
    status: IntegrationStatus | None = None

"""Demo CRM integrations that run without provider credentials.

A demo integration is an ordinary integration row flagged is_demo, with
encrypted placeholder tokens and a deterministic seeded dataset. Its sync is
a timed state transition that touches the seeded rows; no adapter is called.
Callers see the same shapes and status transitions as the real path.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Any

import structlog

from src.app.integrations.encryption import encrypt
from src.app.integrations.exceptions import (
    IntegrationAlreadyExistsError,
    IntegrationNotActiveError,
    IntegrationNotFoundError,
    SyncInProgressError,
)
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    SYNC_ALL_ENTITIES,
    CRMProvider,
    DealStatus,
    EntityType,
    IntegrationRead,
    IntegrationStatus,
    LastSyncStatus,
    LeadSource,
    LeadStatus,
    SyncCounts,
    SyncDirection,
    SyncLogRead,
    SyncLogStatus,
    SyncOperation,
    SyncRunResult,
    utc_now,
)
from src.app.integrations.sync import failure_reason

logger = structlog.get_logger(__name__)

DEMO_ACCESS_TOKEN = "demo-access-token-not-real"
DEMO_REFRESH_TOKEN = "demo-refresh-token-not-real"
DEMO_TOKEN_LIFETIME = timedelta(days=365)

DEMO_BASE_URLS: dict[CRMProvider, str] = {
    CRMProvider.HUBSPOT: "https://app.hubspot.com",
    CRMProvider.SALESFORCE: "https://na1.salesforce.com",
    CRMProvider.ATTIO: "https://app.attio.com",
}

DEMO_PATHS: dict[EntityType, dict[CRMProvider, str]] = {
    EntityType.COMPANY: {
        CRMProvider.HUBSPOT: "/contacts/companies",
        CRMProvider.SALESFORCE: "/lightning/r/Account",
        CRMProvider.ATTIO: "/companies",
    },
    EntityType.CONTACT: {
        CRMProvider.HUBSPOT: "/contacts",
        CRMProvider.SALESFORCE: "/lightning/r/Contact",
        CRMProvider.ATTIO: "/people",
    },
    EntityType.LEAD: {
        CRMProvider.HUBSPOT: "/contacts",
        CRMProvider.SALESFORCE: "/lightning/r/Lead",
        CRMProvider.ATTIO: "/people",
    },
    EntityType.DEAL: {
        CRMProvider.HUBSPOT: "/contacts/deals",
        CRMProvider.SALESFORCE: "/lightning/r/Opportunity",
        CRMProvider.ATTIO: "/deals",
    },
}

DEMO_PIPELINE: list[tuple[str, int, int]] = [
    ("Prospecting", 0, 10),
    ("Qualification", 1, 25),
    ("Proposal", 2, 50),
    ("Negotiation", 3, 75),
    ("Closed Won", 4, 100),
]

# ── Seed Data ───────────────────────────────────────────────────────────────

DEMO_COMPANIES: list[dict[str, Any]] = [
    {"name": "Acme Corporation", "domain": "acme.com", "industry": "Technology",
     "size": "500-1000", "website": "https://acme.com",
     "city": "San Francisco", "state": "CA", "country": "USA"},
    {"name": "TechStart Inc", "domain": "techstart.io", "industry": "Software",
     "size": "50-200", "website": "https://techstart.io",
     "city": "Austin", "state": "TX", "country": "USA"},
    {"name": "Global Dynamics", "domain": "globaldynamics.com", "industry": "Manufacturing",
     "size": "1000-5000", "website": "https://globaldynamics.com",
     "city": "Chicago", "state": "IL", "country": "USA"},
    {"name": "Innovate Labs", "domain": "innovatelabs.co", "industry": "Research",
     "size": "10-50", "website": "https://innovatelabs.co",
     "city": "Boston", "state": "MA", "country": "USA"},
]

# (first, last, email, job title, company index)
DEMO_CONTACTS: list[tuple[str, str, str, str, int]] = [
    ("Sarah", "Chen", "sarah.chen@acme.com", "VP of Sales", 0),
    ("Michael", "Johnson", "m.johnson@acme.com", "Account Executive", 0),
    ("Emily", "Rodriguez", "emily@techstart.io", "CEO", 1),
    ("David", "Kim", "david.kim@techstart.io", "CTO", 1),
    ("Jennifer", "Smith", "jsmith@globaldynamics.com", "Procurement Manager", 2),
    ("Robert", "Williams", "rwilliams@globaldynamics.com", "Director of Operations", 2),
    ("Lisa", "Anderson", "lisa@innovatelabs.co", "Founder", 3),
]

# (first, last, email, company, job title, status, source)
DEMO_LEADS: list[tuple[str, str, str, str, str, LeadStatus, LeadSource]] = [
    ("Alex", "Thompson", "alex.t@prospect.com", "Prospect Corp",
     "Marketing Director", LeadStatus.NEW, LeadSource.WEBSITE),
    ("Maria", "Garcia", "mgarcia@newclient.io", "New Client Inc",
     "Head of Growth", LeadStatus.CONTACTED, LeadSource.LINKEDIN),
    ("James", "Wilson", "jwilson@enterprise.com", "Enterprise Solutions",
     "VP Engineering", LeadStatus.QUALIFIED, LeadSource.REFERRAL),
    ("Amanda", "Brown", "amanda@startup.co", "Startup Co",
     "Founder", LeadStatus.NEW, LeadSource.EVENT),
    ("Chris", "Lee", "chris.lee@bigco.com", "BigCo Industries",
     "Product Manager", LeadStatus.CONTACTED, LeadSource.COLD_OUTREACH),
]

# (name, value, contact index, company index)
DEMO_DEALS: list[tuple[str, float, int, int]] = [
    ("Acme Enterprise License", 50000, 0, 0),
    ("TechStart Annual Contract", 25000, 2, 1),
    ("Global Dynamics Implementation", 150000, 4, 2),
    ("Innovate Labs Pilot", 10000, 6, 3),
]

DEMO_RECORD_COUNT = len(DEMO_COMPANIES) + len(DEMO_CONTACTS) + len(DEMO_LEADS) + len(DEMO_DEALS)


def demo_url(provider: CRMProvider, entity_type: EntityType, index: int) -> str:
    """Record URL for the index-th (1-based) seeded record."""
    return f"{DEMO_BASE_URLS[provider]}{DEMO_PATHS[entity_type][provider]}/demo-{index}"


class DemoIntegrationService:
    """Creates and "syncs" demo integrations.

    Args:
        repository: Integration persistence.
        sync_delay_seconds: Artificial duration of a demo sync.
    """

    def __init__(self, repository: IntegrationRepository, sync_delay_seconds: float = 2.0) -> None:
        self._repository = repository
        self._sync_delay = sync_delay_seconds

    async def create_demo_integration(
        self, organization_id: str, provider: CRMProvider
    ) -> IntegrationRead:
        """Connect a demo integration and seed its dataset.

        Raises:
            IntegrationAlreadyExistsError: Organization already has an integration.
        """
        provider = CRMProvider(provider)
        if await self._repository.get_integration(organization_id) is not None:
            raise IntegrationAlreadyExistsError(organization_id)

        now = utc_now()
        integration = await self._repository.create_integration(
            organization_id,
            provider,
            access_token=encrypt(DEMO_ACCESS_TOKEN),
            refresh_token=encrypt(DEMO_REFRESH_TOKEN),
            token_expires_at=now + DEMO_TOKEN_LIFETIME,
            status=IntegrationStatus.CONNECTED,
            last_sync_at=now,
            last_sync_status=LastSyncStatus.SUCCESS,
            is_demo=True,
        )

        await self._seed(organization_id, provider)

        log = await self._repository.create_sync_log(
            integration.id,
            SYNC_ALL_ENTITIES,
            SyncOperation.FULL_SYNC,
            SyncDirection.INBOUND,
            metadata={"demo": True},
        )
        await self._repository.complete_sync_log(
            log.id,
            SyncLogStatus.COMPLETED,
            SyncCounts(processed=DEMO_RECORD_COUNT, created=DEMO_RECORD_COUNT),
        )
        logger.info(
            "demo.integration_created",
            organization_id=organization_id,
            provider=provider.value,
            records=DEMO_RECORD_COUNT,
        )
        return integration

    async def simulate_demo_sync(self, organization_id: str) -> SyncRunResult:
        """Pretend to sync: SYNCING for the configured delay, then CONNECTED."""
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)
        if not await self._repository.try_begin_sync(integration.id):
            if integration.status == IntegrationStatus.SYNCING:
                raise SyncInProgressError(organization_id)
            raise IntegrationNotActiveError(organization_id, integration.status.value)

        log: SyncLogRead | None = None
        try:
            log = await self._repository.create_sync_log(
                integration.id,
                SYNC_ALL_ENTITIES,
                SyncOperation.INCREMENTAL,
                SyncDirection.INBOUND,
                metadata={"demo": True},
            )
            await asyncio.sleep(self._sync_delay)

            now = utc_now()
            touched = await self._repository.touch_synced_records(
                organization_id, integration.provider, now
            )
            counts = SyncCounts(processed=touched, updated=touched)
            await self._repository.complete_sync_log(log.id, SyncLogStatus.COMPLETED, counts)
            await self._repository.update_integration(
                integration.id,
                status=IntegrationStatus.CONNECTED,
                last_sync_at=now,
                last_sync_status=LastSyncStatus.SUCCESS,
                last_sync_error=None,
            )
        except (Exception, asyncio.CancelledError) as exc:
            # Demo integrations return to CONNECTED on failure
            reason = failure_reason(exc)
            await self._repository.update_integration(
                integration.id,
                status=IntegrationStatus.CONNECTED,
                last_sync_status=LastSyncStatus.FAILED,
                last_sync_error=reason,
            )
            if log is not None:
                await self._repository.complete_sync_log(
                    log.id, SyncLogStatus.FAILED, SyncCounts(), error_message=reason
                )
            logger.error("demo.sync_failed", organization_id=organization_id, error=reason)
            raise

        logger.info("demo.sync_completed", organization_id=organization_id, touched=touched)
        return SyncRunResult(
            sync_log_id=log.id,
            operation=SyncOperation.INCREMENTAL,
            status=LastSyncStatus.SUCCESS,
            counts=counts,
        )

    async def _seed(self, organization_id: str, provider: CRMProvider) -> None:
        now = utc_now()

        def reference(entity_type: EntityType, index: int) -> dict[str, Any]:
            return {
                "external_id": f"demo-{entity_type.value}-{index}",
                "external_source": provider,
                "external_url": demo_url(provider, entity_type, index),
                "last_synced_at": now,
                "sync_status": "SYNCED",
            }

        company_ids: list[uuid.UUID] = []
        for index, company in enumerate(DEMO_COMPANIES, start=1):
            record_id = await self._repository.create_record(
                EntityType.COMPANY,
                organization_id,
                {**company, **reference(EntityType.COMPANY, index)},
            )
            company_ids.append(uuid.UUID(record_id))

        contact_ids: list[uuid.UUID] = []
        for index, (first, last, email, title, company) in enumerate(DEMO_CONTACTS, start=1):
            record_id = await self._repository.create_record(
                EntityType.CONTACT,
                organization_id,
                {
                    "first_name": first,
                    "last_name": last,
                    "email": email,
                    "job_title": title,
                    "company_id": company_ids[company],
                    **reference(EntityType.CONTACT, index),
                },
            )
            contact_ids.append(uuid.UUID(record_id))

        for index, (first, last, email, company, title, status, source) in enumerate(
            DEMO_LEADS, start=1
        ):
            await self._repository.create_record(
                EntityType.LEAD,
                organization_id,
                {
                    "first_name": first,
                    "last_name": last,
                    "email": email,
                    "company": company,
                    "job_title": title,
                    "status": status,
                    "source": source,
                    **reference(EntityType.LEAD, index),
                },
            )

        stage_id = uuid.UUID(
            await self._repository.seed_deal_pipeline(organization_id, DEMO_PIPELINE)
        )
        for index, (name, value, contact, company) in enumerate(DEMO_DEALS, start=1):
            await self._repository.create_record(
                EntityType.DEAL,
                organization_id,
                {
                    "name": name,
                    "value": value,
                    "status": DealStatus.OPEN,
                    "stage_id": stage_id,
                    "contact_id": contact_ids[contact],
                    "company_id": company_ids[company],
                    **reference(EntityType.DEAL, index),
                },
            )

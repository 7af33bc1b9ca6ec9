"""HubSpot record -> canonical entity mapping."""

from __future__ import annotations

from datetime import datetime

from src.app.integrations.mappers.common import (
    external_fields,
    lookup,
    to_bool,
    to_date,
    to_float,
    to_str,
)
from src.app.integrations.schemas import (
    CRMProvider,
    DealStatus,
    ExternalRecord,
    LeadSource,
    LeadStatus,
    MappedCompany,
    MappedContact,
    MappedDeal,
    MappedLead,
)

HUBSPOT_BASE_URL = "https://app.hubspot.com"

# hs_latest_source values
LEAD_SOURCE_MAP: dict[str, LeadSource] = {
    "ORGANIC_SEARCH": LeadSource.WEBSITE,
    "PAID_SEARCH": LeadSource.ADVERTISING,
    "SOCIAL_MEDIA": LeadSource.LINKEDIN,
    "PAID_SOCIAL": LeadSource.LINKEDIN,
    "EMAIL_MARKETING": LeadSource.OTHER,
    "REFERRALS": LeadSource.REFERRAL,
    "OTHER_CAMPAIGNS": LeadSource.OTHER,
    "DIRECT_TRAFFIC": LeadSource.WEBSITE,
    "OFFLINE_SOURCES": LeadSource.EVENT,
}

# hs_lead_status values
LEAD_STATUS_MAP: dict[str, LeadStatus] = {
    "NEW": LeadStatus.NEW,
    "OPEN": LeadStatus.NEW,
    "IN_PROGRESS": LeadStatus.CONTACTED,
    "ATTEMPTED_TO_CONTACT": LeadStatus.CONTACTED,
    "CONNECTED": LeadStatus.CONTACTED,
    "OPEN_DEAL": LeadStatus.QUALIFIED,
    "UNQUALIFIED": LeadStatus.UNQUALIFIED,
    "BAD_TIMING": LeadStatus.UNQUALIFIED,
}


def _url(kind: str, record_id: str) -> str:
    return f"{HUBSPOT_BASE_URL}/{kind}/{record_id}"


def map_deal_status(is_closed: object, is_closed_won: object) -> DealStatus:
    if to_bool(is_closed):
        return DealStatus.WON if to_bool(is_closed_won) else DealStatus.LOST
    return DealStatus.OPEN


def map_hubspot_to_lead(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedLead:
    props = record.properties
    return MappedLead(
        **external_fields(record, CRMProvider.HUBSPOT, _url("contacts", record.id), synced_at),
        email=to_str(props.get("email")),
        first_name=to_str(props.get("firstname")),
        last_name=to_str(props.get("lastname")),
        phone=to_str(props.get("phone")),
        company=to_str(props.get("company")),
        job_title=to_str(props.get("jobtitle")),
        source=lookup(LEAD_SOURCE_MAP, props.get("hs_latest_source"), LeadSource.OTHER, case_insensitive=True),
        status=lookup(LEAD_STATUS_MAP, props.get("hs_lead_status"), LeadStatus.NEW, case_insensitive=True),
    )


def map_hubspot_to_contact(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedContact:
    props = record.properties
    return MappedContact(
        **external_fields(record, CRMProvider.HUBSPOT, _url("contacts", record.id), synced_at),
        email=to_str(props.get("email")),
        first_name=to_str(props.get("firstname")),
        last_name=to_str(props.get("lastname")),
        phone=to_str(props.get("phone")),
        job_title=to_str(props.get("jobtitle")),
        department=to_str(props.get("department")),
        linkedin_url=to_str(props.get("linkedin_url")),
        external_company_id=to_str(props.get("associatedcompanyid")),
    )


def map_hubspot_to_company(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedCompany:
    props = record.properties
    return MappedCompany(
        **external_fields(record, CRMProvider.HUBSPOT, _url("companies", record.id), synced_at),
        name=to_str(props.get("name")) or "",
        domain=to_str(props.get("domain")),
        industry=to_str(props.get("industry")),
        size=to_str(props.get("numberofemployees")),
        revenue=to_float(props.get("annualrevenue")),
        website=to_str(props.get("website")),
        phone=to_str(props.get("phone")),
        address=to_str(props.get("address")),
        city=to_str(props.get("city")),
        state=to_str(props.get("state")),
        country=to_str(props.get("country")),
        description=to_str(props.get("description")),
    )


def map_hubspot_to_deal(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedDeal:
    props = record.properties
    # hs_deal_stage_probability is a 0-1 fraction
    probability = to_float(props.get("hs_deal_stage_probability"))
    if probability is not None and probability <= 1:
        probability *= 100
    return MappedDeal(
        **external_fields(record, CRMProvider.HUBSPOT, _url("deals", record.id), synced_at),
        name=to_str(props.get("dealname")) or "",
        value=to_float(props.get("amount")),
        currency=to_str(props.get("deal_currency_code")) or "USD",
        status=map_deal_status(props.get("hs_is_closed"), props.get("hs_is_closed_won")),
        probability=None if probability is None else int(round(probability)),
        expected_close_date=to_date(props.get("closedate")),
        notes=to_str(props.get("description")),
        external_contact_id=to_str(props.get("associatedcontactid")),
        external_company_id=to_str(props.get("associatedcompanyid")),
        external_stage_id=to_str(props.get("dealstage")),
        stage_name=to_str(props.get("dealstage")),
    )

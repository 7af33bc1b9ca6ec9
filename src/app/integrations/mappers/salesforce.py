"""Salesforce record -> canonical entity mapping.

Field names arrive lowercased by the adapter (``firstname``, ``accountid``).
Record URLs are built from the org instance URL, falling back to the login
host when it is unknown.
"""

from __future__ import annotations

from datetime import datetime

from src.app.integrations.mappers.common import (
    external_fields,
    lookup,
    to_bool,
    to_date,
    to_float,
    to_int,
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

SALESFORCE_FALLBACK_URL = "https://login.salesforce.com"

# Standard LeadSource picklist
LEAD_SOURCE_MAP: dict[str, LeadSource] = {
    "Web": LeadSource.WEBSITE,
    "Phone Inquiry": LeadSource.COLD_OUTREACH,
    "Partner Referral": LeadSource.REFERRAL,
    "Purchased List": LeadSource.OTHER,
    "Other": LeadSource.OTHER,
    "Advertisement": LeadSource.ADVERTISING,
    "Employee Referral": LeadSource.REFERRAL,
    "External Referral": LeadSource.REFERRAL,
    "Public_Relations": LeadSource.OTHER,
    "Trade Show": LeadSource.EVENT,
    "Word_of_mouth": LeadSource.REFERRAL,
    "Social Media": LeadSource.LINKEDIN,
}

# Standard Lead Status picklist
LEAD_STATUS_MAP: dict[str, LeadStatus] = {
    "Open - Not Contacted": LeadStatus.NEW,
    "Working - Contacted": LeadStatus.CONTACTED,
    "Closed - Converted": LeadStatus.CONVERTED,
    "Closed - Not Converted": LeadStatus.UNQUALIFIED,
    "New": LeadStatus.NEW,
    "Contacted": LeadStatus.CONTACTED,
    "Qualified": LeadStatus.QUALIFIED,
    "Unqualified": LeadStatus.UNQUALIFIED,
}


def _url(instance_url: str | None, record_id: str) -> str:
    base = (instance_url or SALESFORCE_FALLBACK_URL).rstrip("/")
    return f"{base}/{record_id}"


def map_deal_status(is_closed: object, is_won: object) -> DealStatus:
    if to_bool(is_closed):
        return DealStatus.WON if to_bool(is_won) else DealStatus.LOST
    return DealStatus.OPEN


def map_salesforce_to_lead(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedLead:
    props = record.properties
    return MappedLead(
        **external_fields(record, CRMProvider.SALESFORCE, _url(instance_url, record.id), synced_at),
        email=to_str(props.get("email")),
        first_name=to_str(props.get("firstname")),
        last_name=to_str(props.get("lastname")),
        phone=to_str(props.get("phone")),
        company=to_str(props.get("company")),
        job_title=to_str(props.get("title")),
        source=lookup(LEAD_SOURCE_MAP, props.get("leadsource"), LeadSource.OTHER),
        status=lookup(LEAD_STATUS_MAP, props.get("status"), LeadStatus.NEW),
    )


def map_salesforce_to_contact(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedContact:
    props = record.properties
    return MappedContact(
        **external_fields(record, CRMProvider.SALESFORCE, _url(instance_url, record.id), synced_at),
        email=to_str(props.get("email")),
        first_name=to_str(props.get("firstname")),
        last_name=to_str(props.get("lastname")),
        phone=to_str(props.get("phone")),
        job_title=to_str(props.get("title")),
        department=to_str(props.get("department")),
        external_company_id=to_str(props.get("accountid")),
    )


def map_salesforce_to_company(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedCompany:
    props = record.properties
    return MappedCompany(
        **external_fields(record, CRMProvider.SALESFORCE, _url(instance_url, record.id), synced_at),
        name=to_str(props.get("name")) or "",
        website=to_str(props.get("website")),
        industry=to_str(props.get("industry")),
        size=to_str(props.get("numberofemployees")),
        revenue=to_float(props.get("annualrevenue")),
        phone=to_str(props.get("phone")),
        address=to_str(props.get("billingstreet")),
        city=to_str(props.get("billingcity")),
        state=to_str(props.get("billingstate")),
        country=to_str(props.get("billingcountry")),
        description=to_str(props.get("description")),
    )


def map_salesforce_to_deal(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedDeal:
    props = record.properties
    status = map_deal_status(props.get("isclosed"), props.get("iswon"))
    close_date = to_date(props.get("closedate"))
    return MappedDeal(
        **external_fields(record, CRMProvider.SALESFORCE, _url(instance_url, record.id), synced_at),
        name=to_str(props.get("name")) or "",
        value=to_float(props.get("amount")),
        status=status,
        probability=to_int(props.get("probability")),
        expected_close_date=close_date,
        actual_close_date=close_date if status != DealStatus.OPEN else None,
        notes=to_str(props.get("description")),
        external_contact_id=to_str(props.get("contactid")),
        external_company_id=to_str(props.get("accountid")),
        stage_name=to_str(props.get("stagename")),
    )

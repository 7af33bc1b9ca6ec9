"""Attio record -> canonical entity mapping.

Attio has no lead source or lead status attributes, so leads always map to
OTHER / NEW. Names and locations arrive as structured objects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.app.integrations.mappers.common import external_fields, to_date, to_float, to_str
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

ATTIO_BASE_URL = "https://app.attio.com"


def _url(kind: str, record_id: str) -> str:
    return f"{ATTIO_BASE_URL}/{kind}/{record_id}"


def parse_name(name: Any) -> tuple[str | None, str | None]:
    """Split a person name into (first, last)."""
    if isinstance(name, str):
        first, _, last = name.strip().partition(" ")
        return to_str(first), to_str(last)
    if isinstance(name, dict):
        first = to_str(name.get("first_name"))
        last = to_str(name.get("last_name"))
        if first is None and last is None and name.get("full_name"):
            return parse_name(name["full_name"])
        return first, last
    return None, None


def _first(value: Any, key: str) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        return to_str(value.get(key))
    return to_str(value)


def extract_email(value: Any) -> str | None:
    return _first(value, "email_address")


def extract_phone(value: Any) -> str | None:
    if isinstance(value, dict) and value.get("original_phone_number"):
        return to_str(value["original_phone_number"])
    return _first(value, "phone_number")


def extract_domain(value: Any) -> str | None:
    return _first(value, "domain")


def extract_category(value: Any) -> str | None:
    if isinstance(value, dict) and "option" in value:
        return _first(value.get("option"), "title")
    return _first(value, "name") or _first(value, "title")


def parse_location(value: Any) -> dict[str, str | None]:
    if not isinstance(value, dict):
        return {"city": None, "state": None, "country": None, "address": None}
    return {
        "city": to_str(value.get("city") or value.get("locality")),
        "state": to_str(value.get("state") or value.get("region")),
        "country": to_str(value.get("country") or value.get("country_code")),
        "address": to_str(value.get("line_1")),
    }


def map_status(value: Any) -> DealStatus:
    status = (to_str(value) or "").lower()
    if "won" in status or "closed" in status:
        return DealStatus.WON
    if "lost" in status:
        return DealStatus.LOST
    return DealStatus.OPEN


def map_attio_to_lead(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedLead:
    props = record.properties
    first_name, last_name = parse_name(props.get("name"))
    return MappedLead(
        **external_fields(record, CRMProvider.ATTIO, _url("people", record.id), synced_at),
        email=extract_email(props.get("email_addresses")),
        first_name=first_name,
        last_name=last_name,
        phone=extract_phone(props.get("phone_numbers")),
        job_title=to_str(props.get("job_title")),
        source=LeadSource.OTHER,
        status=LeadStatus.NEW,
    )


def map_attio_to_contact(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedContact:
    props = record.properties
    first_name, last_name = parse_name(props.get("name"))
    return MappedContact(
        **external_fields(record, CRMProvider.ATTIO, _url("people", record.id), synced_at),
        email=extract_email(props.get("email_addresses")),
        first_name=first_name,
        last_name=last_name,
        phone=extract_phone(props.get("phone_numbers")),
        job_title=to_str(props.get("job_title")),
        linkedin_url=to_str(props.get("linkedin")),
        external_company_id=_first(props.get("company"), "target_record_id"),
    )


def map_attio_to_company(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedCompany:
    props = record.properties
    location = parse_location(props.get("primary_location"))
    domain = extract_domain(props.get("domains"))
    return MappedCompany(
        **external_fields(record, CRMProvider.ATTIO, _url("companies", record.id), synced_at),
        name=to_str(props.get("name")) or "",
        domain=domain,
        industry=extract_category(props.get("categories")),
        description=to_str(props.get("description")),
        website=f"https://{domain}" if domain else None,
        **location,
    )


def map_attio_to_deal(
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedDeal:
    props = record.properties
    value = props.get("value")
    currency = "USD"
    if isinstance(value, dict):
        currency = to_str(value.get("currency_code")) or currency
        value = value.get("currency_value")
    status_name = to_str(props.get("stage")) or to_str(props.get("status"))
    return MappedDeal(
        **external_fields(record, CRMProvider.ATTIO, _url("deals", record.id), synced_at),
        name=to_str(props.get("name")) or "",
        value=to_float(value),
        currency=currency,
        status=map_status(status_name),
        expected_close_date=to_date(props.get("close_date")),
        external_company_id=_first(props.get("associated_company"), "target_record_id"),
        external_contact_id=_first(props.get("associated_people"), "target_record_id"),
        stage_name=status_name,
    )

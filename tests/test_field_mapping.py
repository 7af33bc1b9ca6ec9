"""Tests for provider -> canonical field mapping and value coercion."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from src.app.integrations.exceptions import MappingError
from src.app.integrations.mappers import MAPPERS, map_external_to_local
from src.app.integrations.mappers.attio import parse_name
from src.app.integrations.mappers.common import lookup, to_bool, to_date, to_float, to_str
from src.app.integrations.schemas import (
    CRMProvider,
    DealStatus,
    EntityType,
    ExternalRecord,
    LeadSource,
    LeadStatus,
    MappedCompany,
    MappedContact,
    MappedDeal,
    MappedLead,
)

SYNCED_AT = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _map(provider, entity_type, record_id="r-1", instance_url=None, **properties):
    return map_external_to_local(
        provider,
        entity_type,
        ExternalRecord(id=record_id, properties=properties),
        instance_url=instance_url,
        synced_at=SYNCED_AT,
    )


# ── Coercion Helpers ─────────────────────────────────────────────────────────


class TestCoercion:
    def test_to_str(self):
        """Blank strings become None; numbers are stringified."""
        assert to_str("  Acme ") == "Acme"
        assert to_str("   ") is None
        assert to_str(42) == "42"
        assert to_str({"a": 1}) is None

    def test_to_float(self):
        """Numeric strings parse; junk and booleans do not."""
        assert to_float("1250.50") == 1250.5
        assert to_float("") is None
        assert to_float("n/a") is None
        assert to_float(True) is None

    def test_to_bool(self):
        assert to_bool("true") is True
        assert to_bool("TRUE") is True
        assert to_bool("false") is False
        assert to_bool(None) is False

    def test_to_date(self):
        """ISO dates, ISO datetimes and epoch millis all yield a date."""
        assert to_date("2025-03-15") == date(2025, 3, 15)
        assert to_date("2025-03-15T10:00:00Z") == date(2025, 3, 15)
        assert to_date("1735689600000") == date(2025, 1, 1)
        assert to_date("soon") is None

    def test_lookup(self):
        table = {"REFERRALS": LeadSource.REFERRAL}
        assert lookup(table, "referrals", LeadSource.OTHER, case_insensitive=True) == LeadSource.REFERRAL
        assert lookup(table, "referrals", LeadSource.OTHER) == LeadSource.OTHER
        assert lookup(table, None, LeadSource.OTHER) == LeadSource.OTHER


# ── HubSpot ──────────────────────────────────────────────────────────────────


class TestHubSpotMapping:
    def test_lead(self):
        """Lead source and status are translated case-insensitively."""
        lead = _map(
            CRMProvider.HUBSPOT,
            EntityType.LEAD,
            email="ada@example.com",
            firstname="Ada",
            lastname="Lovelace",
            jobtitle="CTO",
            hs_latest_source="referrals",
            hs_lead_status="IN_PROGRESS",
        )
        assert isinstance(lead, MappedLead)
        assert lead.email == "ada@example.com"
        assert lead.job_title == "CTO"
        assert lead.source == LeadSource.REFERRAL
        assert lead.status == LeadStatus.CONTACTED
        assert lead.external_source == CRMProvider.HUBSPOT
        assert lead.external_url == "https://app.hubspot.com/contacts/r-1"
        assert lead.last_synced_at == SYNCED_AT

    def test_unknown_vocabulary_falls_back(self):
        """Unmapped source/status values default to OTHER / NEW."""
        lead = _map(CRMProvider.HUBSPOT, EntityType.LEAD, hs_latest_source="CARRIER_PIGEON")
        assert lead.source == LeadSource.OTHER
        assert lead.status == LeadStatus.NEW

    def test_contact_links_company(self):
        contact = _map(CRMProvider.HUBSPOT, EntityType.CONTACT, associatedcompanyid="101")
        assert isinstance(contact, MappedContact)
        assert contact.external_company_id == "101"

    def test_company(self):
        company = _map(
            CRMProvider.HUBSPOT,
            EntityType.COMPANY,
            name="Acme",
            domain="acme.com",
            annualrevenue="1000000",
            numberofemployees="250",
        )
        assert isinstance(company, MappedCompany)
        assert company.revenue == 1_000_000.0
        assert company.size == "250"
        assert company.external_url == "https://app.hubspot.com/companies/r-1"

    @pytest.mark.parametrize(
        ("is_closed", "is_won", "expected"),
        [
            ("false", "false", DealStatus.OPEN),
            ("true", "true", DealStatus.WON),
            ("true", "false", DealStatus.LOST),
        ],
    )
    def test_deal_status(self, is_closed, is_won, expected):
        deal = _map(
            CRMProvider.HUBSPOT,
            EntityType.DEAL,
            dealname="Deal",
            hs_is_closed=is_closed,
            hs_is_closed_won=is_won,
        )
        assert deal.status == expected

    def test_deal_probability_fraction_becomes_percent(self):
        """hs_deal_stage_probability 0.4 maps to 40."""
        deal = _map(
            CRMProvider.HUBSPOT,
            EntityType.DEAL,
            dealname="Deal",
            amount="5000",
            hs_deal_stage_probability="0.4",
            closedate="2025-09-30T00:00:00Z",
            dealstage="qualifiedtobuy",
            associatedcompanyid="101",
            associatedcontactid="501",
        )
        assert isinstance(deal, MappedDeal)
        assert deal.probability == 40
        assert deal.value == 5000.0
        assert deal.expected_close_date == date(2025, 9, 30)
        assert deal.stage_name == "qualifiedtobuy"
        assert deal.external_company_id == "101"
        assert deal.external_contact_id == "501"


# ── Salesforce ───────────────────────────────────────────────────────────────


class TestSalesforceMapping:
    def test_lead_picklists(self):
        lead = _map(
            CRMProvider.SALESFORCE,
            EntityType.LEAD,
            email="x@example.com",
            leadsource="Trade Show",
            status="Closed - Converted",
            instance_url="https://acme.my.salesforce.com",
        )
        assert lead.source == LeadSource.EVENT
        assert lead.status == LeadStatus.CONVERTED
        assert lead.external_url == "https://acme.my.salesforce.com/r-1"

    def test_url_falls_back_to_login_host(self):
        contact = _map(CRMProvider.SALESFORCE, EntityType.CONTACT, accountid="001A")
        assert contact.external_url == "https://login.salesforce.com/r-1"
        assert contact.external_company_id == "001A"

    def test_closed_deal_gets_actual_close_date(self):
        """Won/lost opportunities record the close date as actual close date."""
        deal = _map(
            CRMProvider.SALESFORCE,
            EntityType.DEAL,
            name="Renewal",
            isclosed=True,
            iswon=False,
            closedate="2025-04-01",
            probability=0,
            stagename="Closed Lost",
        )
        assert deal.status == DealStatus.LOST
        assert deal.actual_close_date == date(2025, 4, 1)
        assert deal.stage_name == "Closed Lost"

    def test_company_billing_address(self):
        company = _map(
            CRMProvider.SALESFORCE,
            EntityType.COMPANY,
            name="Acme",
            billingcity="Austin",
            billingcountry="USA",
        )
        assert company.city == "Austin"
        assert company.country == "USA"


# ── Attio ────────────────────────────────────────────────────────────────────


class TestAttioMapping:
    def test_parse_name(self):
        assert parse_name("Ada Lovelace") == ("Ada", "Lovelace")
        assert parse_name({"first_name": "Ada", "last_name": "Lovelace"}) == ("Ada", "Lovelace")
        assert parse_name({"full_name": "Grace Hopper"}) == ("Grace", "Hopper")
        assert parse_name(None) == (None, None)

    def test_lead_always_other_new(self):
        """Attio has no lead vocabulary."""
        lead = _map(
            CRMProvider.ATTIO,
            EntityType.LEAD,
            name={"first_name": "Ada", "last_name": "Lovelace"},
            email_addresses="ada@example.com",
        )
        assert lead.email == "ada@example.com"
        assert lead.first_name == "Ada"
        assert lead.source == LeadSource.OTHER
        assert lead.status == LeadStatus.NEW

    def test_company_location_and_domain(self):
        company = _map(
            CRMProvider.ATTIO,
            EntityType.COMPANY,
            name="Acme",
            domains="acme.com",
            primary_location={"locality": "Berlin", "country_code": "DE"},
        )
        assert company.domain == "acme.com"
        assert company.website == "https://acme.com"
        assert company.city == "Berlin"
        assert company.country == "DE"

    def test_deal_currency_value(self):
        deal = _map(
            CRMProvider.ATTIO,
            EntityType.DEAL,
            name="Pilot",
            value={"currency_value": 1200, "currency_code": "EUR"},
            stage="Won 🎉",
        )
        assert deal.value == 1200.0
        assert deal.currency == "EUR"
        assert deal.status == DealStatus.WON


# ── Failures ─────────────────────────────────────────────────────────────────


class TestMappingFailures:
    def test_record_without_id(self):
        """A record with an empty id cannot be mapped."""
        with pytest.raises(MappingError):
            _map(CRMProvider.HUBSPOT, EntityType.CONTACT, record_id="", email="x@example.com")

    def test_company_name_may_be_blank(self):
        """Missing names map to an empty string rather than failing."""
        company = _map(CRMProvider.HUBSPOT, EntityType.COMPANY)
        assert company.name == ""


# Every property name any mapper reads
_READ_PROPERTIES = (
    "accountid address amount annualrevenue associated_company associated_people "
    "associatedcompanyid associatedcontactid billingcity billingcountry billingstate "
    "billingstreet categories city close_date closedate company contactid country "
    "deal_currency_code dealname dealstage department description domain domains email "
    "email_addresses firstname hs_deal_stage_probability hs_is_closed hs_is_closed_won "
    "hs_latest_source hs_lead_status industry isclosed iswon job_title jobtitle lastname "
    "leadsource linkedin linkedin_url name numberofemployees phone phone_numbers "
    "primary_location probability stage stagename state status title value website"
).split()

_JUNK_VALUES = [{}, {"nested": [1]}, [], ["x", None], True, False, "", "   "]


class TestMappingIsTotal:
    @pytest.mark.parametrize("junk", _JUNK_VALUES, ids=repr)
    @pytest.mark.parametrize(
        "provider,entity_type", sorted(MAPPERS), ids=lambda v: getattr(v, "value", v)
    )
    def test_junk_property_values_still_map(self, provider, entity_type, junk):
        """Unexpected value shapes become empty fields instead of errors."""
        mapped = _map(
            provider,
            entity_type,
            instance_url="https://acme.my.salesforce.com",
            **{name: junk for name in _READ_PROPERTIES},
        )
        assert mapped.external_id == "r-1"
        assert mapped.external_source == provider

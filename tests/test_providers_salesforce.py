"""Tests for SalesforceAdapter against an httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from src.app.integrations.exceptions import ProviderApiError, TokenExchangeError
from src.app.integrations.providers.salesforce import (
    PLATFORM_EVENTS_WEBHOOK_ID,
    SalesforceAdapter,
)
from src.app.integrations.schemas import EntityType, FetchOptions, WebhookAction

INSTANCE = "https://acme.my.salesforce.com"


def _adapter(handler) -> SalesforceAdapter:
    return SalesforceAdapter(
        client_id="client-id",
        client_secret="client-secret",
        transport=httpx.MockTransport(handler),
    )


class TestSalesforceOAuth:
    @pytest.mark.asyncio
    async def test_exchange_code_keeps_instance_url(self):
        """The org instance URL from the token response is carried on the tokens."""

        def handler(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["authorization_code"]
            return httpx.Response(
                200,
                json={"access_token": "00D!token", "refresh_token": "rt", "instance_url": INSTANCE},
            )

        tokens = await _adapter(handler).exchange_code("code", "https://app.test/cb")
        assert tokens.instance_url == INSTANCE
        assert tokens.refresh_token == "rt"
        assert tokens.expires_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_exchange_without_instance_url_fails(self):
        """A token response lacking instance_url cannot be used."""
        adapter = _adapter(lambda r: httpx.Response(200, json={"access_token": "t"}))
        with pytest.raises(TokenExchangeError):
            await adapter.exchange_code("code", "https://app.test/cb")

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token(self):
        """Salesforce refresh responses omit the refresh token; the old one is kept."""
        adapter = _adapter(
            lambda r: httpx.Response(200, json={"access_token": "new", "instance_url": INSTANCE})
        )
        tokens = await adapter.refresh_token("original-refresh")
        assert tokens.access_token == "new"
        assert tokens.refresh_token == "original-refresh"


class TestSalesforceRecords:
    @pytest.mark.asyncio
    async def test_fetch_records_runs_soql_and_normalizes(self):
        """Listing runs SOQL on the instance and lowercases field names."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["host"] = request.url.host
            seen["path"] = request.url.path
            seen["q"] = request.url.params["q"]
            seen["options"] = request.headers.get("Sforce-Query-Options")
            return httpx.Response(
                200,
                json={
                    "records": [
                        {
                            "attributes": {"type": "Contact"},
                            "Id": "003A",
                            "FirstName": "Ada",
                            "AccountId": "001A",
                            "LastModifiedDate": "2025-01-02T03:04:05.000+0000",
                        }
                    ],
                    "nextRecordsUrl": "/services/data/v59.0/query/01gXX-2000",
                },
            )

        page = await _adapter(handler).fetch_records(
            EntityType.CONTACT, "t", FetchOptions(limit=2), instance_url=INSTANCE
        )

        assert seen["host"] == "acme.my.salesforce.com"
        assert seen["path"] == "/services/data/v59.0/query"
        assert seen["q"].startswith("SELECT Id, Email")
        assert "FROM Contact" in seen["q"]
        assert seen["q"].endswith("ORDER BY LastModifiedDate DESC")
        assert "LIMIT" not in seen["q"]
        assert seen["options"] == "batchSize=200"
        record = page.records[0]
        assert record.id == "003A"
        assert record.properties["firstname"] == "Ada"
        assert record.properties["accountid"] == "001A"
        assert "attributes" not in record.properties
        assert record.updated_at == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert page.next_cursor == "/services/data/v59.0/query/01gXX-2000"

    @pytest.mark.asyncio
    async def test_cursor_follows_next_records_url(self):
        """A cursor is fetched relative to the instance URL without a new query."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"records": [], "done": True})

        page = await _adapter(handler).fetch_records(
            EntityType.CONTACT,
            "t",
            FetchOptions(cursor="/services/data/v59.0/query/01gXX-2000"),
            instance_url=INSTANCE,
        )
        assert seen["path"] == "/services/data/v59.0/query/01gXX-2000"
        assert seen["params"] == {}
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_large_page_size_is_clamped_to_batch_maximum(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["options"] = request.headers.get("Sforce-Query-Options")
            return httpx.Response(200, json={"records": [], "done": True})

        await _adapter(handler).fetch_records(
            EntityType.DEAL, "t", FetchOptions(limit=5000), instance_url=INSTANCE
        )
        assert seen["options"] == "batchSize=2000"

    @pytest.mark.asyncio
    async def test_instance_url_is_required(self):
        """Data calls without an instance URL are ProviderApiError."""
        adapter = _adapter(lambda r: httpx.Response(200, json={}))
        with pytest.raises(ProviderApiError):
            await adapter.fetch_records(EntityType.LEAD, "t")

    @pytest.mark.asyncio
    async def test_modified_since_filters_on_last_modified(self):
        """Delta SOQL filters on LastModifiedDate as a UTC literal."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["q"] = request.url.params["q"]
            return httpx.Response(200, json={"records": []})

        await _adapter(handler).fetch_records_modified_since(
            EntityType.DEAL,
            "t",
            datetime(2025, 1, 1, tzinfo=timezone.utc),
            instance_url=INSTANCE,
        )
        assert "FROM Opportunity" in seen["q"]
        assert "WHERE LastModifiedDate > 2025-01-01T00:00:00Z" in seen["q"]

    @pytest.mark.asyncio
    async def test_update_record_patches_then_refetches(self):
        """PATCH answers 204, so the adapter re-reads the record."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path, request.content))
            if request.method == "PATCH":
                return httpx.Response(204)
            return httpx.Response(200, json={"Id": "006A", "Name": "Renamed", "Amount": 10})

        record = await _adapter(handler).update_record(
            EntityType.DEAL, "t", "006A", {"name": "Renamed", "stage_id": "x"}, instance_url=INSTANCE
        )

        assert calls[0][0] == "PATCH"
        assert calls[0][1] == "/services/data/v59.0/sobjects/Opportunity/006A"
        assert json.loads(calls[0][2]) == {"Name": "Renamed"}
        assert calls[1][0] == "GET"
        assert record.properties["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_error_list_body_is_reported(self):
        """Salesforce error arrays are folded into the error message."""
        adapter = _adapter(
            lambda r: httpx.Response(
                400, json=[{"message": "No such column 'Foo'", "errorCode": "INVALID_FIELD"}]
            )
        )
        with pytest.raises(ProviderApiError, match="No such column"):
            await adapter.fetch_records(EntityType.LEAD, "t", instance_url=INSTANCE)


class TestSalesforceWebhooks:
    @pytest.mark.asyncio
    async def test_register_returns_platform_events_placeholder(self):
        """Outbound messages are configured in the org; a secret is still minted."""
        registration = await SalesforceAdapter().register_webhook("t", "https://app.test/hook")
        assert registration.webhook_id == PLATFORM_EVENTS_WEBHOOK_ID
        assert registration.secret

    def test_parse_payload_with_fields(self):
        """A notification with field values carries a normalized record."""
        events = SalesforceAdapter().parse_webhook_payload(
            {
                "event": {"type": "updated", "createdDate": "2025-01-01T00:00:00Z"},
                "sobject": {
                    "attributes": {"type": "Account"},
                    "Id": "001A",
                    "Name": "Acme",
                },
            }
        )
        assert len(events) == 1
        event = events[0]
        assert event.action == WebhookAction.UPDATE
        assert event.entity_type == EntityType.COMPANY
        assert event.external_id == "001A"
        assert event.data["properties"]["name"] == "Acme"

    def test_parse_deleted_without_fields(self):
        """An id-only deletion carries no record data."""
        events = SalesforceAdapter().parse_webhook_payload(
            {"event": {"type": "deleted"}, "sobject": {"type": "Lead", "Id": "00QA"}}
        )
        assert events[0].action == WebhookAction.DELETE
        assert events[0].entity_type == EntityType.LEAD
        assert events[0].data is None

    def test_parse_ignores_unusable_payloads(self):
        """Payloads without an sobject id produce no events."""
        adapter = SalesforceAdapter()
        assert adapter.parse_webhook_payload([]) == []
        assert adapter.parse_webhook_payload({"sobject": {"Name": "x"}}) == []

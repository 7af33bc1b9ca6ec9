"""Tests for AttioAdapter against an httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from src.app.integrations.exceptions import ProviderApiError
from src.app.integrations.providers.attio import MANUAL_WEBHOOK_ID, AttioAdapter
from src.app.integrations.schemas import EntityType, FetchOptions, WebhookAction

PERSON = {
    "id": {"workspace_id": "ws", "object_id": "people", "record_id": "rec-person-1"},
    "created_at": "2025-01-01T00:00:00.000Z",
    "values": {
        "name": [{"first_name": "Ada", "last_name": "Lovelace", "full_name": "Ada Lovelace"}],
        "email_addresses": [{"email_address": "ada@example.com"}],
        "phone_numbers": [{"original_phone_number": "+44 20 7946 0000"}],
        "job_title": [{"value": "Engineer"}],
        "company": [{"target_object": "companies", "target_record_id": "rec-company-1"}],
        "description": [],
    },
}


def _adapter(handler) -> AttioAdapter:
    return AttioAdapter(
        client_id="client-id",
        client_secret="client-secret",
        transport=httpx.MockTransport(handler),
    )


class TestAttioOAuth:
    @pytest.mark.asyncio
    async def test_token_request_uses_basic_auth(self):
        """Attio authenticates the client with HTTP basic auth."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization", "")
            return httpx.Response(200, json={"access_token": "at", "token_type": "Bearer"})

        tokens = await _adapter(handler).exchange_code("code", "https://app.test/cb")
        assert seen["auth"].startswith("Basic ")
        assert tokens.access_token == "at"

    @pytest.mark.asyncio
    async def test_token_without_expiry_never_expires(self):
        """Workspace tokens without expires_in get a far-future expiry."""
        adapter = _adapter(lambda r: httpx.Response(200, json={"access_token": "at"}))
        tokens = await adapter.exchange_code("code", "https://app.test/cb")
        assert tokens.expires_at.year == 9999


class TestAttioRecords:
    @pytest.mark.asyncio
    async def test_full_page_yields_offset_cursor(self):
        """A page filled to the limit advances the offset cursor."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [PERSON, PERSON]})

        page = await _adapter(handler).fetch_records(
            EntityType.CONTACT, "t", FetchOptions(limit=2, cursor="4")
        )

        assert seen["path"] == "/v2/objects/people/records/query"
        assert seen["body"] == {"limit": 2, "offset": 4}
        assert page.next_cursor == "6"
        assert page.has_more is True

    @pytest.mark.asyncio
    async def test_short_page_ends_listing(self):
        """Fewer records than the limit means there is no next page."""
        adapter = _adapter(lambda r: httpx.Response(200, json={"data": [PERSON]}))
        page = await adapter.fetch_records(EntityType.CONTACT, "t", FetchOptions(limit=2))
        assert page.next_cursor is None
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_invalid_cursor(self):
        """A non-numeric cursor is rejected before any request."""
        adapter = _adapter(lambda r: httpx.Response(200, json={"data": []}))
        with pytest.raises(ProviderApiError):
            await adapter.fetch_records(EntityType.COMPANY, "t", FetchOptions(cursor="abc"))

    def test_normalize_flattens_value_arrays(self):
        """Typed value arrays collapse to their first scalar; empty ones are dropped."""
        record = AttioAdapter().normalize_record(PERSON)
        assert record.id == "rec-person-1"
        assert record.properties["email_addresses"] == "ada@example.com"
        assert record.properties["phone_numbers"] == "+44 20 7946 0000"
        assert record.properties["job_title"] == "Engineer"
        assert record.properties["company"] == "rec-company-1"
        assert record.properties["name"]["full_name"] == "Ada Lovelace"
        assert "description" not in record.properties
        assert record.created_at == datetime(2025, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_modified_since_filters_on_updated_at(self):
        """Delta fetch filters updated_at >= since."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": []})

        since = datetime(2025, 2, 1, tzinfo=timezone.utc)
        await _adapter(handler).fetch_records_modified_since(EntityType.DEAL, "t", since)
        assert seen["body"]["filter"] == {"updated_at": {"$gte": since.isoformat()}}

    @pytest.mark.asyncio
    async def test_update_wraps_multi_value_attributes(self):
        """Email and phone values are wrapped in Attio's typed value objects."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": PERSON})

        await _adapter(handler).update_record(
            EntityType.CONTACT,
            "t",
            "rec-person-1",
            {"email": "new@example.com", "job_title": "CTO", "last_name": "ignored"},
        )

        assert seen["method"] == "PATCH"
        assert seen["body"] == {
            "data": {
                "values": {
                    "email_addresses": [{"email_address": "new@example.com"}],
                    "job_title": "CTO",
                }
            }
        }


class TestAttioWebhooks:
    @pytest.mark.asyncio
    async def test_register_webhook(self):
        """Successful registration returns Attio's id and signing secret."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"data": {"id": {"webhook_id": "wh-1"}, "secret": "attio-secret"}},
            )

        registration = await _adapter(handler).register_webhook("t", "https://app.test/webhooks/attio")

        assert registration.webhook_id == "wh-1"
        assert registration.secret == "attio-secret"
        assert seen["body"]["data"]["target_url"] == "https://app.test/webhooks/attio"
        assert len(seen["body"]["data"]["subscriptions"]) == 3

    @pytest.mark.asyncio
    async def test_register_failure_falls_back_to_manual_setup(self):
        """A rejected registration returns the manual-setup placeholder."""
        adapter = _adapter(lambda r: httpx.Response(403, json={"message": "forbidden"}))
        registration = await adapter.register_webhook("t", "https://app.test/webhooks/attio")
        assert registration.webhook_id == MANUAL_WEBHOOK_ID
        assert registration.secret

    @pytest.mark.asyncio
    async def test_delete_manual_placeholder_makes_no_call(self):
        """Deleting the placeholder id is a no-op."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(204)

        await _adapter(handler).delete_webhook("t", MANUAL_WEBHOOK_ID)
        assert calls == []

    def test_parse_events(self):
        """Batched events map event types to actions and object slugs to entity types."""
        events = AttioAdapter().parse_webhook_payload(
            {
                "events": [
                    {
                        "event_type": "record.created",
                        "id": {"record_id": "rec-1"},
                        "object_slug": "companies",
                    },
                    {
                        "event_type": "record.deleted",
                        "id": {"record_id": "rec-2"},
                        "object_slug": "deals",
                    },
                    {"event_type": "record.updated", "id": {}},
                ]
            }
        )
        assert [(e.action, e.entity_type, e.external_id) for e in events] == [
            (WebhookAction.CREATE, EntityType.COMPANY, "rec-1"),
            (WebhookAction.DELETE, EntityType.DEAL, "rec-2"),
        ]

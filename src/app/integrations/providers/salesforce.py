"""Salesforce CRM adapter (REST API + SOQL).

Every data call needs the org-specific ``instance_url`` returned at code
exchange. Listing runs a SOQL query and pages with ``nextRecordsUrl``; records
are normalized by dropping ``attributes`` and lowercasing field names so the
mapper sees ``firstname``, ``accountid`` and so on.

Salesforce access tokens carry no expiry, so a synthetic two-hour lifetime is
assigned, and refresh responses never include a new refresh token.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from src.app.config import Settings, get_settings
from src.app.integrations.exceptions import (
    ProviderApiError,
    TokenExchangeError,
    TokenRefreshError,
)
from src.app.integrations.providers.base import CRMProviderAdapter, parse_timestamp
from src.app.integrations.schemas import (
    CRMProvider,
    EntityType,
    ExternalRecord,
    FetchOptions,
    OAuthTokens,
    PaginatedRecords,
    WebhookAction,
    WebhookEvent,
    WebhookRegistration,
)

logger = structlog.get_logger(__name__)

SALESFORCE_AUTH_URL = "https://login.salesforce.com/services/oauth2"
SALESFORCE_API_VERSION = "v59.0"
SALESFORCE_SCOPE = "api refresh_token offline_access"

# Streaming/Platform Events are configured inside the Salesforce org
PLATFORM_EVENTS_WEBHOOK_ID = "configured-via-platform-events"

TOKEN_LIFETIME = timedelta(hours=2)

# Query batch size bounds accepted by Sforce-Query-Options
MIN_BATCH_SIZE = 200
MAX_BATCH_SIZE = 2000

ENTITY_TO_SOBJECT: dict[EntityType, str] = {
    EntityType.LEAD: "Lead",
    EntityType.CONTACT: "Contact",
    EntityType.COMPANY: "Account",
    EntityType.DEAL: "Opportunity",
}

SOBJECT_TO_ENTITY: dict[str, EntityType] = {v: k for k, v in ENTITY_TO_SOBJECT.items()}

ENTITY_FIELDS: dict[EntityType, list[str]] = {
    EntityType.LEAD: [
        "Id",
        "Email",
        "FirstName",
        "LastName",
        "Phone",
        "Company",
        "Title",
        "LeadSource",
        "Status",
        "CreatedDate",
        "LastModifiedDate",
    ],
    EntityType.CONTACT: [
        "Id",
        "Email",
        "FirstName",
        "LastName",
        "Phone",
        "Title",
        "Department",
        "AccountId",
        "CreatedDate",
        "LastModifiedDate",
    ],
    EntityType.COMPANY: [
        "Id",
        "Name",
        "Website",
        "Industry",
        "NumberOfEmployees",
        "AnnualRevenue",
        "Phone",
        "BillingStreet",
        "BillingCity",
        "BillingState",
        "BillingCountry",
        "Description",
        "CreatedDate",
        "LastModifiedDate",
    ],
    EntityType.DEAL: [
        "Id",
        "Name",
        "Amount",
        "StageName",
        "Probability",
        "CloseDate",
        "IsClosed",
        "IsWon",
        "AccountId",
        "ContactId",
        "Description",
        "CreatedDate",
        "LastModifiedDate",
    ],
}

_ACTION_BY_EVENT_TYPE = {
    "created": WebhookAction.CREATE,
    "create": WebhookAction.CREATE,
    "updated": WebhookAction.UPDATE,
    "update": WebhookAction.UPDATE,
    "deleted": WebhookAction.DELETE,
    "delete": WebhookAction.DELETE,
    "undeleted": WebhookAction.CREATE,
}


def _soql_datetime(value: datetime) -> str:
    """SOQL datetime literal (UTC, no quotes)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SalesforceAdapter(CRMProviderAdapter):
    """Salesforce implementation of the provider contract."""

    provider = CRMProvider.SALESFORCE
    writable_fields = {
        EntityType.LEAD: {
            "email": "Email",
            "first_name": "FirstName",
            "last_name": "LastName",
            "phone": "Phone",
            "company": "Company",
            "job_title": "Title",
            "status": "Status",
        },
        EntityType.CONTACT: {
            "email": "Email",
            "first_name": "FirstName",
            "last_name": "LastName",
            "phone": "Phone",
            "job_title": "Title",
        },
        EntityType.COMPANY: {
            "name": "Name",
            "website": "Website",
            "industry": "Industry",
            "phone": "Phone",
        },
        EntityType.DEAL: {
            "name": "Name",
            "value": "Amount",
            "notes": "Description",
        },
    }

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SalesforceAdapter:
        settings = settings or get_settings()
        return cls(
            client_id=settings.SALESFORCE_CLIENT_ID,
            client_secret=settings.SALESFORCE_CLIENT_SECRET,
            timeout=settings.CRM_HTTP_TIMEOUT,
        )

    # ── OAuth ───────────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        client_id, _ = self._require_credentials()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": SALESFORCE_SCOPE,
        }
        return f"{SALESFORCE_AUTH_URL}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        client_id, client_secret = self._require_credentials()
        data = await self._token_request(
            "exchange_code",
            f"{SALESFORCE_AUTH_URL}/token",
            data={
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            error_cls=TokenExchangeError,
        )
        if not data.get("instance_url"):
            raise TokenExchangeError("salesforce exchange_code returned no instance_url")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            instance_url=data["instance_url"],
            expires_at=datetime.now(timezone.utc) + TOKEN_LIFETIME,
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        client_id, client_secret = self._require_credentials()
        data = await self._token_request(
            "refresh_token",
            f"{SALESFORCE_AUTH_URL}/token",
            data={
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            error_cls=TokenRefreshError,
        )
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            instance_url=data.get("instance_url"),
            expires_at=datetime.now(timezone.utc) + TOKEN_LIFETIME,
        )

    # ── Records ─────────────────────────────────────────────────────────────

    def _base(self, instance_url: str | None, operation: str) -> str:
        if not instance_url:
            raise ProviderApiError(
                self.provider.value, operation, None, "instance_url is required"
            )
        return instance_url.rstrip("/")

    def _soql(self, entity_type: EntityType, since: datetime | None) -> str:
        # Page size comes from Sforce-Query-Options, never LIMIT
        query = f"SELECT {', '.join(ENTITY_FIELDS[entity_type])} FROM {ENTITY_TO_SOBJECT[entity_type]}"
        if since is not None:
            query += f" WHERE LastModifiedDate > {_soql_datetime(since)}"
        return query + " ORDER BY LastModifiedDate DESC"

    @staticmethod
    def _query_options(limit: int) -> dict[str, str]:
        batch_size = min(max(limit, MIN_BATCH_SIZE), MAX_BATCH_SIZE)
        return {"Sforce-Query-Options": f"batchSize={batch_size}"}

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        options: FetchOptions | None = None,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        options = options or FetchOptions()
        base = self._base(instance_url, "fetch_records")

        if options.cursor:
            url, params = f"{base}{options.cursor}", None
        else:
            url = f"{base}/services/data/{SALESFORCE_API_VERSION}/query"
            params = {"q": self._soql(entity_type, options.modified_since)}

        data = await self._json(
            "fetch_records",
            "GET",
            url,
            access_token=access_token,
            params=params,
            headers=self._query_options(options.limit),
        )
        next_cursor = data.get("nextRecordsUrl")
        return PaginatedRecords(
            records=[self.normalize_record(r) for r in data.get("records", [])],
            next_cursor=next_cursor,
            has_more=bool(next_cursor),
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ExternalRecord]:
        base = self._base(instance_url, "fetch_records_modified_since")
        data = await self._json(
            "fetch_records_modified_since",
            "GET",
            f"{base}/services/data/{SALESFORCE_API_VERSION}/query",
            access_token=access_token,
            params={"q": self._soql(entity_type, since)},
        )
        return [self.normalize_record(r) for r in data.get("records", [])]

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ExternalRecord | None:
        base = self._base(instance_url, "fetch_record")
        data = await self._json(
            "fetch_record",
            "GET",
            f"{base}/services/data/{SALESFORCE_API_VERSION}/sobjects/"
            f"{ENTITY_TO_SOBJECT[entity_type]}/{external_id}",
            access_token=access_token,
            params={"fields": ",".join(ENTITY_FIELDS[entity_type])},
            allow_not_found=True,
        )
        if data is None:
            return None
        return self.normalize_record(data)

    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        fields: dict[str, Any],
        instance_url: str | None = None,
    ) -> ExternalRecord:
        base = self._base(instance_url, "update_record")
        await self._send(
            "update_record",
            "PATCH",
            f"{base}/services/data/{SALESFORCE_API_VERSION}/sobjects/"
            f"{ENTITY_TO_SOBJECT[entity_type]}/{external_id}",
            access_token=access_token,
            json=self.writable_payload(entity_type, fields),
        )
        # PATCH answers 204 with no body
        updated = await self.fetch_record(entity_type, access_token, external_id, instance_url)
        if updated is None:
            raise ProviderApiError(
                self.provider.value, "update_record", 404, "Record vanished after update"
            )
        return updated

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def register_webhook(
        self,
        access_token: str,
        webhook_url: str,
        instance_url: str | None = None,
    ) -> WebhookRegistration:
        logger.info("salesforce.webhook_platform_events", webhook_url=webhook_url)
        return WebhookRegistration(
            webhook_id=PLATFORM_EVENTS_WEBHOOK_ID,
            secret=secrets.token_hex(32),
        )

    async def delete_webhook(
        self,
        access_token: str,
        webhook_id: str,
        instance_url: str | None = None,
    ) -> None:
        return None

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        if not isinstance(payload, dict):
            return []
        sobject = payload.get("sobject")
        if not isinstance(sobject, dict):
            return []
        external_id = sobject.get("Id") or sobject.get("id")
        if not external_id:
            return []

        object_type = (sobject.get("attributes") or {}).get("type") or sobject.get("type")
        event = payload.get("event") or {}
        event_type = str(event.get("type") or "updated")

        event_kwargs: dict[str, Any] = {}
        occurred_at = parse_timestamp(event.get("createdDate"))
        if occurred_at is not None:
            event_kwargs["occurred_at"] = occurred_at

        # Field values present on the notification double as the record body
        record_fields = {k: v for k, v in sobject.items() if k not in ("attributes", "type")}
        data = None
        if len(record_fields) > 1:
            data = self.normalize_record(record_fields).model_dump(mode="json")

        return [
            WebhookEvent(
                event_type=event_type,
                action=_ACTION_BY_EVENT_TYPE.get(event_type.lower(), WebhookAction.UPDATE),
                entity_type=SOBJECT_TO_ENTITY.get(str(object_type), EntityType.CONTACT),
                external_id=str(external_id),
                data=data,
                **event_kwargs,
            )
        ]

    # ── Normalization ───────────────────────────────────────────────────────

    def normalize_record(self, record: dict[str, Any]) -> ExternalRecord:
        properties = {
            key.lower(): value
            for key, value in record.items()
            if key not in ("attributes", "Id")
        }
        return ExternalRecord(
            id=str(record.get("Id") or ""),
            properties=properties,
            created_at=parse_timestamp(record.get("CreatedDate")),
            updated_at=parse_timestamp(record.get("LastModifiedDate")),
        )

    def _error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, list):
            return ", ".join(str(e.get("message", e)) for e in data if isinstance(e, dict))
        return super()._error_message(response)

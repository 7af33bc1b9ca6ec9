"""HubSpot CRM adapter (CRM v3 objects API).

HubSpot has no separate lead object: leads and contacts are both read from
``contacts``. Listing pages with the ``after`` cursor; delta fetches go through
the search endpoint filtered on ``lastmodifieddate``. Webhooks are configured
in the HubSpot developer portal, so registration only mints a signing secret.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import structlog

from src.app.config import Settings, get_settings
from src.app.integrations.exceptions import TokenExchangeError, TokenRefreshError
from src.app.integrations.providers.base import (
    CRMProviderAdapter,
    expires_in_to_datetime,
    parse_timestamp,
)
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

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_OAUTH_BASE = "https://app.hubspot.com/oauth"

# Webhooks are managed in the developer portal, not via API
PORTAL_WEBHOOK_ID = "configured-in-hubspot-portal"

# Search API hard limit
MODIFIED_SINCE_LIMIT = 100

SCOPES = [
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.objects.companies.read",
    "crm.objects.companies.write",
    "crm.objects.deals.read",
    "crm.objects.deals.write",
]

ENTITY_TO_OBJECT: dict[EntityType, str] = {
    EntityType.LEAD: "contacts",
    EntityType.CONTACT: "contacts",
    EntityType.COMPANY: "companies",
    EntityType.DEAL: "deals",
}

ENTITY_PROPERTIES: dict[EntityType, list[str]] = {
    EntityType.LEAD: [
        "email",
        "firstname",
        "lastname",
        "phone",
        "company",
        "jobtitle",
        "lifecyclestage",
        "hs_lead_status",
        "hs_latest_source",
        "createdate",
        "lastmodifieddate",
    ],
    EntityType.CONTACT: [
        "email",
        "firstname",
        "lastname",
        "phone",
        "jobtitle",
        "department",
        "linkedin_url",
        "associatedcompanyid",
        "createdate",
        "lastmodifieddate",
    ],
    EntityType.COMPANY: [
        "name",
        "domain",
        "industry",
        "numberofemployees",
        "annualrevenue",
        "website",
        "phone",
        "address",
        "city",
        "state",
        "country",
        "description",
        "createdate",
        "lastmodifieddate",
    ],
    EntityType.DEAL: [
        "dealname",
        "amount",
        "deal_currency_code",
        "dealstage",
        "pipeline",
        "closedate",
        "hs_deal_stage_probability",
        "hs_is_closed",
        "hs_is_closed_won",
        "description",
        "createdate",
        "lastmodifieddate",
    ],
}

# Object types HubSpot reports in webhook events
_WEBHOOK_OBJECT_TYPES: dict[str, EntityType] = {
    "contact": EntityType.CONTACT,
    "contacts": EntityType.CONTACT,
    "company": EntityType.COMPANY,
    "companies": EntityType.COMPANY,
    "deal": EntityType.DEAL,
    "deals": EntityType.DEAL,
}


class HubSpotAdapter(CRMProviderAdapter):
    """HubSpot implementation of the provider contract."""

    provider = CRMProvider.HUBSPOT
    writable_fields = {
        EntityType.LEAD: {
            "email": "email",
            "first_name": "firstname",
            "last_name": "lastname",
            "phone": "phone",
            "company": "company",
            "job_title": "jobtitle",
            "status": "hs_lead_status",
        },
        EntityType.CONTACT: {
            "email": "email",
            "first_name": "firstname",
            "last_name": "lastname",
            "phone": "phone",
            "job_title": "jobtitle",
        },
        EntityType.COMPANY: {
            "name": "name",
            "domain": "domain",
            "industry": "industry",
            "website": "website",
            "phone": "phone",
        },
        EntityType.DEAL: {
            "name": "dealname",
            "value": "amount",
            "notes": "description",
        },
    }

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HubSpotAdapter:
        settings = settings or get_settings()
        return cls(
            client_id=settings.HUBSPOT_CLIENT_ID,
            client_secret=settings.HUBSPOT_CLIENT_SECRET,
            timeout=settings.CRM_HTTP_TIMEOUT,
        )

    # ── OAuth ───────────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        client_id, _ = self._require_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{HUBSPOT_OAUTH_BASE}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        client_id, client_secret = self._require_credentials()
        data = await self._token_request(
            "exchange_code",
            f"{HUBSPOT_API_BASE}/oauth/v1/token",
            data={
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            error_cls=TokenExchangeError,
        )
        return self._tokens(data)

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        client_id, client_secret = self._require_credentials()
        data = await self._token_request(
            "refresh_token",
            f"{HUBSPOT_API_BASE}/oauth/v1/token",
            data={
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            error_cls=TokenRefreshError,
        )
        return self._tokens(data)

    def _tokens(self, data: dict[str, Any]) -> OAuthTokens:
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_in_to_datetime(data.get("expires_in")),
            token_type=data.get("token_type", "Bearer"),
        )

    # ── Records ─────────────────────────────────────────────────────────────

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        options: FetchOptions | None = None,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        options = options or FetchOptions()
        params: dict[str, Any] = {
            "limit": options.limit,
            "properties": ",".join(ENTITY_PROPERTIES[entity_type]),
        }
        if entity_type == EntityType.DEAL:
            params["associations"] = "companies,contacts"
        if options.cursor:
            params["after"] = options.cursor

        data = await self._json(
            "fetch_records",
            "GET",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}",
            access_token=access_token,
            params=params,
        )
        next_cursor = ((data.get("paging") or {}).get("next") or {}).get("after")
        return PaginatedRecords(
            records=[self.normalize_record(r) for r in data.get("results", [])],
            next_cursor=next_cursor,
            has_more=next_cursor is not None,
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ExternalRecord]:
        body = {
            "filterGroups": [
                {
                    "filters": [
                        {
                            "propertyName": "lastmodifieddate",
                            "operator": "GTE",
                            "value": int(since.timestamp() * 1000),
                        }
                    ]
                }
            ],
            "properties": ENTITY_PROPERTIES[entity_type],
            "limit": MODIFIED_SINCE_LIMIT,
        }
        data = await self._json(
            "fetch_records_modified_since",
            "POST",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}/search",
            access_token=access_token,
            json=body,
        )
        results = data.get("results", [])
        if entity_type == EntityType.DEAL and results:
            await self._attach_deal_associations(access_token, results)
        return [self.normalize_record(r) for r in results]

    async def _attach_deal_associations(
        self, access_token: str, deals: list[dict[str, Any]]
    ) -> None:
        """Search results carry no associations; read them in batch per target type."""
        inputs = [{"id": str(d["id"])} for d in deals if d.get("id") is not None]
        by_id = {str(d.get("id")): d for d in deals}
        for target in ("companies", "contacts"):
            data = await self._json(
                "fetch_deal_associations",
                "POST",
                f"{HUBSPOT_API_BASE}/crm/v3/associations/deals/{target}/batch/read",
                access_token=access_token,
                json={"inputs": inputs},
            )
            for result in data.get("results", []):
                deal = by_id.get(str((result.get("from") or {}).get("id")))
                linked = [{"id": str(t.get("id"))} for t in result.get("to") or [] if t.get("id")]
                if deal is not None and linked:
                    deal.setdefault("associations", {})[target] = {"results": linked}

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ExternalRecord | None:
        params: dict[str, Any] = {"properties": ",".join(ENTITY_PROPERTIES[entity_type])}
        if entity_type == EntityType.DEAL:
            params["associations"] = "companies,contacts"
        data = await self._json(
            "fetch_record",
            "GET",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}/{external_id}",
            access_token=access_token,
            params=params,
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
        properties = self.writable_payload(entity_type, fields)
        data = await self._json(
            "update_record",
            "PATCH",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}/{external_id}",
            access_token=access_token,
            json={"properties": properties},
        )
        return self.normalize_record(data)

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def register_webhook(
        self,
        access_token: str,
        webhook_url: str,
        instance_url: str | None = None,
    ) -> WebhookRegistration:
        logger.info("hubspot.webhook_portal_configured", webhook_url=webhook_url)
        return WebhookRegistration(
            webhook_id=PORTAL_WEBHOOK_ID,
            secret=secrets.token_hex(32),
        )

    async def delete_webhook(
        self,
        access_token: str,
        webhook_id: str,
        instance_url: str | None = None,
    ) -> None:
        # Portal-managed subscriptions cannot be removed through the API
        return None

    def _normalize_signature(self, signature: str) -> str:
        signature = signature.strip()
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        return signature.lower()

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        events = payload if isinstance(payload, list) else [payload]
        parsed: list[WebhookEvent] = []
        for event in events:
            if not isinstance(event, dict) or event.get("objectId") is None:
                continue
            subscription = str(event.get("subscriptionType") or "")
            object_type = str(event.get("objectType") or "")
            if not object_type and "." in subscription:
                object_type = subscription.split(".", 1)[0]

            if "creation" in subscription:
                action = WebhookAction.CREATE
            elif "deletion" in subscription:
                action = WebhookAction.DELETE
            else:
                action = WebhookAction.UPDATE

            event_kwargs: dict[str, Any] = {}
            occurred_at = parse_timestamp(event.get("occurredAt"))
            if occurred_at is not None:
                event_kwargs["occurred_at"] = occurred_at

            parsed.append(
                WebhookEvent(
                    event_type=subscription or "unknown",
                    action=action,
                    entity_type=_WEBHOOK_OBJECT_TYPES.get(object_type.lower(), EntityType.CONTACT),
                    external_id=str(event["objectId"]),
                    **event_kwargs,
                )
            )
        return parsed

    # ── Normalization ───────────────────────────────────────────────────────

    def normalize_record(self, record: dict[str, Any]) -> ExternalRecord:
        properties = dict(record.get("properties") or {})
        associations = record.get("associations") or {}
        for assoc_type, prop in (("companies", "associatedcompanyid"), ("contacts", "associatedcontactid")):
            results = (associations.get(assoc_type) or {}).get("results") or []
            if results and not properties.get(prop):
                properties[prop] = str(results[0].get("id"))
        return ExternalRecord(
            id=str(record.get("id") or ""),
            properties=properties,
            created_at=parse_timestamp(record.get("createdAt")),
            updated_at=parse_timestamp(record.get("updatedAt")),
        )

"""Attio CRM adapter (v2 REST API).

Attio stores people, companies and deals as generic "records" under object
slugs. Attribute values come back as arrays of typed value objects; the adapter
flattens each attribute to its first value so mappers see plain scalars (or
the structured name/location objects Attio uses).

Webhooks are registered through the API. When registration fails the adapter
returns the ``manual-setup-required`` placeholder rather than failing the
connect flow.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import structlog

from src.app.config import Settings, get_settings
from src.app.integrations.exceptions import (
    ProviderApiError,
    TokenExchangeError,
    TokenRefreshError,
)
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

ATTIO_API_BASE = "https://api.attio.com/v2"
ATTIO_OAUTH_BASE = "https://app.attio.com/oauth"
ATTIO_SCOPE = "record_permission:read record_permission:read_write user_management:read"

MANUAL_WEBHOOK_ID = "manual-setup-required"

MODIFIED_SINCE_LIMIT = 500

ENTITY_TO_OBJECT: dict[EntityType, str] = {
    EntityType.LEAD: "people",
    EntityType.CONTACT: "people",
    EntityType.COMPANY: "companies",
    EntityType.DEAL: "deals",
}

_OBJECT_TO_ENTITY: dict[str, EntityType] = {
    "people": EntityType.CONTACT,
    "companies": EntityType.COMPANY,
    "deals": EntityType.DEAL,
}

# Attio multi-value attributes need wrapping in typed value objects
_VALUE_WRAPPERS: dict[str, str] = {
    "email_addresses": "email_address",
    "phone_numbers": "original_phone_number",
    "domains": "domain",
}

# Keys that carry the scalar payload of a typed value object, in priority order
_SCALAR_KEYS = (
    "email_address",
    "original_phone_number",
    "phone_number",
    "domain",
    "currency_value",
    "target_record_id",
    "value",
)


def _flatten_value(value: dict[str, Any]) -> Any:
    for key in _SCALAR_KEYS:
        if value.get(key) is not None:
            return value[key]
    # Select and status attributes nest a titled option
    for key in ("status", "option"):
        nested = value.get(key)
        if isinstance(nested, dict) and nested.get("title") is not None:
            return nested["title"]
    return value


class AttioAdapter(CRMProviderAdapter):
    """Attio implementation of the provider contract."""

    provider = CRMProvider.ATTIO
    writable_fields = {
        EntityType.LEAD: {
            "email": "email_addresses",
            "phone": "phone_numbers",
            "job_title": "job_title",
        },
        EntityType.CONTACT: {
            "email": "email_addresses",
            "phone": "phone_numbers",
            "job_title": "job_title",
        },
        EntityType.COMPANY: {
            "name": "name",
            "domain": "domains",
            "description": "description",
        },
        EntityType.DEAL: {
            "name": "name",
            "value": "value",
        },
    }

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AttioAdapter:
        settings = settings or get_settings()
        return cls(
            client_id=settings.ATTIO_CLIENT_ID,
            client_secret=settings.ATTIO_CLIENT_SECRET,
            timeout=settings.CRM_HTTP_TIMEOUT,
        )

    # ── OAuth ───────────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        client_id, _ = self._require_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "scope": ATTIO_SCOPE,
        }
        return f"{ATTIO_OAUTH_BASE}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        data = await self._token_request(
            "exchange_code",
            f"{ATTIO_OAUTH_BASE}/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            error_cls=TokenExchangeError,
            auth=self._require_credentials(),
        )
        return self._tokens(data, fallback_refresh=None)

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        data = await self._token_request(
            "refresh_token",
            f"{ATTIO_OAUTH_BASE}/token",
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            error_cls=TokenRefreshError,
            auth=self._require_credentials(),
        )
        return self._tokens(data, fallback_refresh=refresh_token)

    def _tokens(self, data: dict[str, Any], fallback_refresh: str | None) -> OAuthTokens:
        if data.get("expires_in"):
            expires_at = expires_in_to_datetime(data["expires_in"])
        else:
            # Attio workspace tokens do not expire
            expires_at = datetime(9999, 12, 31, tzinfo=timezone.utc)
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
        )

    # ── Records ─────────────────────────────────────────────────────────────

    def _records_url(self, entity_type: EntityType) -> str:
        return f"{ATTIO_API_BASE}/objects/{ENTITY_TO_OBJECT[entity_type]}/records"

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        options: FetchOptions | None = None,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        options = options or FetchOptions()
        try:
            offset = int(options.cursor) if options.cursor else 0
        except ValueError as exc:
            raise ProviderApiError(
                self.provider.value, "fetch_records", None, f"Invalid cursor {options.cursor!r}"
            ) from exc

        body: dict[str, Any] = {"limit": options.limit, "offset": offset}
        if options.modified_since is not None:
            body["filter"] = {"updated_at": {"$gte": options.modified_since.isoformat()}}

        data = await self._json(
            "fetch_records",
            "POST",
            f"{self._records_url(entity_type)}/query",
            access_token=access_token,
            json=body,
        )
        raw = data.get("data") or []
        # A short page means the listing is exhausted
        full_page = len(raw) == options.limit
        return PaginatedRecords(
            records=[self.normalize_record(r) for r in raw],
            next_cursor=str(offset + len(raw)) if full_page else None,
            has_more=full_page,
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ExternalRecord]:
        data = await self._json(
            "fetch_records_modified_since",
            "POST",
            f"{self._records_url(entity_type)}/query",
            access_token=access_token,
            json={
                "filter": {"updated_at": {"$gte": since.isoformat()}},
                "limit": MODIFIED_SINCE_LIMIT,
            },
        )
        return [self.normalize_record(r) for r in data.get("data") or []]

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ExternalRecord | None:
        data = await self._json(
            "fetch_record",
            "GET",
            f"{self._records_url(entity_type)}/{external_id}",
            access_token=access_token,
            allow_not_found=True,
        )
        if data is None:
            return None
        return self.normalize_record(data.get("data") or {})

    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        fields: dict[str, Any],
        instance_url: str | None = None,
    ) -> ExternalRecord:
        values: dict[str, Any] = {}
        for attribute, value in self.writable_payload(entity_type, fields).items():
            wrapper = _VALUE_WRAPPERS.get(attribute)
            if wrapper and isinstance(value, str):
                values[attribute] = [{wrapper: value}]
            else:
                values[attribute] = value

        data = await self._json(
            "update_record",
            "PATCH",
            f"{self._records_url(entity_type)}/{external_id}",
            access_token=access_token,
            json={"data": {"values": values}},
        )
        return self.normalize_record(data.get("data") or {})

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def register_webhook(
        self,
        access_token: str,
        webhook_url: str,
        instance_url: str | None = None,
    ) -> WebhookRegistration:
        secret = secrets.token_hex(32)
        object_types = ["people", "companies", "deals"]
        body = {
            "data": {
                "target_url": webhook_url,
                "subscriptions": [
                    {"event_type": event_type, "filter": {"object_types": object_types}}
                    for event_type in ("record.created", "record.updated", "record.deleted")
                ],
            }
        }
        try:
            data = await self._json(
                "register_webhook",
                "POST",
                f"{ATTIO_API_BASE}/webhooks",
                access_token=access_token,
                json=body,
            )
        except ProviderApiError as exc:
            logger.warning(
                "attio.webhook_registration_failed",
                status_code=exc.status_code,
                error=str(exc),
            )
            return WebhookRegistration(webhook_id=MANUAL_WEBHOOK_ID, secret=secret)

        webhook = data.get("data") or {}
        webhook_id = webhook.get("id")
        if isinstance(webhook_id, dict):
            webhook_id = webhook_id.get("webhook_id")
        # Attio issues its own signing secret when it creates the subscription
        return WebhookRegistration(
            webhook_id=str(webhook_id) if webhook_id else MANUAL_WEBHOOK_ID,
            secret=webhook.get("secret") or secret,
        )

    async def delete_webhook(
        self,
        access_token: str,
        webhook_id: str,
        instance_url: str | None = None,
    ) -> None:
        if webhook_id == MANUAL_WEBHOOK_ID:
            return
        await self._send(
            "delete_webhook",
            "DELETE",
            f"{ATTIO_API_BASE}/webhooks/{webhook_id}",
            access_token=access_token,
            allow_not_found=True,
        )

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        if not isinstance(payload, dict):
            return []
        if isinstance(payload.get("events"), list):
            raw_events = payload["events"]
        else:
            raw_events = [payload]

        events: list[WebhookEvent] = []
        for raw in raw_events:
            event = self._parse_event(raw)
            if event is not None:
                events.append(event)
        return events

    def _parse_event(self, raw: Any) -> WebhookEvent | None:
        if not isinstance(raw, dict):
            return None
        event_type = str(raw.get("event_type") or "")
        record = raw.get("record") if isinstance(raw.get("record"), dict) else None

        if record is not None:
            object_slug = (record.get("object") or {}).get("slug")
            normalized = self.normalize_record(record)
            external_id = normalized.id
            data = normalized.model_dump(mode="json") if normalized.properties else None
        else:
            ids = raw.get("id") or {}
            object_slug = raw.get("object_slug")
            external_id = str(ids.get("record_id") or "")
            data = None

        if not external_id:
            return None

        if "created" in event_type:
            action = WebhookAction.CREATE
        elif "deleted" in event_type:
            action = WebhookAction.DELETE
        else:
            action = WebhookAction.UPDATE

        return WebhookEvent(
            event_type=event_type or "record.updated",
            action=action,
            entity_type=_OBJECT_TO_ENTITY.get(str(object_slug), EntityType.CONTACT),
            external_id=external_id,
            data=data,
        )

    # ── Normalization ───────────────────────────────────────────────────────

    def normalize_record(self, record: dict[str, Any]) -> ExternalRecord:
        properties: dict[str, Any] = {}
        for key, values in (record.get("values") or {}).items():
            if isinstance(values, list):
                if not values:
                    continue
                first = values[0]
                properties[key] = _flatten_value(first) if isinstance(first, dict) else first
            else:
                properties[key] = values

        record_id = record.get("id")
        if isinstance(record_id, dict):
            record_id = record_id.get("record_id")
        return ExternalRecord(
            id=str(record_id or ""),
            properties=properties,
            created_at=parse_timestamp(record.get("created_at")),
            updated_at=parse_timestamp(record.get("updated_at")),
        )

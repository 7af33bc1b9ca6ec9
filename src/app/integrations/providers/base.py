"""CRM provider adapter abstract base class -- the contract every external CRM implements.

The sync orchestrator, token manager and webhook processor only ever talk to
this interface. Concrete adapters (HubSpot, Salesforce, Attio) translate it
into provider REST calls and hand back provider-neutral ExternalRecord objects.

Shared HTTP plumbing lives here too: one httpx.AsyncClient per call with the
configured timeout, 429 retries via tenacity (3 attempts, exponential backoff
1-10s), and translation of non-2xx responses into ProviderApiError.
"""

from __future__ import annotations

import hashlib
import hmac
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.config import Settings
from src.app.integrations.exceptions import (
    ConfigurationError,
    IntegrationError,
    ProviderApiError,
    RateLimitError,
)
from src.app.integrations.schemas import (
    CRMProvider,
    EntityType,
    ExternalRecord,
    FetchOptions,
    OAuthTokens,
    PaginatedRecords,
    WebhookEvent,
    WebhookRegistration,
)

logger = structlog.get_logger(__name__)

# Only rate limiting is retried; every other failure surfaces immediately
_provider_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RateLimitError),
    reraise=True,
)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch milliseconds into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Salesforce emits +0000 offsets
        if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            text = f"{text[:-2]}:{text[-2:]}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def expires_in_to_datetime(expires_in: Any, default_seconds: int = 3600) -> datetime:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = default_seconds
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class CRMProviderAdapter(ABC):
    """Abstract interface for external CRM operations.

    Args:
        client_id: OAuth client id for this provider's app.
        client_secret: OAuth client secret.
        timeout: Per-call HTTP timeout in seconds.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    provider: CRMProvider
    # Local field name -> provider field name, per entity type
    writable_fields: dict[EntityType, dict[str, str]] = {}

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._transport = transport

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Settings | None = None) -> CRMProviderAdapter:
        """Build an adapter from application settings."""
        ...

    # ── OAuth ───────────────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        """Return the provider consent URL carrying the signed state."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token from a refresh token."""
        ...

    # ── Records ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        options: FetchOptions | None = None,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        """Fetch one page of records."""
        ...

    @abstractmethod
    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ExternalRecord]:
        """Fetch records modified at or after ``since`` (provider-capped)."""
        ...

    @abstractmethod
    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ExternalRecord | None:
        """Fetch a single record; None when the provider reports it missing."""
        ...

    @abstractmethod
    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        fields: dict[str, Any],
        instance_url: str | None = None,
    ) -> ExternalRecord:
        """Write allow-listed local fields to the provider record."""
        ...

    # ── Webhooks ────────────────────────────────────────────────────────────

    @abstractmethod
    async def register_webhook(
        self,
        access_token: str,
        webhook_url: str,
        instance_url: str | None = None,
    ) -> WebhookRegistration:
        """Register a change-notification webhook, or return a placeholder id."""
        ...

    @abstractmethod
    async def delete_webhook(
        self,
        access_token: str,
        webhook_id: str,
        instance_url: str | None = None,
    ) -> None:
        """Remove a previously registered webhook."""
        ...

    @abstractmethod
    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        """Turn a decoded webhook body into canonical events."""
        ...

    def verify_webhook_signature(
        self, payload: bytes | str, signature: str, secret: str
    ) -> bool:
        """HMAC-SHA256 hex digest comparison in constant time."""
        if not signature or not secret:
            return False
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        provided = self._normalize_signature(signature)
        return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))

    def _normalize_signature(self, signature: str) -> str:
        return signature.strip().lower()

    # ── Helpers ─────────────────────────────────────────────────────────────

    def writable_payload(self, entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
        """Translate local field names to provider names, dropping unlisted ones."""
        allowed = self.writable_fields.get(entity_type, {})
        return {allowed[k]: v for k, v in fields.items() if k in allowed}

    def _require_credentials(self) -> tuple[str, str]:
        if not self._client_id or not self._client_secret:
            name = self.provider.value.upper()
            raise ConfigurationError(
                f"{name}_CLIENT_ID and {name}_CLIENT_SECRET must be configured"
            )
        return self._client_id, self._client_secret

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @_provider_retry
    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_not_found: bool = False,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response | None:
        """Issue an authenticated API call and translate failures.

        Returns:
            The response, or None for a 404 when ``allow_not_found`` is set.

        Raises:
            RateLimitError: 429 after retries are exhausted.
            ProviderApiError: Any other non-2xx response or transport failure.
        """
        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        request_headers.update(headers or {})

        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, headers=request_headers, params=params, json=json
                )
        except httpx.TransportError as exc:
            logger.warning(
                "crm.transport_error",
                provider=self.provider.value,
                operation=operation,
                error=str(exc),
            )
            raise ProviderApiError(self.provider.value, operation, None, str(exc)) from exc

        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code == 429:
            logger.warning(
                "crm.rate_limited",
                provider=self.provider.value,
                operation=operation,
            )
            raise RateLimitError(self.provider.value, operation, 429, response.text)
        if response.is_error:
            raise ProviderApiError(
                self.provider.value,
                operation,
                response.status_code,
                self._error_message(response),
            )
        return response

    async def _json(self, operation: str, method: str, url: str, **kwargs: Any) -> Any:
        response = await self._send(operation, method, url, **kwargs)
        if response is None:
            return None
        if not response.content:
            return {}
        return response.json()

    async def _token_request(
        self,
        operation: str,
        url: str,
        data: dict[str, str],
        error_cls: type[IntegrationError],
        auth: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST a form-encoded token request.

        Raises:
            error_cls: TokenExchangeError or TokenRefreshError on any failure.
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    url,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError as exc:
            raise error_cls(f"{self.provider.value} {operation} failed: {exc}") from exc

        if response.is_error:
            raise error_cls(
                f"{self.provider.value} {operation} failed "
                f"({response.status_code}): {self._error_message(response)}"
            )
        payload = response.json()
        if not payload.get("access_token"):
            raise error_cls(f"{self.provider.value} {operation} returned no access_token")
        return payload

    def _error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return response.text

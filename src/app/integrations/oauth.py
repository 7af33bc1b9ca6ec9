"""OAuth state tokens, callback URLs and the per-organization token manager.

State tokens are compact HS256 JWTs over {organization_id, provider,
timestamp, nonce}. Verification reports malformed, tampered and expired
tokens as distinct errors so the callback route can explain the failure.

TokenManager is the only component that decrypts provider credentials. It
refreshes tokens that expire within REFRESH_BUFFER, single-flight per
integration, and moves the integration to ERROR when a refresh fails.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt
from pydantic import ValidationError

from src.app.config import Settings, get_settings
from src.app.integrations.encryption import decrypt, encrypt
from src.app.integrations.exceptions import (
    ConfigurationError,
    IntegrationError,
    IntegrationNotActiveError,
    IntegrationNotFoundError,
    OAuthStateExpiredError,
    OAuthStateMalformedError,
    OAuthStateSignatureError,
    TokenRefreshError,
)
from src.app.integrations.providers import get_provider_adapter
from src.app.integrations.providers.base import CRMProviderAdapter
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    AccessToken,
    CRMProvider,
    IntegrationRead,
    IntegrationStatus,
    OAuthState,
    OAuthTokens,
)

logger = structlog.get_logger(__name__)

STATE_ALGORITHM = "HS256"
STATE_MAX_AGE = timedelta(minutes=10)
REFRESH_BUFFER = timedelta(minutes=5)

_DEV_STATE_SECRET = "crm-sync-dev-oauth-state-secret"


# ── State Tokens ────────────────────────────────────────────────────────────


def _state_secret(settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    if settings.OAUTH_STATE_SECRET:
        return settings.OAUTH_STATE_SECRET
    if settings.is_production:
        raise ConfigurationError("OAUTH_STATE_SECRET is required in production")
    logger.warning("oauth.insecure_state_secret", environment=settings.ENVIRONMENT.value)
    return _DEV_STATE_SECRET


def _now_ms(now: datetime | None = None) -> int:
    if now is None:
        return int(time.time() * 1000)
    return int(now.timestamp() * 1000)


def generate_oauth_state(
    organization_id: str,
    provider: CRMProvider,
    secret: str | None = None,
    now: datetime | None = None,
) -> str:
    """Sign a state token binding the callback to an organization and provider."""
    claims = {
        "organization_id": organization_id,
        "provider": CRMProvider(provider).value,
        "timestamp": _now_ms(now),
        "nonce": secrets.token_hex(16),
    }
    return jwt.encode(claims, secret or _state_secret(), algorithm=STATE_ALGORITHM)


def verify_oauth_state(
    token: str,
    secret: str | None = None,
    now: datetime | None = None,
) -> OAuthState:
    """Verify a state token and return its claims.

    Raises:
        OAuthStateMalformedError: Not a JWT, or claims missing/invalid.
        OAuthStateSignatureError: Signature does not match the payload.
        OAuthStateExpiredError: Issued more than STATE_MAX_AGE ago.
    """
    if not token:
        raise OAuthStateMalformedError("OAuth state is empty")
    try:
        jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise OAuthStateMalformedError(f"OAuth state is malformed: {exc}") from exc

    try:
        claims = jwt.decode(token, secret or _state_secret(), algorithms=[STATE_ALGORITHM])
    except JWTError as exc:
        raise OAuthStateSignatureError("OAuth state signature is invalid") from exc

    try:
        state = OAuthState.model_validate(claims)
    except ValidationError as exc:
        raise OAuthStateMalformedError(f"OAuth state claims are invalid: {exc}") from exc

    age_ms = _now_ms(now) - state.timestamp
    if age_ms > STATE_MAX_AGE.total_seconds() * 1000:
        raise OAuthStateExpiredError(
            f"OAuth state expired {int(age_ms / 1000)}s after issue "
            f"(limit {int(STATE_MAX_AGE.total_seconds())}s)"
        )
    return state


def get_redirect_uri(provider: CRMProvider, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    base = settings.APP_BASE_URL.rstrip("/")
    return f"{base}/integrations/{CRMProvider(provider).value}/callback"


def get_webhook_url(provider: CRMProvider, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    base = settings.APP_BASE_URL.rstrip("/")
    return f"{base}/webhooks/{CRMProvider(provider).value}"


# ── Token Manager ───────────────────────────────────────────────────────────


def refresh_failure_reason(exc: Exception) -> str:
    return f"Token refresh failed: {exc}"


class TokenManager:
    """Stores and hands out provider credentials for organizations.

    Args:
        repository: Integration persistence.
        adapter_factory: provider -> adapter; defaults to get_provider_adapter.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        adapter_factory: Callable[[CRMProvider], CRMProviderAdapter] | None = None,
    ) -> None:
        self._repository = repository
        self._adapter_factory = adapter_factory or get_provider_adapter
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    async def store_integration_tokens(
        self,
        organization_id: str,
        provider: CRMProvider,
        tokens: OAuthTokens,
    ) -> IntegrationRead:
        """Encrypt and persist a fresh token set; the integration becomes CONNECTED."""
        integration = await self._repository.save_integration_tokens(
            organization_id=organization_id,
            provider=CRMProvider(provider),
            access_token=encrypt(tokens.access_token),
            refresh_token=encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            token_expires_at=tokens.expires_at,
            instance_url=tokens.instance_url,
        )
        logger.info(
            "oauth.tokens_stored",
            organization_id=organization_id,
            provider=integration.provider.value,
        )
        return integration

    async def get_valid_access_token(self, organization_id: str) -> AccessToken:
        """Return a usable access token, refreshing it first when near expiry.

        Raises:
            IntegrationNotFoundError: No integration for the organization.
            IntegrationNotActiveError: Integration is not CONNECTED.
            TokenRefreshError: Refresh failed; the integration is now ERROR.
        """
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotFoundError(organization_id)
        if integration.status != IntegrationStatus.CONNECTED:
            raise IntegrationNotActiveError(organization_id, integration.status.value)
        return await self.access_token_for(integration)

    async def access_token_for(self, integration: IntegrationRead) -> AccessToken:
        """Token for an integration already loaded by the caller.

        Skips the status check so a running sync, and webhooks delivered
        while the integration is SYNCING, can still obtain credentials.
        """
        if not self._needs_refresh(integration):
            return self._decrypted(integration)

        lock = self._refresh_locks.setdefault(integration.id, asyncio.Lock())
        async with lock:
            current = await self._repository.get_integration_by_id(integration.id)
            if current is None:
                raise IntegrationNotFoundError(integration.organization_id)
            if not self._needs_refresh(current):
                # Another waiter already refreshed
                return self._decrypted(current)
            return await self._refresh(current)

    def _needs_refresh(self, integration: IntegrationRead, now: datetime | None = None) -> bool:
        if not integration.refresh_token or integration.token_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return integration.token_expires_at <= now + REFRESH_BUFFER

    def _decrypted(self, integration: IntegrationRead) -> AccessToken:
        return AccessToken(
            access_token=decrypt(integration.access_token),
            provider=integration.provider,
            instance_url=integration.instance_url,
        )

    async def _refresh(self, integration: IntegrationRead) -> AccessToken:
        adapter = self._adapter_factory(integration.provider)
        try:
            tokens = await adapter.refresh_token(decrypt(integration.refresh_token or ""))
        except IntegrationError as exc:
            logger.error(
                "oauth.token_refresh_failed",
                organization_id=integration.organization_id,
                provider=integration.provider.value,
                error=str(exc),
            )
            await self._repository.update_integration(
                integration.id,
                status=IntegrationStatus.ERROR,
                last_sync_error=refresh_failure_reason(exc),
            )
            if isinstance(exc, TokenRefreshError):
                raise
            raise TokenRefreshError(str(exc)) from exc

        updated = await self._repository.update_integration(
            integration.id,
            access_token=encrypt(tokens.access_token),
            refresh_token=(
                encrypt(tokens.refresh_token) if tokens.refresh_token else integration.refresh_token
            ),
            token_expires_at=tokens.expires_at,
            instance_url=tokens.instance_url or integration.instance_url,
        )
        logger.info(
            "oauth.token_refreshed",
            organization_id=integration.organization_id,
            provider=integration.provider.value,
            expires_at=tokens.expires_at.isoformat(),
        )
        return AccessToken(
            access_token=tokens.access_token,
            provider=integration.provider,
            instance_url=(updated.instance_url if updated else integration.instance_url),
        )

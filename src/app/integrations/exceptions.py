"""Error taxonomy for the CRM integration engine.

Every error raised by the integration package derives from IntegrationError so
API handlers can map the whole family in one place. Subclasses group by the
component that raises them: configuration, encryption, OAuth flow, provider
HTTP calls, mapping, reconciliation and webhooks.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for all integration engine errors."""


class ConfigurationError(IntegrationError):
    """Raised when a required secret or setting is missing or malformed."""


class UnknownProviderError(IntegrationError, ValueError):
    """Raised for provider identifiers outside the supported set."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unknown CRM provider: {provider}")


# ── Encryption ──────────────────────────────────────────────────────────────


class EncryptionError(IntegrationError):
    """Base class for encrypt/decrypt failures."""


class FormatError(EncryptionError):
    """Ciphertext blob is not nonce:tag:ciphertext hex."""


class AuthenticationError(EncryptionError):
    """Ciphertext failed authentication (tampered, or wrong key)."""


# ── OAuth Flow ──────────────────────────────────────────────────────────────


class AuthFlowError(IntegrationError):
    """Base class for failures during the OAuth authorize/callback round trip."""


class OAuthStateError(AuthFlowError):
    """State parameter could not be trusted."""


class OAuthStateMalformedError(OAuthStateError):
    """State token does not decode into the expected claims."""


class OAuthStateSignatureError(OAuthStateError):
    """State token signature does not verify."""


class OAuthStateExpiredError(OAuthStateError):
    """State token is older than the allowed window."""


class OAuthStateProviderMismatchError(OAuthStateError):
    """Callback provider differs from the provider encoded in the state."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"OAuth state was issued for {expected}, callback came from {actual}")


class TokenExchangeError(AuthFlowError):
    """Authorization code could not be exchanged for tokens."""


class TokenRefreshError(IntegrationError):
    """Refresh token was rejected or the refresh call failed."""


# ── Provider HTTP ───────────────────────────────────────────────────────────


class ProviderApiError(IntegrationError):
    """A provider API call returned a non-success response or failed in transit."""

    def __init__(
        self,
        provider: str,
        operation: str,
        status_code: int | None,
        body: str = "",
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.body = body
        status = status_code if status_code is not None else "transport"
        super().__init__(f"{provider} {operation} failed ({status}): {body[:500]}")


class RateLimitError(ProviderApiError):
    """Provider responded 429."""


# ── Mapping & Reconciliation ────────────────────────────────────────────────


class MappingError(IntegrationError):
    """A provider record could not be translated into a canonical entity."""


class ReconciliationError(IntegrationError):
    """A canonical record could not be written to local storage."""


# ── Webhooks ────────────────────────────────────────────────────────────────


class WebhookVerificationError(IntegrationError):
    """Webhook signature is missing or matches no connected integration."""


class WebhookPayloadError(IntegrationError):
    """Webhook body is not parseable."""


# ── Integration Lifecycle ───────────────────────────────────────────────────


class IntegrationNotFoundError(IntegrationError):
    """No integration exists for the organization."""

    def __init__(self, organization_id: str) -> None:
        self.organization_id = organization_id
        super().__init__(f"No CRM integration for organization {organization_id}")


class IntegrationNotActiveError(IntegrationError):
    """Integration exists but is not in a state that permits the operation."""

    def __init__(self, organization_id: str, status: str) -> None:
        self.organization_id = organization_id
        self.status = status
        super().__init__(f"CRM integration for {organization_id} is not active (status={status})")


class SyncInProgressError(IntegrationError):
    """Another sync run currently holds the integration."""

    def __init__(self, organization_id: str) -> None:
        self.organization_id = organization_id
        super().__init__(f"A sync is already in progress for organization {organization_id}")


class IntegrationAlreadyExistsError(IntegrationError):
    """Organization already has an integration."""

    def __init__(self, organization_id: str) -> None:
        self.organization_id = organization_id
        super().__init__(f"Organization {organization_id} already has a CRM integration")

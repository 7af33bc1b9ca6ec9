"""FastAPI dependency injection for organization context and integration services.

The organization id arrives in the X-Organization-ID header, set by the
session layer in front of this service. Services are built once in the
application lifespan and read from app.state here.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from src.app.integrations.exceptions import (
    AuthFlowError,
    ConfigurationError,
    IntegrationAlreadyExistsError,
    IntegrationError,
    IntegrationNotActiveError,
    IntegrationNotFoundError,
    ProviderApiError,
    SyncInProgressError,
    TokenRefreshError,
    UnknownProviderError,
    WebhookPayloadError,
    WebhookVerificationError,
)
from src.app.integrations.service import IntegrationService
from src.app.integrations.webhooks import WebhookProcessor


async def get_organization_id(
    x_organization_id: str | None = Header(default=None, alias="X-Organization-ID"),
) -> str:
    """Organization of the current session; 401 when absent."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Organization-ID header",
        )
    return x_organization_id


def get_integration_service(request: Request) -> IntegrationService:
    """Retrieve IntegrationService from app.state, 503 if not available."""
    service = getattr(request.app.state, "integration_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM integrations not initialized",
        )
    return service


def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Retrieve WebhookProcessor from app.state, 503 if not available."""
    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook ingestion not initialized",
        )
    return processor


# ── Error Mapping ────────────────────────────────────────────────────────────

_STATUS_BY_ERROR: list[tuple[type[IntegrationError], int]] = [
    (WebhookVerificationError, status.HTTP_401_UNAUTHORIZED),
    (WebhookPayloadError, status.HTTP_400_BAD_REQUEST),
    (UnknownProviderError, status.HTTP_404_NOT_FOUND),
    (IntegrationNotFoundError, status.HTTP_404_NOT_FOUND),
    (IntegrationNotActiveError, status.HTTP_409_CONFLICT),
    (SyncInProgressError, status.HTTP_409_CONFLICT),
    (IntegrationAlreadyExistsError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderApiError, status.HTTP_502_BAD_GATEWAY),
    (TokenRefreshError, status.HTTP_502_BAD_GATEWAY),
    (AuthFlowError, status.HTTP_400_BAD_REQUEST),
]


def to_http_exception(exc: IntegrationError) -> HTTPException:
    """Translate an integration error into the HTTP response it warrants."""
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )

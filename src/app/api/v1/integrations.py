"""REST API endpoints for CRM integrations.

Covers the OAuth round trip (authorize redirect and callback), status and
sync-log views, manual sync, outbound push, demo connection and disconnect.
The OAuth callback redirects back into the app with an ``error`` query
parameter instead of returning an error body.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.app.api.deps import get_integration_service, get_organization_id, to_http_exception
from src.app.integrations.exceptions import (
    AuthFlowError,
    IntegrationError,
    OAuthStateExpiredError,
    OAuthStateProviderMismatchError,
    TokenExchangeError,
)
from src.app.integrations.schemas import (
    EntityType,
    IntegrationCheck,
    IntegrationStatusRead,
    SyncLogRead,
    SyncRunResult,
)
from src.app.integrations.service import IntegrationService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])

# App page the OAuth callback returns to
INTEGRATIONS_PAGE = "/integrations"


# ── Request Schemas ──────────────────────────────────────────────────────────


class PushRequest(BaseModel):
    """Outbound write of local field values to one CRM record."""

    entity_type: EntityType
    external_id: str = Field(..., min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _page_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{INTEGRATIONS_PAGE}?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


def _auth_error_code(exc: AuthFlowError) -> str:
    if isinstance(exc, OAuthStateExpiredError):
        return "state_expired"
    if isinstance(exc, OAuthStateProviderMismatchError):
        return "provider_mismatch"
    if isinstance(exc, TokenExchangeError):
        return "token_exchange_failed"
    return "invalid_state"


async def _initial_sync(service: IntegrationService, organization_id: str) -> None:
    """Background full sync after connecting; failures land on the integration row."""
    try:
        await service.trigger_sync(organization_id)
    except IntegrationError as exc:
        logger.warning(
            "integration.initial_sync_failed",
            organization_id=organization_id,
            error=str(exc),
        )


# ── OAuth Endpoints ──────────────────────────────────────────────────────────


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> RedirectResponse:
    """Redirect to the provider consent screen."""
    try:
        url = service.begin_authorization(organization_id, provider)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    background_tasks: BackgroundTasks,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    service: IntegrationService = Depends(get_integration_service),
) -> RedirectResponse:
    """Complete the OAuth flow, then start the first sync in the background."""
    if error:
        logger.warning("integration.oauth_denied", provider=provider, error=error)
        return _page_redirect(error=error)
    if not code or not state:
        return _page_redirect(error="missing_code")

    try:
        organization_id = await service.complete_authorization(provider, code, state)
    except AuthFlowError as exc:
        logger.warning("integration.oauth_failed", provider=provider, error=str(exc))
        return _page_redirect(error=_auth_error_code(exc))
    except IntegrationError as exc:
        logger.error("integration.oauth_error", provider=provider, error=str(exc))
        return _page_redirect(error="connection_failed")

    background_tasks.add_task(_initial_sync, service, organization_id)
    return _page_redirect(success="connected", provider=provider)


# ── Status Endpoints ─────────────────────────────────────────────────────────


@router.get("/status", response_model=IntegrationStatusRead)
async def get_status(
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationStatusRead:
    """Integration status with the most recent sync logs."""
    return await service.get_status(organization_id)


@router.get("/check", response_model=IntegrationCheck)
async def check_integration(
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationCheck:
    return await service.check_integration(organization_id)


@router.get("/sync-logs", response_model=list[SyncLogRead])
async def list_sync_logs(
    limit: int = Query(default=20, ge=1, le=100),
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> list[SyncLogRead]:
    """Sync history, newest first."""
    return await service.get_sync_logs(organization_id, limit=limit)


# ── Sync Endpoints ───────────────────────────────────────────────────────────


@router.post("/sync", response_model=SyncRunResult)
async def trigger_sync(
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> SyncRunResult:
    """Run a sync now and return its summary."""
    try:
        return await service.trigger_sync(organization_id)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc


@router.post("/push", response_model=SyncRunResult)
async def push_to_crm(
    body: PushRequest,
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> SyncRunResult:
    """Write fields to one CRM record."""
    try:
        return await service.push_to_crm(
            organization_id, body.entity_type, body.external_id, body.fields
        )
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc


# ── Lifecycle Endpoints ──────────────────────────────────────────────────────


@router.post(
    "/demo/{provider}",
    response_model=IntegrationStatusRead,
    status_code=status.HTTP_201_CREATED,
)
async def connect_demo(
    provider: str,
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationStatusRead:
    """Connect a demo integration seeded with sample records."""
    try:
        await service.connect_demo(organization_id, provider)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    return await service.get_status(organization_id)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    organization_id: str = Depends(get_organization_id),
    service: IntegrationService = Depends(get_integration_service),
) -> Response:
    """Disconnect the CRM. Synced records stay, detached from the CRM."""
    try:
        await service.disconnect(organization_id)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)

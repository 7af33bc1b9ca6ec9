"""Inbound CRM webhook receiver.

Reads the raw body (signatures cover the exact bytes) and the provider's
signature header, then hands both to the WebhookProcessor.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from src.app.api.deps import get_webhook_processor, to_http_exception
from src.app.integrations.exceptions import IntegrationError
from src.app.integrations.providers import parse_provider
from src.app.integrations.schemas import WebhookResult
from src.app.integrations.webhooks import WebhookProcessor, signature_headers

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookResult)
async def receive_webhook(
    provider: str,
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResult:
    """Verify and apply one webhook delivery."""
    try:
        crm = parse_provider(provider)
        signature = next(
            (request.headers[h] for h in signature_headers(crm) if h in request.headers),
            None,
        )
        body = await request.body()
        return await processor.handle(crm, body, signature)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc

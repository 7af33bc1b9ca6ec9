"""CRM integration engine: OAuth connections, sync and webhooks for HubSpot, Salesforce and Attio.

Exports the service-level entry points. Adapters live in
src.app.integrations.providers and field mappers in src.app.integrations.mappers.
"""

from src.app.integrations.demo import DemoIntegrationService
from src.app.integrations.oauth import (
    TokenManager,
    generate_oauth_state,
    get_redirect_uri,
    verify_oauth_state,
)
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.service import IntegrationService
from src.app.integrations.sync import SyncOrchestrator
from src.app.integrations.webhooks import WebhookProcessor

__all__ = [
    "DemoIntegrationService",
    "IntegrationRepository",
    "IntegrationService",
    "SyncOrchestrator",
    "TokenManager",
    "WebhookProcessor",
    "generate_oauth_state",
    "get_redirect_uri",
    "verify_oauth_state",
]

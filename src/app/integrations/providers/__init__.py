"""CRM provider adapters.

get_provider_adapter() is the single dispatch point from a provider identifier
to its adapter; nothing else in the package branches on provider.
"""

from __future__ import annotations

from src.app.config import Settings
from src.app.integrations.exceptions import UnknownProviderError
from src.app.integrations.providers.attio import AttioAdapter
from src.app.integrations.providers.base import CRMProviderAdapter
from src.app.integrations.providers.hubspot import HubSpotAdapter
from src.app.integrations.providers.salesforce import SalesforceAdapter
from src.app.integrations.schemas import CRMProvider

_ADAPTERS: dict[CRMProvider, type[CRMProviderAdapter]] = {
    CRMProvider.HUBSPOT: HubSpotAdapter,
    CRMProvider.SALESFORCE: SalesforceAdapter,
    CRMProvider.ATTIO: AttioAdapter,
}


def is_valid_provider(value: str) -> bool:
    """Return True if value names a supported provider."""
    return value in {p.value for p in CRMProvider}


def parse_provider(value: str | CRMProvider) -> CRMProvider:
    """Coerce a provider identifier, raising UnknownProviderError otherwise."""
    if isinstance(value, CRMProvider):
        return value
    if not is_valid_provider(value):
        raise UnknownProviderError(value)
    return CRMProvider(value)


def get_provider_adapter(
    provider: str | CRMProvider, settings: Settings | None = None
) -> CRMProviderAdapter:
    """Build the adapter for a provider from settings."""
    return _ADAPTERS[parse_provider(provider)].from_settings(settings)


__all__ = [
    "AttioAdapter",
    "CRMProviderAdapter",
    "HubSpotAdapter",
    "SalesforceAdapter",
    "get_provider_adapter",
    "is_valid_provider",
    "parse_provider",
]

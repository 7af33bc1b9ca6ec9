"""Field mappers: raw provider records -> canonical Lead/Contact/Company/Deal.

map_external_to_local() selects the mapper from a (provider, entity type)
table. Mappers are pure; the only failure they surface is MappingError.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Union

import structlog
from pydantic import ValidationError

from src.app.integrations.exceptions import MappingError
from src.app.integrations.mappers.attio import (
    map_attio_to_company,
    map_attio_to_contact,
    map_attio_to_deal,
    map_attio_to_lead,
)
from src.app.integrations.mappers.hubspot import (
    map_hubspot_to_company,
    map_hubspot_to_contact,
    map_hubspot_to_deal,
    map_hubspot_to_lead,
)
from src.app.integrations.mappers.salesforce import (
    map_salesforce_to_company,
    map_salesforce_to_contact,
    map_salesforce_to_deal,
    map_salesforce_to_lead,
)
from src.app.integrations.schemas import (
    CRMProvider,
    EntityType,
    ExternalRecord,
    MappedCompany,
    MappedContact,
    MappedDeal,
    MappedLead,
)

logger = structlog.get_logger(__name__)

MappedRecord = Union[MappedLead, MappedContact, MappedCompany, MappedDeal]
Mapper = Callable[..., MappedRecord]

MAPPERS: dict[tuple[CRMProvider, EntityType], Mapper] = {
    (CRMProvider.HUBSPOT, EntityType.LEAD): map_hubspot_to_lead,
    (CRMProvider.HUBSPOT, EntityType.CONTACT): map_hubspot_to_contact,
    (CRMProvider.HUBSPOT, EntityType.COMPANY): map_hubspot_to_company,
    (CRMProvider.HUBSPOT, EntityType.DEAL): map_hubspot_to_deal,
    (CRMProvider.SALESFORCE, EntityType.LEAD): map_salesforce_to_lead,
    (CRMProvider.SALESFORCE, EntityType.CONTACT): map_salesforce_to_contact,
    (CRMProvider.SALESFORCE, EntityType.COMPANY): map_salesforce_to_company,
    (CRMProvider.SALESFORCE, EntityType.DEAL): map_salesforce_to_deal,
    (CRMProvider.ATTIO, EntityType.LEAD): map_attio_to_lead,
    (CRMProvider.ATTIO, EntityType.CONTACT): map_attio_to_contact,
    (CRMProvider.ATTIO, EntityType.COMPANY): map_attio_to_company,
    (CRMProvider.ATTIO, EntityType.DEAL): map_attio_to_deal,
}


def map_external_to_local(
    provider: CRMProvider,
    entity_type: EntityType,
    record: ExternalRecord,
    instance_url: str | None = None,
    synced_at: datetime | None = None,
) -> MappedRecord:
    """Map one provider record into its canonical shape.

    Args:
        provider: Source CRM.
        entity_type: Canonical type the record is read as.
        record: Normalized provider record.
        instance_url: Salesforce org URL for record links.
        synced_at: Stamp for last_synced_at; defaults to now.

    Raises:
        MappingError: Record has no id, or the mapper hit unexpected data.
    """
    provider = CRMProvider(provider)
    entity_type = EntityType(entity_type)
    mapper = MAPPERS[(provider, entity_type)]
    try:
        return mapper(record, instance_url=instance_url, synced_at=synced_at)
    except MappingError:
        raise
    except (ValidationError, TypeError, ValueError, AttributeError, KeyError) as exc:
        logger.warning(
            "mapping.record_failed",
            provider=provider.value,
            entity_type=entity_type.value,
            external_id=record.id,
            error=str(exc),
        )
        raise MappingError(
            f"Could not map {provider.value} {entity_type.value} {record.id}: {exc}"
        ) from exc


__all__ = [
    "MAPPERS",
    "MappedRecord",
    "map_external_to_local",
]

"""Value coercion helpers shared by the provider mappers.

Provider APIs are loose about types (numbers as strings, booleans as
"true"/"false", dates as ISO strings or epoch millis). These helpers never
raise: anything unparseable becomes None so mapping stays total.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from src.app.integrations.exceptions import MappingError
from src.app.integrations.schemas import CRMProvider, ExternalRecord, utc_now


def external_fields(
    record: ExternalRecord,
    provider: CRMProvider,
    external_url: str | None,
    synced_at: datetime | None,
) -> dict[str, Any]:
    """External reference fields common to every canonical entity.

    Raises:
        MappingError: The record carries no id.
    """
    if not record.id:
        raise MappingError(f"{provider.value} record has no id")
    return {
        "external_id": record.id,
        "external_source": provider,
        "external_url": external_url,
        "last_synced_at": synced_at or utc_now(),
    }


def to_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float, bool)):
        return str(value)
    return None


def to_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> int | None:
    number = to_float(value)
    return None if number is None else int(round(number))


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def to_date(value: Any) -> date | None:
    """Parse a calendar date from ISO date, ISO datetime or epoch millis."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


def lookup(table: dict[str, Any], value: Any, default: Any, *, case_insensitive: bool = False) -> Any:
    """Translate a provider vocabulary value, falling back to ``default``."""
    text = to_str(value)
    if text is None:
        return default
    if case_insensitive:
        text = text.upper()
    return table.get(text, default)

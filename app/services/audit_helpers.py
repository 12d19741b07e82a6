from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy.inspection import inspect

SENSITIVE_FIELDS = {
    "token",
    "access_token",
    "secret",
    "api_key",
    "card_number",
    "cvc",
}


def normalize_value(value):
    """Make a column value JSON-serializable for audit snapshots."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(key): normalize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    return value


def model_to_dict(model, include: set[str] | None = None, exclude: set[str] | None = None) -> dict:
    if model is None:
        return {}
    excluded = set(exclude or set()) | SENSITIVE_FIELDS
    data: dict[str, object] = {}
    for attr in inspect(model).mapper.column_attrs:
        key = attr.key
        if include and key not in include:
            continue
        if key in excluded:
            continue
        # "metadata_" is stored in the "metadata" column
        data[key.rstrip("_")] = normalize_value(getattr(model, key))
    return data

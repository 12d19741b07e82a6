"""Common helper functions for the billing service layer.

- UUID coercion
- Query ordering and pagination
- Enum validation
- Entity retrieval with 404 handling
- Currency-aware rounding and UTC normalization
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, TypeVar

from app.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")

# Number of decimal places in the currency's minor unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "UGX"}


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid identifier: {value}") from exc


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query, rejecting columns not in ``allowed_columns``."""
    if order_by not in allowed_columns:
        raise ValidationError(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Accepts enum members, values and (case-insensitive) names.
    Returns None when value is None.
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        pass
    if isinstance(value, str):
        normalized = value.strip().lower()
        for member in enum_cls:
            if member.value == normalized or member.name == normalized:
                return member
    raise ValidationError(f"Invalid {label}: {value}")


def get_by_id(db: Session, model: type[T], value, **kwargs) -> T | None:
    if value is None:
        return None
    return db.get(model, coerce_uuid(value), **kwargs)


def minor_unit(currency: str | None) -> Decimal:
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    return Decimal("0.01")


def round_currency(value: Decimal | int | float | str, currency: str | None) -> Decimal:
    """Round to the currency's minor unit, e.g. whole yen for JPY."""
    return Decimal(str(value)).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def to_minor_units(value: Decimal, currency: str | None) -> int:
    """Integer amount in the currency's smallest unit, as card networks expect."""
    return int((Decimal(str(value)) / minor_unit(currency)).to_integral_value(ROUND_HALF_UP))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by drivers that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def list_response(items: list, limit: int, offset: int) -> dict:
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}

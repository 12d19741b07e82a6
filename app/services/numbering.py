from datetime import datetime

from sqlalchemy.orm import Session

from app.models.sequence import NumberSequence
from app.services.common import coerce_uuid


def _format_number(prefix: str, issued_at: datetime, value: int, padding: int = 4) -> str:
    return f"{prefix}-{issued_at.year}{issued_at.month:02d}-{value:0{padding}d}"


def _next_sequence_value(db: Session, organization_id, kind: str, year: int) -> int:
    sequence = (
        db.query(NumberSequence)
        .filter(NumberSequence.organization_id == coerce_uuid(organization_id))
        .filter(NumberSequence.kind == kind)
        .filter(NumberSequence.year == year)
        .with_for_update()
        .first()
    )
    if not sequence:
        sequence = NumberSequence(
            organization_id=coerce_uuid(organization_id), kind=kind, year=year, next_value=1
        )
        db.add(sequence)
        db.flush()
    value = sequence.next_value
    sequence.next_value = value + 1
    db.flush()
    return value


def generate_invoice_number(db: Session, organization_id, issued_at: datetime) -> str:
    """``INV-{year}{month}-{seq}``; the sequence restarts each calendar year."""
    value = _next_sequence_value(db, organization_id, "invoice", issued_at.year)
    return _format_number("INV", issued_at, value)

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.responses import Response

from app.api.deps import get_db
from app.schemas.audit import AuditLogPage, AuditLogRead
from app.services.payment_audit import PaymentAudit

router = APIRouter()


@router.get(
    "/audit/{entity_type}/{entity_id}",
    response_model=list[AuditLogRead],
    tags=["audit"],
)
def entity_history(
    entity_type: str,
    entity_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return PaymentAudit.get_entity_history(db, entity_type, entity_id, limit)


@router.get("/organizations/{organization_id}/audit", response_model=AuditLogPage, tags=["audit"])
def organization_logs(
    organization_id: str,
    action: list[str] | None = Query(default=None),
    entity_type: list[str] | None = Query(default=None),
    user_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return PaymentAudit.list_organization_logs(
        db,
        organization_id,
        actions=action,
        entity_types=entity_type,
        user_id=user_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@router.get("/organizations/{organization_id}/audit/summary", tags=["audit"])
def audit_summary(
    organization_id: str,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    db: Session = Depends(get_db),
) -> dict:
    return PaymentAudit.get_summary(db, organization_id, date_from, date_to)


@router.get("/organizations/{organization_id}/audit/suspicious", tags=["audit"])
def suspicious_activity(
    organization_id: str,
    window_hours: int | None = Query(default=None, ge=1, le=720),
    db: Session = Depends(get_db),
) -> dict:
    return PaymentAudit.get_suspicious_activity(db, organization_id, window_hours=window_hours)


@router.get("/organizations/{organization_id}/audit/export", tags=["audit"])
def export_audit_logs(
    organization_id: str,
    date_from: datetime,
    date_to: datetime,
    format: str = Query(default="json", pattern="^(json|csv)$"),
    db: Session = Depends(get_db),
):
    content = PaymentAudit.export_logs(db, organization_id, date_from, date_to, format)
    media_type = "text/csv" if format == "csv" else "application/json"
    filename = f"payment-audit-{organization_id}.{format}"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.schemas.billing import BatchResult, ReminderRead
from app.schemas.common import ListResponse
from app.services import billing as billing_service

router = APIRouter()


@router.get("/reminders", response_model=ListResponse[ReminderRead], tags=["reminders"])
def list_reminders(
    organization_id: str | None = None,
    customer_id: str | None = None,
    invoice_id: str | None = None,
    subscription_id: str | None = None,
    status: str | None = None,
    reminder_type: str | None = None,
    order_by: str = Query(default="scheduled_at"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.reminders.list_response(
        db,
        limit,
        offset,
        organization_id=organization_id,
        customer_id=customer_id,
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        status=status,
        reminder_type=reminder_type,
        order_by=order_by,
        order_dir=order_dir,
    )


@router.get("/reminders/stats", tags=["reminders"])
def reminder_stats(
    organization_id: str,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    db: Session = Depends(get_db),
) -> dict:
    return billing_service.reminders.get_reminder_stats(db, organization_id, date_from, date_to)


@router.post("/reminders/process", response_model=BatchResult, tags=["reminders"])
def process_reminders(
    limit: int = Query(default=100, ge=1, le=500), db: Session = Depends(get_db)
):
    return billing_service.reminders.process_scheduled_reminders(db, limit=limit)

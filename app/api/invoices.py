from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from starlette.responses import Response

from app.api.deps import get_db, get_request_context
from app.schemas.billing import (
    BatchResult,
    InvoiceCreate,
    InvoiceRead,
    InvoiceStatusUpdate,
    RequestContext,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services.billing.invoice_pdf import download_filename

router = APIRouter()


@router.post(
    "/invoices",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.invoices.create_invoice(db, payload, context)


@router.get("/invoices/analytics", tags=["invoices"])
def invoice_analytics(
    organization_id: str,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    db: Session = Depends(get_db),
) -> dict:
    return billing_service.invoices.get_invoice_analytics(
        db, organization_id, date_from, date_to
    )


@router.post("/invoices/mark-overdue", response_model=BatchResult, tags=["invoices"])
def mark_overdue_invoices(db: Session = Depends(get_db)):
    return billing_service.invoices.mark_overdue(db)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead, tags=["invoices"])
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


@router.get("/invoices", response_model=ListResponse[InvoiceRead], tags=["invoices"])
def list_invoices(
    organization_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    order_by: str = Query(default="issue_date"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.invoices.list_response(
        db,
        limit,
        offset,
        organization_id=organization_id,
        customer_id=customer_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        order_by=order_by,
        order_dir=order_dir,
    )


@router.patch(
    "/invoices/{invoice_id}/status", response_model=InvoiceRead, tags=["invoices"]
)
def update_invoice_status(
    invoice_id: str,
    payload: InvoiceStatusUpdate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.invoices.update_invoice_status(db, invoice_id, payload, context)


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceRead, tags=["invoices"])
def void_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.invoices.void_invoice(db, invoice_id, context)


@router.post("/invoices/{invoice_id}/pdf", response_model=InvoiceRead, tags=["invoices"])
def generate_invoice_pdf(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.generate_invoice_pdf(db, invoice_id)


@router.get("/invoices/{invoice_id}/pdf", tags=["invoices"])
def download_invoice_pdf(invoice_id: str, db: Session = Depends(get_db)):
    invoice = billing_service.invoices.get(db, invoice_id)
    content = billing_service.invoices.render_pdf(db, invoice_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{download_filename(invoice)}"'
        },
    )

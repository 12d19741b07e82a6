from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_request_context
from app.models.billing import PaymentProvider
from app.models.provider_payments import KonbiniStore
from app.schemas.billing import (
    BatchResult,
    KonbiniConfirm,
    PaymentCreate,
    PaymentMethodCreate,
    PaymentMethodRead,
    PaymentRead,
    PaymentRefundRead,
    RefundCreate,
    RequestContext,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services import payment_providers
from app.services.payment_providers import konbini

router = APIRouter()


# --- Payments ---


@router.post(
    "/payments",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def create_payment(
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.payments.create_payment(db, payload, context)


@router.get("/payments/stats", tags=["payments"])
def payment_stats(
    organization_id: str,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    db: Session = Depends(get_db),
) -> dict:
    return billing_service.payments.get_payment_stats(db, organization_id, date_from, date_to)


@router.get("/payments/{payment_id}", response_model=PaymentRead, tags=["payments"])
def get_payment(payment_id: str, db: Session = Depends(get_db)):
    return billing_service.payments.get(db, payment_id)


@router.get("/payments", response_model=ListResponse[PaymentRead], tags=["payments"])
def list_payments(
    organization_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    provider: str | None = None,
    invoice_id: str | None = None,
    subscription_id: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.payments.list_response(
        db,
        limit,
        offset,
        organization_id=organization_id,
        customer_id=customer_id,
        status=status,
        provider=provider,
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        order_by=order_by,
        order_dir=order_dir,
    )


@router.post("/payments/{payment_id}/sync", response_model=PaymentRead, tags=["payments"])
def sync_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.payments.sync_payment_status(db, payment_id, context)


@router.post(
    "/refunds",
    response_model=PaymentRefundRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def refund_payment(
    payload: RefundCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.payments.refund_payment(db, payload, context)


@router.get(
    "/payments/{payment_id}/refunds",
    response_model=list[PaymentRefundRead],
    tags=["payments"],
)
def list_refunds(payment_id: str, db: Session = Depends(get_db)):
    return billing_service.payments.list_refunds(db, payment_id)


@router.post("/payments/retry-failed", response_model=BatchResult, tags=["payments"])
def retry_failed_payments(
    window_hours: int = Query(default=24, ge=1, le=168),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return billing_service.payments.retry_failed_payments(
        db, window_hours=window_hours, limit=limit
    )


# --- Konbini ---


@router.get("/konbini/limits", tags=["konbini"])
def konbini_limits() -> dict:
    return konbini.get_store_limits()


@router.get("/konbini/{payment_code}", tags=["konbini"])
def konbini_details(payment_code: str, db: Session = Depends(get_db)) -> dict:
    adapter = payment_providers.get_adapter(PaymentProvider.konbini)
    record = adapter.get_by_code(db, payment_code)
    return {
        "payment_id": str(record.payment_id),
        "payment_code": record.payment_code,
        "barcode": record.barcode,
        "qr_code_data": record.qr_code_data,
        "store_type": record.store_type.value,
        "amount": record.amount,
        "status": record.status.value,
        "expires_at": record.expires_at,
        "paid_at": record.paid_at,
        **konbini.get_store_instructions(record.store_type, record.payment_code),
    }


@router.get("/konbini/stores/{store}/instructions", tags=["konbini"])
def konbini_instructions(store: KonbiniStore, payment_code: str) -> dict:
    return konbini.get_store_instructions(store, payment_code)


@router.post("/konbini/confirm", tags=["konbini"])
def confirm_konbini_payment(
    payload: KonbiniConfirm,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    return billing_service.payments.confirm_konbini_payment(db, payload, context)


# --- Payment methods ---


@router.post(
    "/payment-methods",
    response_model=PaymentMethodRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payment-methods"],
)
def add_payment_method(
    payload: PaymentMethodCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.payment_methods.add_payment_method(db, payload, context)


@router.get(
    "/customers/{customer_id}/payment-methods",
    response_model=list[PaymentMethodRead],
    tags=["payment-methods"],
)
def list_payment_methods(customer_id: str, db: Session = Depends(get_db)):
    return billing_service.payment_methods.list_payment_methods(db, customer_id)


@router.post(
    "/payment-methods/{method_id}/default",
    response_model=PaymentMethodRead,
    tags=["payment-methods"],
)
def set_default_payment_method(
    method_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.payment_methods.set_default_payment_method(db, method_id, context)


@router.delete(
    "/payment-methods/{method_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["payment-methods"],
)
def remove_payment_method(
    method_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    billing_service.payment_methods.remove_payment_method(db, method_id, context)

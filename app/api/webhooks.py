from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_request_context
from app.errors import BillingError
from app.metrics import observe_webhook
from app.models.billing import PaymentProvider
from app.schemas.billing import RequestContext
from app.services import billing as billing_service

router = APIRouter()

SIGNATURE_HEADERS = {
    PaymentProvider.stripe: "stripe-signature",
    PaymentProvider.paypay: "x-paypay-signature",
    PaymentProvider.konbini: "x-konbini-signature",
}


async def _handle(
    provider: PaymentProvider, request: Request, db: Session, context: RequestContext
) -> dict:
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[provider])
    try:
        result = billing_service.payments.handle_webhook(db, provider, body, signature, context)
    except BillingError:
        observe_webhook(provider.value, "rejected")
        raise
    observe_webhook(provider.value, result["status"])
    return result


@router.post("/webhooks/stripe", tags=["webhooks"])
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    return await _handle(PaymentProvider.stripe, request, db, context)


@router.post("/webhooks/paypay", tags=["webhooks"])
async def paypay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    return await _handle(PaymentProvider.paypay, request, db, context)


@router.post("/webhooks/konbini", tags=["webhooks"])
async def konbini_webhook(
    request: Request,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    return await _handle(PaymentProvider.konbini, request, db, context)

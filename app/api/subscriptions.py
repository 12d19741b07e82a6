from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_request_context
from app.schemas.billing import (
    BatchResult,
    PlanChangeResponse,
    RequestContext,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPlanChange,
    SubscriptionRead,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service

router = APIRouter()


@router.post(
    "/subscriptions",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
    tags=["subscriptions"],
)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.subscriptions.create_subscription(db, payload, context)


@router.get("/subscriptions/analytics", tags=["subscriptions"])
def subscription_analytics(organization_id: str, db: Session = Depends(get_db)) -> dict:
    return billing_service.subscriptions.get_subscription_analytics(db, organization_id)


@router.post(
    "/subscriptions/process-billing", response_model=BatchResult, tags=["subscriptions"]
)
def process_pending_billing(
    limit: int = Query(default=100, ge=1, le=500), db: Session = Depends(get_db)
):
    return billing_service.subscriptions.process_pending_billing(db, limit=limit)


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionRead,
    tags=["subscriptions"],
)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return billing_service.subscriptions.get(db, subscription_id)


@router.get(
    "/subscriptions",
    response_model=ListResponse[SubscriptionRead],
    tags=["subscriptions"],
)
def list_subscriptions(
    organization_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.subscriptions.list_response(
        db,
        limit,
        offset,
        organization_id=organization_id,
        customer_id=customer_id,
        status=status,
        order_by=order_by,
        order_dir=order_dir,
    )


@router.post("/subscriptions/{subscription_id}/bill", tags=["subscriptions"])
def bill_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    return billing_service.subscriptions.process_subscription_payment(
        db, subscription_id, context=context
    )


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionRead,
    tags=["subscriptions"],
)
def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionCancel,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.subscriptions.cancel_subscription(
        db, subscription_id, payload, context
    )


@router.post(
    "/subscriptions/{subscription_id}/reactivate",
    response_model=SubscriptionRead,
    tags=["subscriptions"],
)
def reactivate_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.subscriptions.reactivate_subscription(db, subscription_id, context)


@router.post(
    "/subscriptions/{subscription_id}/change-plan",
    response_model=PlanChangeResponse,
    tags=["subscriptions"],
)
def change_subscription_plan(
    subscription_id: str,
    payload: SubscriptionPlanChange,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return billing_service.subscriptions.change_subscription_plan(
        db, subscription_id, payload, context
    )

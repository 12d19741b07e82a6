"""Subscription lifecycle, periodic billing and proration.

State machine::

    create (trial)    -> TRIALING
    create (no trial) -> INCOMPLETE -> first charge -> ACTIVE | PAST_DUE
    charge succeeded  -> ACTIVE, period advanced
    charge failed     -> PAST_DUE, or UNPAID once retries are exhausted
    cancel immediate  -> CANCELED
    cancel at period end: flag only, CANCELED when billing finds the period over

Each billed period is guarded by a ``BillingAttempt`` row keyed
``subscription:{id}:period:{period_end}`` so overlapping runs never charge
the same period twice.
"""

import calendar
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, StateError
from app.models.audit import AuditAction, AuditEntityType
from app.models.billing import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    BillingAttempt,
    BillingAttemptStatus,
    BillingCycle,
    BillingSubscription,
    Payment,
    PaymentStatus,
    SubscriptionStatus,
)
from app.schemas.billing import (
    PaymentCreate,
    RequestContext,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPlanChange,
)
from app.services.billing._common import (
    _claim_failed_attempt,
    _default_payment_method,
    _get_customer,
    _tax_profile,
    _tax_region,
    _validate_currency,
)
from app.services.billing.payments import Payments
from app.services.billing.reminders import Reminders
from app.services.common import (
    apply_ordering,
    apply_pagination,
    as_utc,
    coerce_uuid,
    get_by_id,
    round_currency,
    utcnow,
    validate_enum,
)
from app.services.payment_audit import PaymentAudit, snapshot
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

# day counts used for proration; calendar months are approximated as 30 days
PRORATION_PERIOD_DAYS = {
    BillingCycle.weekly: 7,
    BillingCycle.monthly: 30,
    BillingCycle.yearly: 365,
}

# monthly-equivalent multipliers for recurring revenue
_MRR_FACTORS = {
    BillingCycle.weekly: Decimal("4.33"),
    BillingCycle.monthly: Decimal("1"),
    BillingCycle.yearly: Decimal("1") / Decimal("12"),
}

_CHARGEABLE_STATUSES = BILLABLE_SUBSCRIPTION_STATUSES + (SubscriptionStatus.incomplete,)

# failures younger than this are left to the failed-payment retry job
RETRY_AFTER = timedelta(hours=24)


def _add_months(value: datetime, months: int) -> datetime:
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_cycle(value: datetime, cycle: BillingCycle) -> datetime:
    if cycle == BillingCycle.weekly:
        return value + timedelta(days=7)
    if cycle == BillingCycle.yearly:
        return _add_months(value, 12)
    return _add_months(value, 1)


def calculate_proration(
    old_amount: Decimal,
    new_amount: Decimal,
    period_end: datetime,
    cycle: BillingCycle,
    now: datetime,
    currency: str = "JPY",
) -> Decimal:
    """``(new - old) * remaining_days / period_days``; partial days count as whole."""
    period_days = PRORATION_PERIOD_DAYS[cycle]
    remaining_seconds = (as_utc(period_end) - as_utc(now)).total_seconds()
    remaining_days = min(max(math.ceil(remaining_seconds / 86400), 0), period_days)
    difference = Decimal(str(new_amount)) - Decimal(str(old_amount))
    return round_currency(difference * remaining_days / period_days, currency)


def attempt_key(subscription_id, period_end: datetime) -> str:
    return f"subscription:{subscription_id}:period:{as_utc(period_end).isoformat()}"


def _retries_exhausted(subscription: BillingSubscription) -> bool:
    return (subscription.failed_attempts or 0) >= settings.max_retry_attempts


def _due_for_retry(
    subscription: BillingSubscription, attempt: BillingAttempt, now: datetime
) -> bool:
    """Whether a failed period should be charged again by the billing run."""
    if attempt.status != BillingAttemptStatus.failed:
        return False
    if subscription.status != SubscriptionStatus.past_due or _retries_exhausted(subscription):
        return False
    last_failure = as_utc(attempt.updated_at or attempt.created_at)
    return last_failure <= now - RETRY_AFTER


def _set_status(
    db: Session,
    subscription: BillingSubscription,
    status: SubscriptionStatus,
    context: RequestContext | None = None,
    action: AuditAction = AuditAction.status_change,
    reason: str | None = None,
) -> bool:
    old_status = subscription.status
    if old_status == status:
        return False
    subscription.status = status
    PaymentAudit.log_payment_action(
        db,
        subscription.organization_id,
        action,
        AuditEntityType.subscription,
        subscription.id,
        old_data={"status": old_status.value},
        new_data={"status": status.value, "reason": reason},
        context=context,
    )
    return True


class Subscriptions(ListResponseMixin):
    @staticmethod
    def create_subscription(
        db: Session,
        payload: SubscriptionCreate,
        context: RequestContext | None = None,
    ) -> BillingSubscription:
        customer = _get_customer(db, payload.customer_id)
        currency = _validate_currency(payload.currency)
        start = as_utc(payload.start_date) or utcnow()
        subscription = BillingSubscription(
            organization_id=customer.organization_id,
            customer_id=customer.id,
            plan_id=payload.plan_id,
            plan_name=payload.plan_name,
            amount=round_currency(payload.amount, currency),
            currency=currency,
            billing_cycle=payload.billing_cycle,
            discount_rate=payload.discount_rate,
            metadata_=payload.metadata,
            current_period_start=start,
        )
        if payload.trial_days:
            trial_end = start + timedelta(days=payload.trial_days)
            subscription.status = SubscriptionStatus.trialing
            subscription.trial_end = trial_end
            subscription.current_period_end = trial_end
            subscription.next_billing_date = trial_end
        else:
            subscription.status = SubscriptionStatus.incomplete
            subscription.current_period_end = add_billing_cycle(start, payload.billing_cycle)
            subscription.next_billing_date = start
        db.add(subscription)
        db.flush()
        PaymentAudit.log_payment_action(
            db,
            subscription.organization_id,
            AuditAction.create,
            AuditEntityType.subscription,
            subscription.id,
            new_data=snapshot(subscription),
            context=context,
        )
        if subscription.status == SubscriptionStatus.trialing:
            Reminders.schedule_subscription_reminders(db, subscription)
        db.commit()
        db.refresh(subscription)
        logger.info(
            "Created subscription %s plan=%s status=%s",
            subscription.id,
            subscription.plan_id,
            subscription.status.value,
        )
        if subscription.status == SubscriptionStatus.incomplete:
            Subscriptions.process_subscription_payment(db, str(subscription.id), context=context)
            db.refresh(subscription)
        return subscription

    @staticmethod
    def get(db: Session, subscription_id: str) -> BillingSubscription:
        subscription = get_by_id(db, BillingSubscription, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        return subscription

    @staticmethod
    def list(
        db: Session,
        organization_id: str | None = None,
        customer_id: str | None = None,
        status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(BillingSubscription)
        if organization_id:
            query = query.filter(
                BillingSubscription.organization_id == coerce_uuid(organization_id)
            )
        if customer_id:
            query = query.filter(BillingSubscription.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(
                BillingSubscription.status
                == validate_enum(status, SubscriptionStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": BillingSubscription.created_at,
                "next_billing_date": BillingSubscription.next_billing_date,
                "amount": BillingSubscription.amount,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def process_subscription_payment(
        db: Session,
        subscription_id: str,
        now: datetime | None = None,
        context: RequestContext | None = None,
    ) -> dict:
        """Bill the period starting at ``next_billing_date``.

        Returns an outcome dict; charge failures are recorded on the
        subscription rather than raised.
        """
        now = now or utcnow()
        subscription = (
            db.query(BillingSubscription)
            .filter(BillingSubscription.id == coerce_uuid(subscription_id))
            .with_for_update()
            .first()
        )
        if subscription is None:
            raise NotFoundError("Subscription not found")
        if subscription.status not in _CHARGEABLE_STATUSES:
            raise StateError(
                f"Subscription is not in a billable state ({subscription.status.value})"
            )
        outcome = {"subscription_id": str(subscription.id), "payment_id": None}

        if subscription.cancel_at_period_end and now >= as_utc(
            subscription.current_period_end
        ):
            subscription.canceled_at = now
            _set_status(
                db,
                subscription,
                SubscriptionStatus.canceled,
                context,
                action=AuditAction.cancel,
                reason="canceled_at_period_end",
            )
            Reminders.cancel_subscription_reminders(db, subscription.id)
            db.commit()
            return {**outcome, "status": "canceled"}

        period_start = as_utc(subscription.next_billing_date)
        period_end = add_billing_cycle(period_start, subscription.billing_cycle)
        key = attempt_key(subscription.id, period_end)
        existing = db.query(BillingAttempt).filter(BillingAttempt.idempotency_key == key).first()
        if (
            existing is not None
            and existing.status == BillingAttemptStatus.failed
            and subscription.status == SubscriptionStatus.past_due
            and _retries_exhausted(subscription)
        ):
            _set_status(
                db, subscription, SubscriptionStatus.unpaid, context, reason="retries_exhausted"
            )
            db.commit()
            return {**outcome, "status": "unpaid"}
        if existing is not None and not _due_for_retry(subscription, existing, now):
            db.commit()
            return {**outcome, "status": "skipped", "reason": "already_attempted"}

        method = _default_payment_method(db, subscription.customer_id)
        if method is None:
            _set_status(
                db,
                subscription,
                SubscriptionStatus.past_due,
                context,
                reason="no_default_payment_method",
            )
            db.commit()
            logger.warning("Subscription %s has no default payment method", subscription.id)
            return {**outcome, "status": "failed", "error": "No default payment method"}

        if subscription.pending_plan_id:
            subscription.plan_id = subscription.pending_plan_id
            subscription.plan_name = subscription.pending_plan_name or subscription.plan_name
            subscription.amount = subscription.pending_amount or subscription.amount
            subscription.pending_plan_id = None
            subscription.pending_plan_name = None
            subscription.pending_amount = None

        retry_of_id = None
        if existing is None:
            attempt = BillingAttempt(
                idempotency_key=key,
                subscription_id=subscription.id,
                period_start=period_start,
                period_end=period_end,
                status=BillingAttemptStatus.started,
            )
            db.add(attempt)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return {**outcome, "status": "skipped", "reason": "already_attempted"}
        else:
            previous = db.get(Payment, existing.payment_id) if existing.payment_id else None
            if previous is not None:
                retry_of_id = previous.retry_of_id or previous.id
            if not _claim_failed_attempt(db, key):
                return {**outcome, "status": "skipped", "reason": "already_attempted"}
            attempt = existing

        customer = subscription.customer
        calculation = Payments.calculate_billing(
            subscription.amount,
            subscription.discount_rate,
            _tax_region(customer),
            _tax_profile(customer),
            subscription.currency,
        )
        amount = calculation.subtotal - calculation.discount_amount
        if amount <= 0:
            attempt.status = BillingAttemptStatus.succeeded
            Subscriptions._advance(db, subscription, attempt, context)
            db.commit()
            return {**outcome, "status": "succeeded"}

        payload = PaymentCreate(
            customer_id=subscription.customer_id,
            amount=amount,
            currency=subscription.currency,
            provider=method.provider,
            method_type=method.method_type,
            payment_method_id=method.id,
            subscription_id=subscription.id,
            description=(
                f"{subscription.plan_name} subscription "
                f"{period_start.date().isoformat()} - {period_end.date().isoformat()}"
            ),
            metadata={
                "subscription_id": str(subscription.id),
                "billing_period": f"{period_start.date().isoformat()}/{period_end.date().isoformat()}",
                "plan_name": subscription.plan_name,
                "billing_attempt_key": key,
            },
            retry_of_id=retry_of_id,
        )
        try:
            payment = Payments.create_payment(db, payload, context)
        except Exception as exc:
            logger.exception("Billing subscription %s failed", subscription.id)
            attempt = db.query(BillingAttempt).filter(BillingAttempt.idempotency_key == key).one()
            attempt.status = BillingAttemptStatus.failed
            attempt.error = str(exc)
            subscription = db.get(BillingSubscription, subscription.id)
            subscription.failed_attempts = (subscription.failed_attempts or 0) + 1
            target = SubscriptionStatus.past_due
            if _retries_exhausted(subscription):
                target = SubscriptionStatus.unpaid
            _set_status(db, subscription, target, context, reason=str(exc))
            db.commit()
            return {**outcome, "status": "failed", "error": str(exc)}

        attempt = db.query(BillingAttempt).filter(BillingAttempt.idempotency_key == key).one()
        attempt.payment_id = payment.id
        db.commit()
        outcome["payment_id"] = str(payment.id)
        outcome["status"] = payment.status.value
        if payment.status == PaymentStatus.failed:
            outcome["error"] = (payment.metadata_ or {}).get("error") or "Payment failed"
        return outcome

    @staticmethod
    def _advance(
        db: Session,
        subscription: BillingSubscription,
        attempt: BillingAttempt,
        context: RequestContext | None = None,
    ) -> None:
        subscription.current_period_start = attempt.period_start
        subscription.current_period_end = attempt.period_end
        subscription.next_billing_date = attempt.period_end
        subscription.failed_attempts = 0
        _set_status(db, subscription, SubscriptionStatus.active, context, reason="payment_succeeded")
        Reminders.schedule_subscription_reminders(db, subscription)

    @staticmethod
    def apply_payment_result(
        db: Session, payment: Payment, context: RequestContext | None = None
    ) -> BillingSubscription | None:
        """Reflect a billing charge outcome on its subscription.

        Only charges carrying a billing attempt key move the subscription;
        one-off charges such as prorations are left alone. The caller commits.
        """
        key = (payment.metadata_ or {}).get("billing_attempt_key")
        if not key:
            return None
        attempt = db.query(BillingAttempt).filter(BillingAttempt.idempotency_key == key).first()
        subscription = db.get(BillingSubscription, payment.subscription_id)
        if attempt is None or subscription is None:
            return subscription
        if attempt.status == BillingAttemptStatus.succeeded:
            return subscription
        attempt.payment_id = payment.id
        if subscription.status == SubscriptionStatus.canceled:
            attempt.status = (
                BillingAttemptStatus.succeeded
                if payment.status == PaymentStatus.succeeded
                else BillingAttemptStatus.failed
            )
            return subscription

        if payment.status == PaymentStatus.succeeded:
            attempt.status = BillingAttemptStatus.succeeded
            attempt.error = None
            Subscriptions._advance(db, subscription, attempt, context)
            return subscription

        attempt.status = BillingAttemptStatus.failed
        attempt.error = (payment.metadata_ or {}).get("error") or "Payment failed"
        subscription.failed_attempts = (subscription.failed_attempts or 0) + 1
        target = SubscriptionStatus.past_due
        if _retries_exhausted(subscription):
            target = SubscriptionStatus.unpaid
        _set_status(db, subscription, target, context, reason=attempt.error)
        Reminders.schedule_payment_failed_reminder(db, payment)
        logger.warning(
            "Subscription %s payment failed attempts=%s status=%s",
            subscription.id,
            subscription.failed_attempts,
            subscription.status.value,
        )
        return subscription

    @staticmethod
    def process_pending_billing(
        db: Session, now: datetime | None = None, limit: int = 100
    ) -> dict:
        now = now or utcnow()
        subscription_ids = [
            row[0]
            for row in db.query(BillingSubscription.id)
            .filter(BillingSubscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
            .filter(BillingSubscription.next_billing_date <= now)
            .order_by(BillingSubscription.next_billing_date.asc())
            .limit(limit)
            .all()
        ]
        result = {"processed": 0, "failed": 0, "skipped": 0, "errors": []}
        for subscription_id in subscription_ids:
            try:
                outcome = Subscriptions.process_subscription_payment(
                    db, str(subscription_id), now=now
                )
            except Exception as exc:
                db.rollback()
                logger.exception("Billing subscription %s failed", subscription_id)
                result["failed"] += 1
                result["errors"].append({"id": str(subscription_id), "error": str(exc)})
                continue
            status = outcome["status"]
            if status == "skipped":
                result["skipped"] += 1
            elif status == "failed":
                result["failed"] += 1
                result["errors"].append(
                    {"id": str(subscription_id), "error": outcome.get("error")}
                )
            else:
                result["processed"] += 1
        logger.info(
            "Subscription billing processed=%s failed=%s skipped=%s",
            result["processed"],
            result["failed"],
            result["skipped"],
        )
        return result

    @staticmethod
    def cancel_subscription(
        db: Session,
        subscription_id: str,
        payload: SubscriptionCancel,
        context: RequestContext | None = None,
    ) -> BillingSubscription:
        subscription = Subscriptions.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled:
            raise StateError("Subscription is already canceled")
        if payload.reason:
            subscription.metadata_ = {
                **(subscription.metadata_ or {}),
                "cancel_reason": payload.reason,
            }
        if payload.immediate:
            subscription.canceled_at = utcnow()
            subscription.cancel_at_period_end = False
            _set_status(
                db,
                subscription,
                SubscriptionStatus.canceled,
                context,
                action=AuditAction.cancel,
                reason=payload.reason,
            )
            Reminders.cancel_subscription_reminders(db, subscription.id)
        else:
            subscription.cancel_at_period_end = True
            PaymentAudit.log_payment_action(
                db,
                subscription.organization_id,
                AuditAction.schedule_cancel,
                AuditEntityType.subscription,
                subscription.id,
                old_data={"cancel_at_period_end": False},
                new_data={
                    "cancel_at_period_end": True,
                    "current_period_end": subscription.current_period_end,
                    "reason": payload.reason,
                },
                context=context,
            )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def reactivate_subscription(
        db: Session, subscription_id: str, context: RequestContext | None = None
    ) -> BillingSubscription:
        subscription = Subscriptions.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled:
            raise StateError("Canceled subscriptions cannot be reactivated")
        if not subscription.cancel_at_period_end:
            raise StateError("Subscription is not scheduled for cancellation")
        subscription.cancel_at_period_end = False
        PaymentAudit.log_payment_action(
            db,
            subscription.organization_id,
            AuditAction.reactivate,
            AuditEntityType.subscription,
            subscription.id,
            old_data={"cancel_at_period_end": True},
            new_data={"cancel_at_period_end": False},
            context=context,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def change_subscription_plan(
        db: Session,
        subscription_id: str,
        payload: SubscriptionPlanChange,
        context: RequestContext | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Switch plans now (with a proration charge) or at the next cycle.

        Downgrades report a negative proration amount and are not credited.
        """
        now = now or utcnow()
        subscription = Subscriptions.get(db, subscription_id)
        if subscription.status not in BILLABLE_SUBSCRIPTION_STATUSES:
            raise StateError(
                f"Plan changes need an active subscription ({subscription.status.value})"
            )
        new_amount = round_currency(payload.amount, subscription.currency)
        old_data = {
            "plan_id": subscription.plan_id,
            "plan_name": subscription.plan_name,
            "amount": subscription.amount,
        }

        if payload.proration == "next_cycle":
            subscription.pending_plan_id = payload.plan_id
            subscription.pending_plan_name = payload.plan_name
            subscription.pending_amount = new_amount
            PaymentAudit.log_payment_action(
                db,
                subscription.organization_id,
                AuditAction.change_plan,
                AuditEntityType.subscription,
                subscription.id,
                old_data=old_data,
                new_data={
                    "pending_plan_id": payload.plan_id,
                    "pending_amount": new_amount,
                    "proration": "next_cycle",
                },
                context=context,
            )
            db.commit()
            db.refresh(subscription)
            return {"subscription": subscription, "proration_amount": Decimal("0"), "payment": None}

        proration = Decimal("0")
        period_end = as_utc(subscription.current_period_end)
        if subscription.status != SubscriptionStatus.trialing and now < period_end:
            proration = calculate_proration(
                subscription.amount,
                new_amount,
                period_end,
                subscription.billing_cycle,
                now,
                subscription.currency,
            )
        method = None
        if proration > 0:
            method = _default_payment_method(db, subscription.customer_id)
            if method is None:
                raise StateError("A default payment method is required for proration")

        subscription.plan_id = payload.plan_id
        subscription.plan_name = payload.plan_name
        subscription.amount = new_amount
        subscription.pending_plan_id = None
        subscription.pending_plan_name = None
        subscription.pending_amount = None
        PaymentAudit.log_payment_action(
            db,
            subscription.organization_id,
            AuditAction.change_plan,
            AuditEntityType.subscription,
            subscription.id,
            old_data=old_data,
            new_data={
                "plan_id": payload.plan_id,
                "plan_name": payload.plan_name,
                "amount": new_amount,
                "proration": "immediate",
                "proration_amount": proration,
            },
            context=context,
        )
        db.commit()

        payment = None
        if proration > 0:
            payment = Payments.create_payment(
                db,
                PaymentCreate(
                    customer_id=subscription.customer_id,
                    amount=proration,
                    currency=subscription.currency,
                    provider=method.provider,
                    method_type=method.method_type,
                    payment_method_id=method.id,
                    subscription_id=subscription.id,
                    description=f"Proration for plan change to {payload.plan_name}",
                    metadata={
                        "subscription_id": str(subscription.id),
                        "billing_period": (
                            f"{now.date().isoformat()}/{period_end.date().isoformat()}"
                        ),
                        "plan_name": payload.plan_name,
                        "type": "proration",
                    },
                ),
                context,
            )
            if payment.status == PaymentStatus.failed:
                logger.warning(
                    "Proration charge %s failed for subscription %s",
                    payment.id,
                    subscription.id,
                )
        db.refresh(subscription)
        return {"subscription": subscription, "proration_amount": proration, "payment": payment}

    @staticmethod
    def get_subscription_analytics(
        db: Session, organization_id: str, now: datetime | None = None
    ) -> dict:
        now = now or utcnow()
        subscriptions = (
            db.query(BillingSubscription)
            .filter(BillingSubscription.organization_id == coerce_uuid(organization_id))
            .all()
        )
        counts = {status.value: 0 for status in SubscriptionStatus}
        mrr = Decimal("0")
        churn_since = now - timedelta(days=30)
        canceled_recent = 0
        for subscription in subscriptions:
            counts[subscription.status.value] += 1
            if subscription.status == SubscriptionStatus.active:
                amount = Decimal(str(subscription.amount))
                if subscription.discount_rate:
                    amount -= amount * Decimal(str(subscription.discount_rate)) / 100
                mrr += amount * _MRR_FACTORS[subscription.billing_cycle]
            if (
                subscription.status == SubscriptionStatus.canceled
                and subscription.canceled_at
                and as_utc(subscription.canceled_at) >= churn_since
            ):
                canceled_recent += 1
        active = counts[SubscriptionStatus.active.value]
        base = active + canceled_recent
        return {
            "total_subscriptions": len(subscriptions),
            "active_subscriptions": active,
            "trialing_subscriptions": counts[SubscriptionStatus.trialing.value],
            "past_due_subscriptions": counts[SubscriptionStatus.past_due.value],
            "canceled_subscriptions": counts[SubscriptionStatus.canceled.value],
            "status_breakdown": counts,
            "mrr": mrr.quantize(Decimal("0.01")),
            "arpu": (mrr / active).quantize(Decimal("0.01")) if active else Decimal("0"),
            "churn_rate": (
                (Decimal(canceled_recent) * 100 / Decimal(base)).quantize(Decimal("0.01"))
                if base
                else Decimal("0")
            ),
        }

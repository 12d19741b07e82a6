"""Payment reminder scheduling and delivery."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import BillingSubscription, Invoice, Payment, SubscriptionStatus
from app.models.organization import Customer
from app.models.reminder import (
    PaymentReminder,
    ReminderMethod,
    ReminderStatus,
    ReminderType,
)
from app.services import notification_channels
from app.services.billing.invoice_pdf import format_money
from app.services.common import (
    apply_ordering,
    apply_pagination,
    as_utc,
    coerce_uuid,
    utcnow,
    validate_enum,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
RENEWAL_NOTICE_DAYS = 3
TRIAL_NOTICE_DAYS = 2

TEMPLATES = {
    ReminderType.payment_due: (
        "Payment reminder: invoice {invoice_number}",
        "Dear {customer_name},\n\nInvoice {invoice_number} for {amount} is due on "
        "{due_date}. Please complete your payment before the due date.\n\nThank you.",
    ),
    ReminderType.payment_overdue: (
        "Overdue payment: invoice {invoice_number}",
        "Dear {customer_name},\n\nInvoice {invoice_number} for {amount} was due on "
        "{due_date} and has not been paid yet. Please pay as soon as possible.",
    ),
    ReminderType.subscription_renewal: (
        "Your {plan_name} plan renews soon",
        "Dear {customer_name},\n\nYour {plan_name} plan renews on {renewal_date} "
        "for {amount}. No action is needed if your payment method is up to date.",
    ),
    ReminderType.trial_ending: (
        "Your trial ends on {trial_end}",
        "Dear {customer_name},\n\nYour {plan_name} trial ends on {trial_end}. "
        "Billing of {amount} starts after the trial.",
    ),
    ReminderType.payment_failed: (
        "Payment failed",
        "Dear {customer_name},\n\nWe could not process your payment of {amount}. "
        "Please update your payment method.",
    ),
}


def _preferred_method(customer: Customer) -> ReminderMethod:
    if customer.email:
        return ReminderMethod.email
    if customer.line_user_id:
        return ReminderMethod.line
    if customer.phone:
        return ReminderMethod.sms
    return ReminderMethod.email


def _format_date(value: datetime | None) -> str:
    return as_utc(value).strftime("%Y-%m-%d") if value else ""


def render_message(reminder: PaymentReminder) -> tuple[str, str]:
    customer = reminder.customer
    values = {
        "customer_name": customer.name if customer else "",
        "invoice_number": "",
        "amount": "",
        "due_date": "",
        "plan_name": "",
        "renewal_date": "",
        "trial_end": "",
    }
    invoice = reminder.invoice
    if invoice is not None:
        values.update(
            invoice_number=invoice.invoice_number,
            amount=format_money(invoice.total, invoice.currency),
            due_date=_format_date(invoice.due_date),
        )
    subscription = reminder.subscription
    if subscription is not None:
        values.update(
            plan_name=subscription.plan_name,
            amount=format_money(subscription.amount, subscription.currency),
            renewal_date=_format_date(subscription.next_billing_date),
            trial_end=_format_date(subscription.trial_end),
        )
    if reminder.payment is not None:
        values["amount"] = format_money(reminder.payment.amount, reminder.payment.currency)
    subject, body = TEMPLATES[reminder.reminder_type]
    return subject.format(**values), body.format(**values)


class Reminders(ListResponseMixin):
    @staticmethod
    def _schedule(
        db: Session,
        organization_id,
        customer: Customer,
        reminder_type: ReminderType,
        scheduled_at: datetime,
        now: datetime,
        invoice_id=None,
        subscription_id=None,
        payment_id=None,
    ) -> PaymentReminder | None:
        if scheduled_at < now:
            return None
        existing = (
            db.query(PaymentReminder)
            .filter(PaymentReminder.customer_id == customer.id)
            .filter(PaymentReminder.reminder_type == reminder_type)
            .filter(PaymentReminder.status == ReminderStatus.pending)
            .filter(PaymentReminder.scheduled_at == scheduled_at)
            .filter(PaymentReminder.invoice_id == invoice_id)
            .filter(PaymentReminder.subscription_id == subscription_id)
            .first()
        )
        if existing:
            return existing
        reminder = PaymentReminder(
            organization_id=organization_id,
            customer_id=customer.id,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            payment_id=payment_id,
            reminder_type=reminder_type,
            method=_preferred_method(customer),
            status=ReminderStatus.pending,
            scheduled_at=scheduled_at,
        )
        db.add(reminder)
        return reminder

    @staticmethod
    def schedule_invoice_reminders(
        db: Session, invoice: Invoice, now: datetime | None = None
    ) -> list[PaymentReminder]:
        """Due reminders before the due date plus one overdue reminder after it.

        Offsets already in the past are skipped. The caller commits.
        """
        now = now or utcnow()
        due = as_utc(invoice.due_date)
        customer = invoice.customer or db.get(Customer, invoice.customer_id)
        reminders = []
        for days in sorted(set(settings.reminder_days), reverse=True):
            reminder = Reminders._schedule(
                db,
                invoice.organization_id,
                customer,
                ReminderType.payment_due,
                due - timedelta(days=days),
                now,
                invoice_id=invoice.id,
            )
            if reminder:
                reminders.append(reminder)
        overdue = Reminders._schedule(
            db,
            invoice.organization_id,
            customer,
            ReminderType.payment_overdue,
            due + timedelta(days=1),
            now,
            invoice_id=invoice.id,
        )
        if overdue:
            reminders.append(overdue)
        db.flush()
        return reminders

    @staticmethod
    def schedule_subscription_reminders(
        db: Session, subscription: BillingSubscription, now: datetime | None = None
    ) -> list[PaymentReminder]:
        now = now or utcnow()
        customer = subscription.customer or db.get(Customer, subscription.customer_id)
        reminders = []
        renewal = Reminders._schedule(
            db,
            subscription.organization_id,
            customer,
            ReminderType.subscription_renewal,
            as_utc(subscription.next_billing_date) - timedelta(days=RENEWAL_NOTICE_DAYS),
            now,
            subscription_id=subscription.id,
        )
        if renewal:
            reminders.append(renewal)
        if subscription.status == SubscriptionStatus.trialing and subscription.trial_end:
            trial = Reminders._schedule(
                db,
                subscription.organization_id,
                customer,
                ReminderType.trial_ending,
                as_utc(subscription.trial_end) - timedelta(days=TRIAL_NOTICE_DAYS),
                now,
                subscription_id=subscription.id,
            )
            if trial:
                reminders.append(trial)
        db.flush()
        return reminders

    @staticmethod
    def schedule_payment_failed_reminder(
        db: Session, payment: Payment, now: datetime | None = None
    ) -> PaymentReminder | None:
        now = now or utcnow()
        customer = payment.customer or db.get(Customer, payment.customer_id)
        reminder = Reminders._schedule(
            db,
            payment.organization_id,
            customer,
            ReminderType.payment_failed,
            now,
            now,
            invoice_id=payment.invoice_id,
            subscription_id=payment.subscription_id,
            payment_id=payment.id,
        )
        db.flush()
        return reminder

    @staticmethod
    def _cancel(db: Session, column, value) -> int:
        count = (
            db.query(PaymentReminder)
            .filter(column == coerce_uuid(value))
            .filter(PaymentReminder.status == ReminderStatus.pending)
            .update({"status": ReminderStatus.canceled}, synchronize_session="fetch")
        )
        if count:
            logger.info("Canceled %s pending reminders for %s", count, value)
        return count

    @staticmethod
    def cancel_invoice_reminders(db: Session, invoice_id) -> int:
        return Reminders._cancel(db, PaymentReminder.invoice_id, invoice_id)

    @staticmethod
    def cancel_subscription_reminders(db: Session, subscription_id) -> int:
        return Reminders._cancel(db, PaymentReminder.subscription_id, subscription_id)

    @staticmethod
    def process_scheduled_reminders(
        db: Session, now: datetime | None = None, limit: int = BATCH_SIZE
    ) -> dict:
        now = now or utcnow()
        reminders = (
            db.query(PaymentReminder)
            .filter(PaymentReminder.status == ReminderStatus.pending)
            .filter(PaymentReminder.scheduled_at <= now)
            .order_by(PaymentReminder.scheduled_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        result = {"processed": 0, "failed": 0, "skipped": 0, "errors": []}
        for reminder in reminders:
            try:
                subject, body = render_message(reminder)
                ok, error = notification_channels.deliver(
                    reminder.method, reminder.customer, subject, body
                )
            except Exception as exc:
                logger.exception("Failed to send reminder %s", reminder.id)
                ok, error = False, str(exc)
            if ok:
                reminder.status = ReminderStatus.sent
                reminder.sent_at = utcnow()
                result["processed"] += 1
            else:
                reminder.status = ReminderStatus.failed
                reminder.failure_reason = error
                result["failed"] += 1
                result["errors"].append({"id": str(reminder.id), "error": error})
        db.commit()
        logger.info(
            "Processed reminders sent=%s failed=%s", result["processed"], result["failed"]
        )
        return result

    @staticmethod
    def list(
        db: Session,
        organization_id: str | None = None,
        customer_id: str | None = None,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
        status: str | None = None,
        reminder_type: str | None = None,
        order_by: str = "scheduled_at",
        order_dir: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(PaymentReminder)
        if organization_id:
            query = query.filter(
                PaymentReminder.organization_id == coerce_uuid(organization_id)
            )
        if customer_id:
            query = query.filter(PaymentReminder.customer_id == coerce_uuid(customer_id))
        if invoice_id:
            query = query.filter(PaymentReminder.invoice_id == coerce_uuid(invoice_id))
        if subscription_id:
            query = query.filter(
                PaymentReminder.subscription_id == coerce_uuid(subscription_id)
            )
        if status:
            query = query.filter(
                PaymentReminder.status == validate_enum(status, ReminderStatus, "status")
            )
        if reminder_type:
            query = query.filter(
                PaymentReminder.reminder_type
                == validate_enum(reminder_type, ReminderType, "reminder_type")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "scheduled_at": PaymentReminder.scheduled_at,
                "created_at": PaymentReminder.created_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def get_reminder_stats(
        db: Session,
        organization_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict:
        base = db.query(PaymentReminder).filter(
            PaymentReminder.organization_id == coerce_uuid(organization_id)
        )
        if date_from:
            base = base.filter(PaymentReminder.scheduled_at >= date_from)
        if date_to:
            base = base.filter(PaymentReminder.scheduled_at < date_to)

        def _breakdown(column, enum_cls) -> dict:
            rows = (
                base.with_entities(column, func.count(PaymentReminder.id))
                .group_by(column)
                .all()
            )
            counts = {member.value: 0 for member in enum_cls}
            for key, count in rows:
                counts[key.value] = count
            return counts

        by_status = _breakdown(PaymentReminder.status, ReminderStatus)
        attempted = by_status["sent"] + by_status["failed"]
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_method": _breakdown(PaymentReminder.method, ReminderMethod),
            "by_type": _breakdown(PaymentReminder.reminder_type, ReminderType),
            "delivery_rate": round(by_status["sent"] * 100 / attempted, 2) if attempted else 0,
        }

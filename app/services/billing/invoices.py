"""Invoice creation, numbering, status transitions, PDF and analytics."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, StateError, ValidationError
from app.models.audit import AuditAction, AuditEntityType
from app.models.billing import (
    BillingSubscription,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    Payment,
    PaymentStatus,
)
from app.schemas.billing import InvoiceCreate, InvoiceStatusUpdate, RequestContext
from app.services import numbering
from app.services import tax as tax_service
from app.services.billing._common import (
    _get_customer,
    _sum,
    _tax_profile,
    _tax_region,
    _validate_currency,
)
from app.services.billing.invoice_pdf import render_invoice_pdf
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

_ALLOWED_TRANSITIONS = {
    InvoiceStatus.draft: {InvoiceStatus.open, InvoiceStatus.void},
    InvoiceStatus.open: {
        InvoiceStatus.paid,
        InvoiceStatus.void,
        InvoiceStatus.overdue,
        InvoiceStatus.partial,
    },
    InvoiceStatus.overdue: {InvoiceStatus.paid, InvoiceStatus.void, InvoiceStatus.partial},
    InvoiceStatus.partial: {InvoiceStatus.paid, InvoiceStatus.void, InvoiceStatus.overdue},
    InvoiceStatus.paid: set(),
    InvoiceStatus.void: set(),
}

_OUTSTANDING_STATUSES = (InvoiceStatus.open, InvoiceStatus.overdue, InvoiceStatus.partial)


def invoice_pdf_url(invoice: Invoice) -> str:
    return f"{settings.app_url.rstrip('/')}/api/v1/invoices/{invoice.id}/pdf"


def _month_keys(now: datetime, months: int = 12) -> list[str]:
    year, month = now.year, now.month
    keys = []
    for _ in range(months):
        keys.append(f"{year}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


class Invoices(ListResponseMixin):
    @staticmethod
    def create_invoice(
        db: Session, payload: InvoiceCreate, context: RequestContext | None = None
    ) -> Invoice:
        customer = _get_customer(db, payload.customer_id)
        currency = _validate_currency(payload.currency)
        if payload.subscription_id:
            subscription = get_by_id(db, BillingSubscription, payload.subscription_id)
            if not subscription or subscription.customer_id != customer.id:
                raise ValidationError("Subscription not found for customer")

        issue_date = as_utc(payload.issue_date) or utcnow()
        due_date = as_utc(payload.due_date) or issue_date + timedelta(
            days=settings.invoice_due_days
        )
        amounts = [
            round_currency(line.quantity * line.unit_price, currency) for line in payload.lines
        ]
        invoice_tax = tax_service.calculate_invoice_tax(
            [(amount, line.tax_category) for amount, line in zip(amounts, payload.lines)],
            _tax_region(customer),
            _tax_profile(customer),
            currency,
        )
        subtotal = _sum(amounts)

        invoice = Invoice(
            organization_id=customer.organization_id,
            customer_id=customer.id,
            subscription_id=coerce_uuid(payload.subscription_id),
            invoice_number=numbering.generate_invoice_number(
                db, customer.organization_id, issue_date
            ),
            status=InvoiceStatus(payload.status),
            currency=currency,
            subtotal=subtotal,
            tax_amount=invoice_tax.total_tax_amount,
            tax_rate=invoice_tax.effective_tax_rate,
            total=subtotal + invoice_tax.total_tax_amount,
            issue_date=issue_date,
            due_date=due_date,
            notes=payload.notes,
            metadata_=payload.metadata,
        )
        for position, (line, amount, line_tax) in enumerate(
            zip(payload.lines, amounts, invoice_tax.items)
        ):
            invoice.lines.append(
                InvoiceLine(
                    position=position,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    amount=amount,
                    tax_category=line_tax.category,
                    tax_amount=line_tax.tax_amount,
                )
            )
        db.add(invoice)
        db.flush()
        PaymentAudit.log_payment_action(
            db,
            invoice.organization_id,
            AuditAction.create,
            AuditEntityType.invoice,
            invoice.id,
            new_data=snapshot(invoice),
            context=context,
        )
        if invoice.status == InvoiceStatus.open:
            Reminders.schedule_invoice_reminders(db, invoice)
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Created invoice %s number=%s total=%s %s",
            invoice.id,
            invoice.invoice_number,
            invoice.total,
            invoice.currency,
        )
        return invoice

    @staticmethod
    def get(db: Session, invoice_id: str) -> Invoice:
        invoice = get_by_id(db, Invoice, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        return invoice

    @staticmethod
    def list(
        db: Session,
        organization_id: str | None = None,
        customer_id: str | None = None,
        status: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        order_by: str = "issue_date",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Invoice)
        if organization_id:
            query = query.filter(Invoice.organization_id == coerce_uuid(organization_id))
        if customer_id:
            query = query.filter(Invoice.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        if date_from:
            query = query.filter(Invoice.issue_date >= date_from)
        if date_to:
            query = query.filter(Invoice.issue_date < date_to)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "issue_date": Invoice.issue_date,
                "due_date": Invoice.due_date,
                "total": Invoice.total,
                "invoice_number": Invoice.invoice_number,
                "created_at": Invoice.created_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def set_status(
        db: Session,
        invoice: Invoice,
        status: InvoiceStatus,
        paid_at: datetime | None = None,
        context: RequestContext | None = None,
    ) -> bool:
        """Apply one status transition. The caller commits."""
        old_status = invoice.status
        if status == old_status:
            return False
        if status not in _ALLOWED_TRANSITIONS[old_status]:
            raise StateError(
                f"Invoice cannot move from {old_status.value} to {status.value}"
            )
        invoice.status = status
        if status == InvoiceStatus.paid:
            invoice.paid_at = as_utc(paid_at) or utcnow()
        PaymentAudit.log_payment_action(
            db,
            invoice.organization_id,
            AuditAction.status_change,
            AuditEntityType.invoice,
            invoice.id,
            old_data={"status": old_status.value},
            new_data={"status": status.value, "paid_at": invoice.paid_at},
            context=context,
        )
        if status in (InvoiceStatus.paid, InvoiceStatus.void):
            Reminders.cancel_invoice_reminders(db, invoice.id)
        elif status == InvoiceStatus.open:
            Reminders.schedule_invoice_reminders(db, invoice)
        return True

    @staticmethod
    def update_invoice_status(
        db: Session,
        invoice_id: str,
        payload: InvoiceStatusUpdate,
        context: RequestContext | None = None,
    ) -> Invoice:
        invoice = Invoices.get(db, invoice_id)
        Invoices.set_status(db, invoice, payload.status, payload.paid_at, context)
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def void_invoice(
        db: Session, invoice_id: str, context: RequestContext | None = None
    ) -> Invoice:
        invoice = Invoices.get(db, invoice_id)
        Invoices.set_status(db, invoice, InvoiceStatus.void, context=context)
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def apply_payment(
        db: Session, invoice: Invoice, context: RequestContext | None = None
    ) -> Invoice:
        """Recompute the invoice status from its collected payments.

        Tax is added per payment, so the pre-tax part of each payment is
        compared with the invoice subtotal. The caller commits.
        """
        # the triggering payment's new status may not be flushed yet
        db.flush()
        payments = (
            db.query(Payment)
            .filter(Payment.invoice_id == invoice.id)
            .filter(
                Payment.status.in_(
                    (PaymentStatus.succeeded, PaymentStatus.partially_refunded)
                )
            )
            .all()
        )
        collected = _sum(payment.amount - (payment.tax_amount or 0) for payment in payments)
        if collected >= Decimal(str(invoice.subtotal)):
            target = InvoiceStatus.paid
        elif collected > 0:
            target = InvoiceStatus.partial
        else:
            return invoice
        if target != invoice.status and target not in _ALLOWED_TRANSITIONS[invoice.status]:
            logger.warning(
                "Payment recorded on invoice %s in status %s; leaving status unchanged",
                invoice.id,
                invoice.status.value,
            )
            return invoice
        paid_at = max((as_utc(p.paid_at) for p in payments if p.paid_at), default=None)
        Invoices.set_status(db, invoice, target, paid_at, context)
        return invoice

    @staticmethod
    def mark_overdue(db: Session, now: datetime | None = None, limit: int = 200) -> dict:
        now = now or utcnow()
        invoices = (
            db.query(Invoice)
            .filter(Invoice.status.in_((InvoiceStatus.open, InvoiceStatus.partial)))
            .filter(Invoice.due_date < now)
            .order_by(Invoice.due_date.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        result = {"processed": 0, "failed": 0, "skipped": 0, "errors": []}
        for invoice in invoices:
            try:
                Invoices.set_status(db, invoice, InvoiceStatus.overdue)
                db.commit()
                result["processed"] += 1
            except Exception as exc:
                db.rollback()
                logger.exception("Failed to mark invoice %s overdue", invoice.id)
                result["failed"] += 1
                result["errors"].append({"id": str(invoice.id), "error": str(exc)})
        logger.info("Marked %s invoices overdue", result["processed"])
        return result

    @staticmethod
    def generate_invoice_pdf(db: Session, invoice_id: str) -> Invoice:
        invoice = Invoices.get(db, invoice_id)
        # render once so a broken invoice fails here rather than on download
        render_invoice_pdf(invoice)
        invoice.pdf_url = invoice_pdf_url(invoice)
        invoice.pdf_generated_at = utcnow()
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def render_pdf(db: Session, invoice_id: str) -> bytes:
        return render_invoice_pdf(Invoices.get(db, invoice_id))

    @staticmethod
    def get_invoice_analytics(
        db: Session,
        organization_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        now: datetime | None = None,
    ) -> dict:
        now = now or utcnow()
        query = db.query(Invoice).filter(
            Invoice.organization_id == coerce_uuid(organization_id)
        )
        if date_from:
            query = query.filter(Invoice.issue_date >= date_from)
        if date_to:
            query = query.filter(Invoice.issue_date < date_to)
        invoices = query.all()

        status_breakdown = {
            status.value: {"count": 0, "total": Decimal("0")} for status in InvoiceStatus
        }
        month_keys = _month_keys(now)
        monthly = {key: {"count": 0, "total": Decimal("0")} for key in month_keys}
        customers: dict = {}
        for invoice in invoices:
            total = Decimal(str(invoice.total))
            bucket = status_breakdown[invoice.status.value]
            bucket["count"] += 1
            bucket["total"] += total
            issued = as_utc(invoice.issue_date)
            key = f"{issued.year}-{issued.month:02d}"
            if key in monthly:
                monthly[key]["count"] += 1
                monthly[key]["total"] += total
            if invoice.status == InvoiceStatus.void:
                continue
            entry = customers.setdefault(
                invoice.customer_id,
                {
                    "customer_id": str(invoice.customer_id),
                    "name": invoice.customer.name if invoice.customer else None,
                    "invoice_count": 0,
                    "total": Decimal("0"),
                },
            )
            entry["invoice_count"] += 1
            entry["total"] += total

        billable = [invoice for invoice in invoices if invoice.status != InvoiceStatus.void]
        total_invoiced = _sum(invoice.total for invoice in billable)
        outstanding = _sum(
            invoice.total for invoice in billable if invoice.status in _OUTSTANDING_STATUSES
        )
        return {
            "total_invoices": len(invoices),
            "total_invoiced": total_invoiced,
            "total_paid": status_breakdown[InvoiceStatus.paid.value]["total"],
            "total_outstanding": outstanding,
            "average_invoice": (
                (total_invoiced / len(billable)).quantize(Decimal("0.01"))
                if billable
                else Decimal("0")
            ),
            "status_breakdown": status_breakdown,
            "monthly_trend": [{"month": key, **monthly[key]} for key in month_keys],
            "top_customers": sorted(
                customers.values(), key=lambda item: item["total"], reverse=True
            )[:10],
        }

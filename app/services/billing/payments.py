"""Payment orchestration and payment method management."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, ProviderError, StateError, ValidationError
from app.metrics import observe_payment
from app.models.audit import AuditAction, AuditEntityType
from app.models.billing import (
    TERMINAL_PAYMENT_STATUSES,
    BillingSubscription,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentMethodType,
    PaymentProvider,
    PaymentRefund,
    PaymentStatus,
    RefundStatus,
)
from app.schemas.billing import (
    BillingCalculation,
    KonbiniConfirm,
    PaymentCreate,
    PaymentMethodCreate,
    RefundCreate,
    RequestContext,
)
from app.services import payment_providers
from app.services import tax as tax_service
from app.services.billing._common import (
    _claim_failed_attempt,
    _default_payment_method,
    _get_customer,
    _lock_customer,
    _release_attempt,
    _sum,
    _tax_profile,
    _tax_region,
    _validate_currency,
)
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    round_currency,
    utcnow,
    validate_enum,
)
from app.services.payment_audit import PaymentAudit, snapshot
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_DEFAULT_METHOD_TYPES = {
    PaymentProvider.stripe: PaymentMethodType.card,
    PaymentProvider.paypay: PaymentMethodType.paypay,
    PaymentProvider.konbini: PaymentMethodType.konbini,
}

# refunds that count against the refundable balance
_OPEN_REFUND_STATUSES = (
    RefundStatus.pending,
    RefundStatus.processing,
    RefundStatus.succeeded,
)

_REFUNDABLE_STATUSES = (PaymentStatus.succeeded, PaymentStatus.partially_refunded)


def _refunded_total(db: Session, payment: Payment) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(PaymentRefund.amount), 0))
        .filter(PaymentRefund.payment_id == payment.id)
        .filter(PaymentRefund.status.in_(_OPEN_REFUND_STATUSES))
        .scalar()
    )
    return round_currency(total or 0, payment.currency)


def _requested_amount(payment: Payment) -> Decimal:
    """The pre-tax amount the payment was created for."""
    return Decimal(str(payment.amount)) - Decimal(str(payment.tax_amount or 0))


def _record_provider_failure(payment: Payment, exc: ProviderError) -> None:
    metadata = dict(payment.metadata_ or {})
    metadata["error"] = exc.message
    metadata["error_code"] = exc.error_code
    metadata["provider"] = exc.provider or payment.provider.value
    payment.metadata_ = metadata
    payment.status = PaymentStatus.failed
    payment.failed_at = utcnow()


def _settle(db: Session, payment: Payment, context: RequestContext | None = None) -> None:
    """Carry a payment outcome into its invoice and subscription.

    Runs in the caller's transaction; the caller commits.
    """
    # circular: invoices and subscriptions both create payments
    from app.services.billing.invoices import Invoices
    from app.services.billing.subscriptions import Subscriptions

    if payment.status == PaymentStatus.succeeded and payment.invoice_id:
        invoice = db.get(Invoice, payment.invoice_id)
        if invoice is not None:
            Invoices.apply_payment(db, invoice, context)
    if payment.subscription_id and payment.status in (
        PaymentStatus.succeeded,
        PaymentStatus.failed,
    ):
        Subscriptions.apply_payment_result(db, payment, context)


class Payments(ListResponseMixin):
    @staticmethod
    def calculate_billing(
        amount: Decimal,
        discount_rate: Decimal | None = None,
        region: str | None = "JP",
        profile: tax_service.TaxProfile | None = None,
        currency: str = "JPY",
    ) -> BillingCalculation:
        """Apply a percentage discount, then tax the discounted amount."""
        subtotal = round_currency(amount, currency)
        discount_amount = round_currency(0, currency)
        applied: list[dict] = []
        if discount_rate:
            rate = Decimal(str(discount_rate))
            if rate < 0 or rate > 100:
                raise ValidationError("discount_rate must be between 0 and 100")
            discount_amount = round_currency(subtotal * rate / Decimal("100"), currency)
            applied.append(
                {"type": "percentage", "rate": str(rate), "amount": str(discount_amount)}
            )
        taxable = subtotal - discount_amount
        calculation = tax_service.calculate_tax(taxable, region, profile, currency)
        return BillingCalculation(
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_amount=calculation.tax_amount,
            tax_rate=calculation.tax_rate,
            total_amount=taxable + calculation.tax_amount,
            applied_discounts=applied,
        )

    @staticmethod
    def create_payment(
        db: Session, payload: PaymentCreate, context: RequestContext | None = None
    ) -> Payment:
        """Tax, persist and dispatch one payment.

        Validation failures leave nothing behind. A provider failure leaves
        the payment FAILED with the error in its metadata.
        """
        customer = _get_customer(db, payload.customer_id)
        adapter = payment_providers.get_adapter(payload.provider)
        currency = _validate_currency(payload.currency)

        method = None
        if payload.payment_method_id:
            method = get_by_id(db, PaymentMethod, payload.payment_method_id)
            if not method or not method.is_active or method.customer_id != customer.id:
                raise ValidationError("Payment method not found for customer")
            if method.provider != adapter.provider:
                raise ValidationError("Payment method belongs to a different provider")
        if payload.invoice_id:
            invoice = get_by_id(db, Invoice, payload.invoice_id)
            if not invoice or invoice.customer_id != customer.id:
                raise ValidationError("Invoice not found for customer")
            if invoice.status in (InvoiceStatus.paid, InvoiceStatus.void):
                raise StateError(f"Invoice is already {invoice.status.value}")
        if payload.subscription_id:
            subscription = get_by_id(db, BillingSubscription, payload.subscription_id)
            if not subscription or subscription.customer_id != customer.id:
                raise ValidationError("Subscription not found for customer")

        attempt_number = 1
        if payload.retry_of_id:
            original = get_by_id(db, Payment, payload.retry_of_id)
            if not original or original.customer_id != customer.id:
                raise ValidationError("Original payment not found for customer")
            retries = (
                db.query(func.count(Payment.id))
                .filter(Payment.retry_of_id == original.id)
                .scalar()
            )
            attempt_number = original.attempt_number + (retries or 0) + 1

        requested = round_currency(payload.amount, currency)
        if requested <= 0:
            raise ValidationError("Amount must be greater than zero")
        calculation = tax_service.calculate_tax(
            requested, _tax_region(customer), _tax_profile(customer), currency
        )

        payment = Payment(
            organization_id=customer.organization_id,
            customer_id=customer.id,
            payment_method_id=method.id if method else None,
            invoice_id=coerce_uuid(payload.invoice_id),
            subscription_id=coerce_uuid(payload.subscription_id),
            retry_of_id=coerce_uuid(payload.retry_of_id),
            provider=adapter.provider,
            method_type=payload.method_type
            or (method.method_type if method else _DEFAULT_METHOD_TYPES[adapter.provider]),
            amount=requested + calculation.tax_amount,
            tax_amount=calculation.tax_amount,
            tax_rate=calculation.tax_rate,
            currency=currency,
            status=PaymentStatus.pending,
            description=payload.description,
            attempt_number=attempt_number,
            metadata_=dict(payload.metadata or {}),
        )
        db.add(payment)
        try:
            db.flush()
            try:
                result = adapter.initiate(db, payment, payload)
            except ProviderError as exc:
                logger.error(
                    "Payment %s failed at provider %s: %s",
                    payment.id,
                    adapter.provider.value,
                    exc.message,
                )
                _record_provider_failure(payment, exc)
            else:
                payment.external_id = result.external_id
                payment.status = result.status
                payment.metadata_ = {**(payment.metadata_ or {}), **result.metadata}
                if result.status == PaymentStatus.succeeded:
                    payment.paid_at = utcnow()
                elif result.status == PaymentStatus.failed:
                    payment.failed_at = utcnow()
            PaymentAudit.log_payment_action(
                db,
                payment.organization_id,
                AuditAction.create,
                AuditEntityType.payment,
                payment.id,
                new_data=snapshot(payment),
                context=context,
            )
            _settle(db, payment, context)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(payment)
        observe_payment(payment.provider.value, payment.status.value)
        logger.info(
            "Created payment %s provider=%s amount=%s %s status=%s",
            payment.id,
            payment.provider.value,
            payment.amount,
            payment.currency,
            payment.status.value,
        )
        return payment

    @staticmethod
    def get(db: Session, payment_id: str) -> Payment:
        payment = get_by_id(db, Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    @staticmethod
    def list(
        db: Session,
        organization_id: str | None = None,
        customer_id: str | None = None,
        status: str | None = None,
        provider: str | None = None,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Payment)
        if organization_id:
            query = query.filter(Payment.organization_id == coerce_uuid(organization_id))
        if customer_id:
            query = query.filter(Payment.customer_id == coerce_uuid(customer_id))
        if invoice_id:
            query = query.filter(Payment.invoice_id == coerce_uuid(invoice_id))
        if subscription_id:
            query = query.filter(Payment.subscription_id == coerce_uuid(subscription_id))
        if status:
            query = query.filter(
                Payment.status == validate_enum(status, PaymentStatus, "status")
            )
        if provider:
            query = query.filter(
                Payment.provider == validate_enum(provider, PaymentProvider, "provider")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Payment.created_at,
                "paid_at": Payment.paid_at,
                "amount": Payment.amount,
                "status": Payment.status,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def transition(
        db: Session,
        payment: Payment,
        status: PaymentStatus,
        paid_at: datetime | None = None,
        action: AuditAction = AuditAction.status_change,
        context: RequestContext | None = None,
        details: dict | None = None,
    ) -> bool:
        """Move a payment to ``status`` and settle linked records.

        Terminal payments only move along refund bookkeeping; anything else
        is ignored and False is returned. The caller commits.
        """
        old_status = payment.status
        if status == old_status:
            return False
        if old_status in TERMINAL_PAYMENT_STATUSES:
            logger.info(
                "Ignoring %s -> %s for terminal payment %s",
                old_status.value,
                status.value,
                payment.id,
            )
            return False
        payment.status = status
        if status == PaymentStatus.succeeded:
            payment.paid_at = paid_at or utcnow()
        elif status == PaymentStatus.failed:
            payment.failed_at = utcnow()
        PaymentAudit.log_payment_action(
            db,
            payment.organization_id,
            action,
            AuditEntityType.payment,
            payment.id,
            old_data={"status": old_status.value},
            new_data={"status": status.value, **(details or {})},
            context=context,
        )
        _settle(db, payment, context)
        return True

    @staticmethod
    def sync_payment_status(
        db: Session, payment_id: str, context: RequestContext | None = None
    ) -> Payment:
        payment = Payments.get(db, payment_id)
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            return payment
        adapter = payment_providers.get_adapter(payment.provider)
        status = adapter.check_status(db, payment)
        Payments.transition(
            db, payment, status, context=context, details={"source": "status_sync"}
        )
        db.commit()
        db.refresh(payment)
        return payment

    @staticmethod
    def refund_payment(
        db: Session, payload: RefundCreate, context: RequestContext | None = None
    ) -> PaymentRefund:
        payment = (
            db.query(Payment)
            .filter(Payment.id == coerce_uuid(payload.payment_id))
            .with_for_update()
            .first()
        )
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status not in _REFUNDABLE_STATUSES:
            raise StateError("Only succeeded payments can be refunded")
        adapter = payment_providers.get_adapter(payment.provider)
        if not adapter.supports_refund:
            raise StateError(
                f"Refunds are not supported for {payment.provider.value} payments"
            )
        already_refunded = _refunded_total(db, payment)
        refundable = round_currency(payment.amount, payment.currency) - already_refunded
        amount = (
            round_currency(payload.amount, payment.currency)
            if payload.amount is not None
            else refundable
        )
        if amount <= 0:
            raise StateError("Nothing left to refund")
        if amount > refundable:
            raise StateError(
                f"Refund amount exceeds refundable balance ({refundable})",
                details={"refundable": str(refundable)},
            )

        result = adapter.refund(db, payment, amount, payload.reason)
        refund = PaymentRefund(
            payment_id=payment.id,
            amount=amount,
            reason=payload.reason,
            status=result.status,
            external_id=result.external_id,
            processed_at=result.processed_at,
            metadata_=result.metadata or None,
        )
        db.add(refund)
        old_status = payment.status
        if result.status != RefundStatus.failed:
            if already_refunded + amount >= round_currency(payment.amount, payment.currency):
                payment.status = PaymentStatus.refunded
            else:
                payment.status = PaymentStatus.partially_refunded
        db.flush()
        PaymentAudit.log_payment_action(
            db,
            payment.organization_id,
            AuditAction.refund,
            AuditEntityType.refund,
            refund.id,
            old_data={"payment_status": old_status.value, "refunded": already_refunded},
            new_data={
                "payment_id": payment.id,
                "payment_status": payment.status.value,
                "amount": amount,
                "refund_status": refund.status.value,
                "reason": payload.reason,
            },
            context=context,
        )
        db.commit()
        db.refresh(refund)
        logger.info(
            "Refunded %s %s on payment %s status=%s",
            amount,
            payment.currency,
            payment.id,
            refund.status.value,
        )
        return refund

    @staticmethod
    def list_refunds(db: Session, payment_id: str) -> list[PaymentRefund]:
        payment = Payments.get(db, payment_id)
        return list(payment.refunds)

    @staticmethod
    def handle_webhook(
        db: Session,
        provider,
        body: bytes,
        signature: str | None,
        context: RequestContext | None = None,
    ) -> dict:
        """Verify and apply a provider webhook.

        Unknown external ids are logged and ignored.
        """
        adapter = payment_providers.get_adapter(provider)
        event = adapter.normalize_webhook(body, signature)
        payment = adapter.find_payment(db, event)
        if payment is None:
            logger.warning(
                "Ignoring %s webhook for unknown payment external_id=%s event=%s",
                adapter.provider.value,
                event.external_id,
                event.event_type,
            )
            return {"status": "ignored", "reason": "unknown_payment"}
        adapter.apply_webhook(db, payment, event)
        changed = False
        if event.status is not None:
            changed = Payments.transition(
                db,
                payment,
                event.status,
                paid_at=event.paid_at,
                action=AuditAction.webhook,
                context=context,
                details={"event_type": event.event_type},
            )
        db.commit()
        return {
            "status": "processed" if changed else "unchanged",
            "payment_id": str(payment.id),
            "payment_status": payment.status.value,
        }

    @staticmethod
    def confirm_konbini_payment(
        db: Session, payload: KonbiniConfirm, context: RequestContext | None = None
    ) -> dict:
        """Confirm a store payment by code. Repeating a confirmation is a no-op."""
        adapter = payment_providers.get_adapter(PaymentProvider.konbini)
        record = adapter.get_by_code(db, payload.payment_code)
        if adapter.is_overdue(record):
            raise StateError("Konbini payment has expired")
        if not adapter.mark_paid(db, record, payload.paid_at, payload.store_location):
            return {
                "status": "already_confirmed",
                "payment_id": str(record.payment_id),
                "paid_at": record.paid_at,
            }
        Payments.transition(
            db,
            record.payment,
            PaymentStatus.succeeded,
            paid_at=record.paid_at,
            context=context,
            details={"source": "konbini_confirmation"},
        )
        db.commit()
        return {
            "status": "confirmed",
            "payment_id": str(record.payment_id),
            "paid_at": record.paid_at,
        }

    @staticmethod
    def expire_konbini_payments(
        db: Session, now: datetime | None = None, limit: int = 200
    ) -> dict:
        adapter = payment_providers.get_adapter(PaymentProvider.konbini)
        payments = adapter.cancel_expired_payments(db, now, limit)
        expired = 0
        for payment in payments:
            if Payments.transition(
                db, payment, PaymentStatus.failed, details={"reason": "konbini_expired"}
            ):
                expired += 1
        db.commit()
        logger.info("Expired %s konbini payments", expired)
        return {"processed": expired, "failed": 0, "skipped": len(payments) - expired, "errors": []}

    @staticmethod
    def retry_failed_payments(
        db: Session,
        now: datetime | None = None,
        window_hours: int = 24,
        limit: int = 50,
        max_attempts: int | None = None,
    ) -> dict:
        """Retry recently failed payments against the customer's default method.

        Each original payment is retried at most ``max_attempts`` times in
        total. Customers without a default method are skipped.
        """
        now = now or utcnow()
        max_attempts = max_attempts or settings.max_retry_attempts
        since = now - timedelta(hours=window_hours)
        candidates = (
            db.query(Payment)
            .filter(Payment.status == PaymentStatus.failed)
            .filter(Payment.failed_at >= since)
            .order_by(Payment.failed_at.asc())
            .limit(limit)
            .all()
        )
        result = {"processed": 0, "failed": 0, "skipped": 0, "errors": []}
        seen: set = set()
        for payment in candidates:
            root_id = payment.retry_of_id or payment.id
            if root_id in seen:
                result["skipped"] += 1
                continue
            seen.add(root_id)
            chain = (
                db.query(Payment)
                .filter((Payment.id == root_id) | (Payment.retry_of_id == root_id))
                .all()
            )
            # only the newest attempt of a chain is retried
            payment = max(chain, key=lambda item: item.attempt_number)
            if payment.status != PaymentStatus.failed:
                result["skipped"] += 1
                continue
            if len(chain) >= max_attempts:
                result["skipped"] += 1
                continue
            method = _default_payment_method(db, payment.customer_id)
            if method is None:
                result["skipped"] += 1
                continue
            billing_key = (payment.metadata_ or {}).get("billing_attempt_key")
            if billing_key and not _claim_failed_attempt(db, billing_key):
                result["skipped"] += 1
                continue
            metadata = {
                key: value
                for key, value in (payment.metadata_ or {}).items()
                if key in ("subscription_id", "billing_period", "plan_name", "billing_attempt_key")
            }
            metadata["retry_of"] = str(root_id)
            payload = PaymentCreate(
                customer_id=payment.customer_id,
                amount=_requested_amount(payment),
                currency=payment.currency,
                provider=method.provider,
                method_type=method.method_type,
                payment_method_id=method.id,
                invoice_id=payment.invoice_id,
                subscription_id=payment.subscription_id,
                description=payment.description,
                metadata=metadata,
                retry_of_id=root_id,
            )
            try:
                retry = Payments.create_payment(db, payload)
            except Exception as exc:
                logger.exception("Retry of payment %s failed", payment.id)
                db.rollback()
                if billing_key:
                    _release_attempt(db, billing_key, str(exc))
                result["failed"] += 1
                result["errors"].append({"id": str(payment.id), "error": str(exc)})
                continue
            result["processed"] += 1
            if retry.status == PaymentStatus.failed:
                result["failed"] += 1
        logger.info(
            "Failed payment retry processed=%s failed=%s skipped=%s",
            result["processed"],
            result["failed"],
            result["skipped"],
        )
        return result

    @staticmethod
    def get_payment_stats(
        db: Session,
        organization_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict:
        org_id = coerce_uuid(organization_id)
        query = db.query(
            Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)
        ).filter(Payment.organization_id == org_id)
        if date_from:
            query = query.filter(Payment.created_at >= date_from)
        if date_to:
            query = query.filter(Payment.created_at < date_to)
        rows = query.group_by(Payment.status).all()

        by_status = {status.value: {"count": 0, "amount": Decimal("0")} for status in PaymentStatus}
        for status, count, amount in rows:
            by_status[status.value] = {"count": count, "amount": Decimal(str(amount))}

        collected_statuses = (
            PaymentStatus.succeeded,
            PaymentStatus.partially_refunded,
            PaymentStatus.refunded,
        )
        collected = _sum(by_status[status.value]["amount"] for status in collected_statuses)
        succeeded_count = sum(by_status[status.value]["count"] for status in collected_statuses)
        failed_count = by_status[PaymentStatus.failed.value]["count"]

        refund_query = (
            db.query(func.coalesce(func.sum(PaymentRefund.amount), 0))
            .join(Payment, Payment.id == PaymentRefund.payment_id)
            .filter(Payment.organization_id == org_id)
            .filter(PaymentRefund.status == RefundStatus.succeeded)
        )
        if date_from:
            refund_query = refund_query.filter(PaymentRefund.created_at >= date_from)
        if date_to:
            refund_query = refund_query.filter(PaymentRefund.created_at < date_to)
        refunded = Decimal(str(refund_query.scalar() or 0))

        attempted = succeeded_count + failed_count
        success_rate = Decimal("0")
        if attempted:
            success_rate = (Decimal(succeeded_count) * 100 / Decimal(attempted)).quantize(
                Decimal("0.01")
            )
        return {
            "total_payments": sum(item["count"] for item in by_status.values()),
            "successful_payments": succeeded_count,
            "failed_payments": failed_count,
            "success_rate": success_rate,
            "total_revenue": collected,
            "total_refunds": refunded,
            "net_revenue": collected - refunded,
            "by_status": by_status,
        }


class PaymentMethods(ListResponseMixin):
    @staticmethod
    def _clear_default(db: Session, customer_id, keep_id=None) -> None:
        query = db.query(PaymentMethod).filter(
            PaymentMethod.customer_id == customer_id,
            PaymentMethod.is_default.is_(True),
        )
        if keep_id is not None:
            query = query.filter(PaymentMethod.id != keep_id)
        query.update({"is_default": False}, synchronize_session="fetch")

    @staticmethod
    def add_payment_method(
        db: Session, payload: PaymentMethodCreate, context: RequestContext | None = None
    ) -> PaymentMethod:
        customer = _lock_customer(db, payload.customer_id)
        adapter = payment_providers.get_adapter(payload.provider)
        details = adapter.add_payment_method(db, payload)
        has_default = _default_payment_method(db, customer.id) is not None
        make_default = payload.is_default or not has_default
        if make_default:
            PaymentMethods._clear_default(db, customer.id)
        metadata = {**(payload.metadata or {}), **details.metadata}
        method = PaymentMethod(
            customer_id=customer.id,
            method_type=payload.method_type,
            provider=adapter.provider,
            external_id=details.external_id,
            last4=details.last4,
            brand=details.brand,
            expires_month=details.expires_month,
            expires_year=details.expires_year,
            is_default=make_default,
            metadata_=metadata or None,
        )
        db.add(method)
        db.flush()
        PaymentAudit.log_payment_action(
            db,
            customer.organization_id,
            AuditAction.create,
            AuditEntityType.payment_method,
            method.id,
            new_data=snapshot(method),
            context=context,
        )
        db.commit()
        db.refresh(method)
        return method

    @staticmethod
    def get(db: Session, method_id: str) -> PaymentMethod:
        method = get_by_id(db, PaymentMethod, method_id)
        if not method:
            raise NotFoundError("Payment method not found")
        return method

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None = None,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(PaymentMethod)
        if customer_id:
            query = query.filter(PaymentMethod.customer_id == coerce_uuid(customer_id))
        if is_active is None:
            query = query.filter(PaymentMethod.is_active.is_(True))
        else:
            query = query.filter(PaymentMethod.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": PaymentMethod.created_at, "method_type": PaymentMethod.method_type},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def list_payment_methods(db: Session, customer_id: str) -> list[PaymentMethod]:
        _get_customer(db, customer_id)
        return PaymentMethods.list(db, customer_id=customer_id, limit=100, offset=0)

    @staticmethod
    def set_default_payment_method(
        db: Session, method_id: str, context: RequestContext | None = None
    ) -> PaymentMethod:
        method = PaymentMethods.get(db, method_id)
        if not method.is_active:
            raise StateError("Inactive payment methods cannot be the default")
        if not method.is_default:
            _lock_customer(db, method.customer_id)
            PaymentMethods._clear_default(db, method.customer_id, keep_id=method.id)
            method.is_default = True
            PaymentAudit.log_payment_action(
                db,
                method.customer.organization_id,
                AuditAction.update,
                AuditEntityType.payment_method,
                method.id,
                old_data={"is_default": False},
                new_data={"is_default": True},
                context=context,
            )
        db.commit()
        db.refresh(method)
        return method

    @staticmethod
    def remove_payment_method(
        db: Session, method_id: str, context: RequestContext | None = None
    ) -> PaymentMethod | None:
        """Deactivate a method; the newest remaining one inherits the default.

        Returns the new default method, if any.
        """
        method = PaymentMethods.get(db, method_id)
        if not method.is_active:
            raise NotFoundError("Payment method not found")
        _lock_customer(db, method.customer_id)
        was_default = method.is_default
        method.is_active = False
        method.is_default = False
        # the old default must be cleared before another row can take it
        db.flush()
        promoted = None
        if was_default:
            promoted = (
                db.query(PaymentMethod)
                .filter(PaymentMethod.customer_id == method.customer_id)
                .filter(PaymentMethod.is_active.is_(True))
                .filter(PaymentMethod.id != method.id)
                .order_by(PaymentMethod.created_at.desc())
                .first()
            )
            if promoted is not None:
                promoted.is_default = True
        PaymentAudit.log_payment_action(
            db,
            method.customer.organization_id,
            AuditAction.delete,
            AuditEntityType.payment_method,
            method.id,
            old_data={"is_active": True, "is_default": was_default},
            new_data={
                "is_active": False,
                "promoted_default_id": promoted.id if promoted else None,
            },
            context=context,
        )
        db.commit()
        if promoted is not None:
            db.refresh(promoted)
        return promoted

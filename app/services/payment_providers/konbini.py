"""Convenience-store (konbini) cash payments.

The payment code, barcode payload and QR payload are generated locally;
nothing is sent to a remote network at creation time. Payment is confirmed
later by a store-network webhook or by an operator entering the code.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, StateError, ValidationError, WebhookSignatureError
from app.models.billing import Payment, PaymentProvider, PaymentStatus
from app.models.provider_payments import KonbiniPayment, KonbiniStatus, KonbiniStore
from app.services.common import as_utc, utcnow
from app.services.payment_providers.base import (
    PaymentAdapter,
    ProviderResult,
    WebhookEvent,
)


MIN_AMOUNT = Decimal("1")
MAX_AMOUNT = Decimal("300000")

_STORE_DETAILS = {
    KonbiniStore.seven_eleven: ("7-Eleven", "multi-copy machine", "Payment Services"),
    KonbiniStore.family_mart: ("FamilyMart", "Famiport machine", "Payment"),
    KonbiniStore.lawson: ("Lawson", "Loppi machine", "Payment"),
    KonbiniStore.ministop: ("Ministop", "MINISTOP Loppi machine", "Payment Services"),
}


def generate_payment_code() -> str:
    """13 digits: last 8 of the epoch milliseconds plus 5 random digits."""
    stamp = str(int(time.time() * 1000))[-8:]
    return f"{stamp}{secrets.randbelow(100000):05d}"


def barcode_payload(payment_code: str) -> str:
    return f"CODE128:{payment_code}"


def qr_payload(payment_code: str, amount: Decimal) -> str:
    return f"konbini:{payment_code}:{int(amount)}"


def get_store_instructions(store: KonbiniStore, payment_code: str) -> dict:
    name, machine, menu = _STORE_DETAILS.get(
        store, ("convenience store", "terminal machine", "payment services")
    )
    steps = [
        f"1. Go to any {name} store",
        f"2. Use the {machine}",
        f'3. Select "{menu}"',
        f"4. Enter payment code: {payment_code}",
        "5. Print the payment slip",
        "6. Take the slip to the cashier",
        "7. Pay the amount shown",
    ]
    return {
        "store_name": name,
        "payment_code": payment_code,
        "expiry_note": "Payment must be completed before the expiry date.",
        "instructions": "\n".join(steps),
    }


def get_store_limits(store: KonbiniStore | None = None) -> dict:
    return {
        "min_amount": MIN_AMOUNT,
        "max_amount": MAX_AMOUNT,
        "fee": Decimal("0"),
        "currency": "JPY",
    }


def verify_webhook_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class KonbiniAdapter(PaymentAdapter):
    provider = PaymentProvider.konbini
    supports_refund = False

    def initiate(self, db: Session, payment: Payment, request) -> ProviderResult:
        limits = get_store_limits()
        if payment.amount < limits["min_amount"] or payment.amount > limits["max_amount"]:
            raise ValidationError(
                f"Konbini payments must be between {limits['min_amount']} and "
                f"{limits['max_amount']} JPY"
            )
        store = getattr(request, "konbini_store", None) or KonbiniStore.seven_eleven
        expiry_days = getattr(request, "expiry_days", None) or settings.konbini_expiry_days
        code = generate_payment_code()
        expires_at = utcnow() + timedelta(days=expiry_days)
        instructions = get_store_instructions(store, code)
        record = KonbiniPayment(
            payment_id=payment.id,
            payment_code=code,
            barcode=barcode_payload(code),
            qr_code_data=qr_payload(code, payment.amount),
            store_type=store,
            amount=payment.amount,
            status=KonbiniStatus.pending,
            expires_at=expires_at,
            instructions=instructions["instructions"],
        )
        db.add(record)
        db.flush()
        return ProviderResult(
            external_id=code,
            status=PaymentStatus.pending,
            metadata={
                "payment_code": code,
                "barcode": record.barcode,
                "qr_code": record.qr_code_data,
                "store": store.value,
                "expires_at": expires_at.isoformat(),
                "instructions": instructions,
            },
        )

    def get_by_code(self, db: Session, payment_code: str) -> KonbiniPayment:
        record = (
            db.query(KonbiniPayment)
            .filter(KonbiniPayment.payment_code == payment_code)
            .first()
        )
        if not record:
            raise NotFoundError("Konbini payment not found")
        return record

    def expire(self, record: KonbiniPayment) -> bool:
        """Expire one pending code. Returns False when it was no longer pending."""
        if record.status != KonbiniStatus.pending:
            return False
        record.status = KonbiniStatus.expired
        return True

    def is_overdue(self, record: KonbiniPayment, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return record.status == KonbiniStatus.pending and as_utc(record.expires_at) < now

    def mark_paid(
        self,
        db: Session,
        record: KonbiniPayment,
        paid_at: datetime | None = None,
        store_location: str | None = None,
    ) -> bool:
        """Record the store-side payment. Returns False when already paid."""
        if record.status == KonbiniStatus.paid:
            return False
        if record.status != KonbiniStatus.pending:
            raise StateError(f"Konbini payment is {record.status.value}")
        record.status = KonbiniStatus.paid
        record.paid_at = paid_at or utcnow()
        if store_location:
            record.store_location = store_location
        return True

    def check_status(self, db: Session, payment: Payment) -> PaymentStatus:
        record = payment.konbini_payment
        if record is None:
            return payment.status
        if self.is_overdue(record):
            self.expire(record)
        if record.status == KonbiniStatus.paid:
            return PaymentStatus.succeeded
        if record.status in (KonbiniStatus.expired, KonbiniStatus.canceled):
            return PaymentStatus.failed
        return PaymentStatus.pending

    def cancel_expired_payments(
        self, db: Session, now: datetime | None = None, limit: int = 200
    ) -> list[Payment]:
        """Expire pending codes past their deadline.

        Returns the parent payments; the caller moves each one to FAILED in
        the same transaction.
        """
        now = now or utcnow()
        records = (
            db.query(KonbiniPayment)
            .filter(KonbiniPayment.status == KonbiniStatus.pending)
            .filter(KonbiniPayment.expires_at < now)
            .order_by(KonbiniPayment.expires_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        payments = []
        for record in records:
            if self.expire(record):
                payments.append(record.payment)
        return payments

    def normalize_webhook(self, body: bytes, signature: str | None) -> WebhookEvent:
        if not verify_webhook_signature(body, signature, settings.konbini_webhook_secret):
            raise WebhookSignatureError("Invalid konbini webhook signature")
        payload = json.loads(body)
        raw = (payload.get("status") or "").upper()
        paid_at = None
        if payload.get("paid_at"):
            paid_at = as_utc(datetime.fromisoformat(payload["paid_at"]))
        status = None
        if raw == "PAID":
            status = PaymentStatus.succeeded
            paid_at = paid_at or utcnow()
        elif raw in ("EXPIRED", "CANCELED"):
            status = PaymentStatus.failed
        return WebhookEvent(
            external_id=payload.get("payment_code"),
            status=status,
            event_type=raw,
            paid_at=paid_at,
            payload=payload,
        )

    def apply_webhook(self, db: Session, payment: Payment, event: WebhookEvent) -> None:
        record = payment.konbini_payment
        if record is None:
            return
        if event.status == PaymentStatus.succeeded:
            self.mark_paid(db, record, event.paid_at, event.payload.get("store_location"))
        elif event.event_type == "EXPIRED":
            record.status = KonbiniStatus.expired
        elif event.event_type == "CANCELED":
            record.status = KonbiniStatus.canceled

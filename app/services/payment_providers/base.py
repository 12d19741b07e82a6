from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.errors import StateError
from app.models.billing import Payment, PaymentProvider, PaymentStatus, RefundStatus


@dataclass
class ProviderResult:
    external_id: str | None
    status: PaymentStatus
    metadata: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    external_id: str | None
    status: RefundStatus
    processed_at: datetime | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """Provider webhook reduced to what the orchestrator needs."""

    external_id: str | None
    status: PaymentStatus | None
    event_type: str | None = None
    paid_at: datetime | None = None
    payload: dict = field(default_factory=dict)


@dataclass
class PaymentMethodDetails:
    external_id: str | None
    last4: str | None = None
    brand: str | None = None
    expires_month: int | None = None
    expires_year: int | None = None
    metadata: dict = field(default_factory=dict)


class PaymentAdapter(ABC):
    """Capability set every payment provider implements."""

    provider: PaymentProvider
    supports_refund: bool = True

    @abstractmethod
    def initiate(self, db: Session, payment: Payment, request) -> ProviderResult:
        """Start the payment with the provider for an already-flushed Payment."""
        raise NotImplementedError

    def refund(
        self, db: Session, payment: Payment, amount: Decimal, reason: str | None
    ) -> RefundResult:
        raise StateError(f"Refunds are not supported for {self.provider.value} payments")

    @abstractmethod
    def check_status(self, db: Session, payment: Payment) -> PaymentStatus:
        raise NotImplementedError

    @abstractmethod
    def normalize_webhook(self, body: bytes, signature: str | None) -> WebhookEvent:
        """Verify the signature and map the payload onto an internal status."""
        raise NotImplementedError

    def find_payment(self, db: Session, event: WebhookEvent) -> Payment | None:
        if not event.external_id:
            return None
        return (
            db.query(Payment)
            .filter(Payment.provider == self.provider)
            .filter(Payment.external_id == event.external_id)
            .first()
        )

    def apply_webhook(self, db: Session, payment: Payment, event: WebhookEvent) -> None:
        """Reconcile any provider-specific record before the parent status changes."""
        return None

    def add_payment_method(self, db: Session, request) -> PaymentMethodDetails:
        return PaymentMethodDetails(external_id=None)

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class ReminderType(enum.Enum):
    payment_due = "payment_due"
    payment_overdue = "payment_overdue"
    subscription_renewal = "subscription_renewal"
    trial_ending = "trial_ending"
    payment_failed = "payment_failed"


class ReminderMethod(enum.Enum):
    email = "email"
    sms = "sms"
    line = "line"


class ReminderStatus(enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    canceled = "canceled"


class PaymentReminder(Base):
    __tablename__ = "payment_reminders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id")
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id")
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id")
    )
    reminder_type: Mapped[ReminderType] = mapped_column(Enum(ReminderType), nullable=False)
    method: Mapped[ReminderMethod] = mapped_column(
        Enum(ReminderMethod), default=ReminderMethod.email
    )
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(ReminderStatus), default=ReminderStatus.pending
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    customer = relationship("Customer")
    invoice = relationship("Invoice")
    subscription = relationship("BillingSubscription")
    payment = relationship("Payment")

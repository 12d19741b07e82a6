import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class KonbiniStore(enum.Enum):
    seven_eleven = "seven_eleven"
    family_mart = "family_mart"
    lawson = "lawson"
    ministop = "ministop"


class KonbiniStatus(enum.Enum):
    pending = "pending"
    paid = "paid"
    expired = "expired"
    canceled = "canceled"


class PayPayCodeStatus(enum.Enum):
    pending = "pending"
    authorized = "authorized"
    completed = "completed"
    canceled = "canceled"
    expired = "expired"
    failed = "failed"
    refunded = "refunded"


class KonbiniPayment(Base):
    __tablename__ = "konbini_payments"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_konbini_payments_payment"),
        UniqueConstraint("payment_code", name="uq_konbini_payments_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id"), nullable=False
    )
    payment_code: Mapped[str] = mapped_column(String(20), nullable=False)
    barcode: Mapped[str] = mapped_column(String(80), nullable=False)
    qr_code_data: Mapped[str] = mapped_column(String(120), nullable=False)
    store_type: Mapped[KonbiniStore] = mapped_column(
        Enum(KonbiniStore), default=KonbiniStore.seven_eleven
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[KonbiniStatus] = mapped_column(
        Enum(KonbiniStatus), default=KonbiniStatus.pending
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    store_location: Mapped[str | None] = mapped_column(String(160))
    instructions: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    payment = relationship("Payment", back_populates="konbini_payment")


class PayPayPayment(Base):
    __tablename__ = "paypay_payments"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_paypay_payments_payment"),
        UniqueConstraint("merchant_payment_id", name="uq_paypay_payments_merchant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id"), nullable=False
    )
    merchant_payment_id: Mapped[str] = mapped_column(String(80), nullable=False)
    code_id: Mapped[str | None] = mapped_column(String(80))
    qr_code_url: Mapped[str | None] = mapped_column(String(500))
    deeplink: Mapped[str | None] = mapped_column(String(500))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[PayPayCodeStatus] = mapped_column(
        Enum(PayPayCodeStatus), default=PayPayCodeStatus.pending
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    payment = relationship("Payment", back_populates="paypay_payment")

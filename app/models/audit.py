import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Index, JSON, String, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class AuditAction(enum.Enum):
    create = "create"
    update = "update"
    delete = "delete"
    refund = "refund"
    cancel = "cancel"
    schedule_cancel = "schedule_cancel"
    reactivate = "reactivate"
    change_plan = "change_plan"
    status_change = "status_change"
    webhook = "webhook"


class AuditEntityType(enum.Enum):
    payment = "payment"
    refund = "refund"
    payment_method = "payment_method"
    invoice = "invoice"
    subscription = "subscription"


class PaymentAuditLog(Base):
    __tablename__ = "payment_audit_logs"
    __table_args__ = (
        Index("ix_payment_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_payment_audit_logs_org_created", "organization_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    entity_type: Mapped[AuditEntityType] = mapped_column(
        Enum(AuditEntityType), nullable=False
    )
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_data: Mapped[dict | None] = mapped_column(JSON)
    new_data: Mapped[dict | None] = mapped_column(JSON)
    user_id: Mapped[str | None] = mapped_column(String(64))
    user_email: Mapped[str | None] = mapped_column(String(255))
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class AuditLogImmutableError(Exception):
    pass


@event.listens_for(PaymentAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError("payment audit log entries cannot be updated")


@event.listens_for(PaymentAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError("payment audit log entries cannot be deleted")

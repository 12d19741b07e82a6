"""initial billing schema

Revision ID: 8c1e2f3a4b5d
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "8c1e2f3a4b5d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


payment_status = _enum(
    "paymentstatus",
    "pending",
    "processing",
    "succeeded",
    "failed",
    "canceled",
    "refunded",
    "partially_refunded",
)
payment_provider = _enum("paymentprovider", "stripe", "paypay", "konbini")
payment_method_type = _enum("paymentmethodtype", "card", "paypay", "konbini", "bank_transfer")
refund_status = _enum("refundstatus", "pending", "processing", "succeeded", "failed", "canceled")
invoice_status = _enum("invoicestatus", "draft", "open", "paid", "void", "overdue", "partial")
tax_category = _enum("taxcategory", "standard", "reduced", "exempt")
billing_cycle = _enum("billingcycle", "weekly", "monthly", "yearly")
subscription_status = _enum(
    "subscriptionstatus",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
)
billing_attempt_status = _enum("billingattemptstatus", "started", "succeeded", "failed")
konbini_store = _enum("konbinistore", "seven_eleven", "family_mart", "lawson", "ministop")
konbini_status = _enum("konbinistatus", "pending", "paid", "expired", "canceled")
paypay_code_status = _enum(
    "paypaycodestatus",
    "pending",
    "authorized",
    "completed",
    "canceled",
    "expired",
    "failed",
    "refunded",
)
reminder_type = _enum(
    "remindertype",
    "payment_due",
    "payment_overdue",
    "subscription_renewal",
    "trial_ending",
    "payment_failed",
)
reminder_method = _enum("remindermethod", "email", "sms", "line")
reminder_status = _enum("reminderstatus", "pending", "sent", "failed", "canceled")
audit_action = _enum(
    "auditaction",
    "create",
    "update",
    "delete",
    "refund",
    "cancel",
    "schedule_cancel",
    "reactivate",
    "change_plan",
    "status_change",
    "webhook",
)
audit_entity_type = _enum(
    "auditentitytype", "payment", "refund", "payment_method", "invoice", "subscription"
)
cron_job_status = _enum("cronjobstatus", "idle", "running", "success", "failed", "skipped")

ALL_ENUMS = (
    payment_status,
    payment_provider,
    payment_method_type,
    refund_status,
    invoice_status,
    tax_category,
    billing_cycle,
    subscription_status,
    billing_attempt_status,
    konbini_store,
    konbini_status,
    paypay_code_status,
    reminder_type,
    reminder_method,
    reminder_status,
    audit_action,
    audit_entity_type,
    cron_job_status,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _fk(table: str, nullable: bool = True) -> sa.Column:
    return sa.Column(
        f"{table.rstrip('s')}_id" if table != "billing_subscriptions" else "subscription_id",
        UUID(as_uuid=True),
        sa.ForeignKey(f"{table}.id"),
        nullable=nullable,
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("address", sa.String(255)),
        sa.Column("tax_region", sa.String(8), server_default="JP"),
        sa.Column("currency", sa.String(3), server_default="JPY"),
        sa.Column("settings", sa.JSON),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "customers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(40)),
        sa.Column("line_user_id", sa.String(64)),
        sa.Column("stripe_customer_id", sa.String(64)),
        sa.Column("address", sa.String(255)),
        sa.Column("tax_region", sa.String(8)),
        sa.Column("tax_exempt", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reduced_tax_rate", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "payment_methods",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("customers", nullable=False),
        sa.Column("method_type", payment_method_type, nullable=False),
        sa.Column("provider", payment_provider, nullable=False),
        sa.Column("external_id", sa.String(120)),
        sa.Column("last4", sa.String(4)),
        sa.Column("brand", sa.String(40)),
        sa.Column("expires_month", sa.Integer),
        sa.Column("expires_year", sa.Integer),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON),
        *_timestamps(),
    )
    op.create_index(
        "uq_payment_methods_one_default",
        "payment_methods",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text("is_default AND is_active"),
    )
    op.create_table(
        "billing_subscriptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        _fk("customers", nullable=False),
        sa.Column("plan_id", sa.String(80), nullable=False),
        sa.Column("plan_name", sa.String(160), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), server_default="JPY"),
        sa.Column("billing_cycle", billing_cycle, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("next_billing_date", sa.DateTime(timezone=True)),
        sa.Column("trial_end", sa.DateTime(timezone=True)),
        sa.Column("discount_rate", sa.Numeric(5, 2)),
        sa.Column(
            "cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("pending_plan_id", sa.String(80)),
        sa.Column("pending_plan_name", sa.String(160)),
        sa.Column("pending_amount", sa.Numeric(12, 2)),
        sa.Column("failed_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_subscriptions_next_billing_date",
        "billing_subscriptions",
        ["next_billing_date"],
    )
    op.create_table(
        "invoices",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        _fk("customers", nullable=False),
        _fk("billing_subscriptions"),
        sa.Column("invoice_number", sa.String(40), nullable=False),
        sa.Column("status", invoice_status, nullable=False),
        sa.Column("currency", sa.String(3), server_default="JPY"),
        sa.Column("subtotal", sa.Numeric(12, 2), server_default="0"),
        sa.Column("tax_amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("tax_rate", sa.Numeric(6, 4), server_default="0"),
        sa.Column("total", sa.Numeric(12, 2), server_default="0"),
        sa.Column("issue_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.Text),
        sa.Column("pdf_url", sa.String(500)),
        sa.Column("pdf_generated_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", sa.JSON),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "invoice_number", name="uq_invoices_org_invoice_number"
        ),
    )
    op.create_table(
        "invoice_lines",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("invoices", nullable=False),
        sa.Column("position", sa.Integer, server_default="0"),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), server_default="0"),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("tax_category", tax_category),
        sa.Column("tax_amount", sa.Numeric(12, 2), server_default="0"),
    )
    op.create_table(
        "payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        _fk("customers", nullable=False),
        _fk("payment_methods"),
        _fk("invoices"),
        _fk("billing_subscriptions"),
        sa.Column("retry_of_id", UUID(as_uuid=True), sa.ForeignKey("payments.id")),
        sa.Column("provider", payment_provider, nullable=False),
        sa.Column("method_type", payment_method_type),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("tax_amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("tax_rate", sa.Numeric(6, 4), server_default="0"),
        sa.Column("currency", sa.String(3), server_default="JPY"),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("external_id", sa.String(120)),
        sa.Column("attempt_number", sa.Integer, nullable=False, server_default="1"),
        sa.Column("metadata", sa.JSON),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_payments_external_id", "payments", ["external_id"])
    op.create_table(
        "payment_refunds",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("payments", nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.Text),
        sa.Column("status", refund_status, nullable=False),
        sa.Column("external_id", sa.String(120)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", sa.JSON),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "billing_attempts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("idempotency_key", sa.String(160), nullable=False),
        _fk("billing_subscriptions", nullable=False),
        _fk("payments"),
        sa.Column("period_start", sa.DateTime(timezone=True)),
        sa.Column("period_end", sa.DateTime(timezone=True)),
        sa.Column("status", billing_attempt_status, nullable=False),
        sa.Column("error", sa.Text),
        *_timestamps(),
        sa.UniqueConstraint("idempotency_key", name="uq_billing_attempts_idempotency_key"),
    )
    op.create_table(
        "konbini_payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("payments", nullable=False),
        sa.Column("payment_code", sa.String(20), nullable=False),
        sa.Column("barcode", sa.String(80), nullable=False),
        sa.Column("qr_code_data", sa.String(120), nullable=False),
        sa.Column("store_type", konbini_store, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", konbini_status, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("store_location", sa.String(160)),
        sa.Column("instructions", sa.Text),
        *_timestamps(),
        sa.UniqueConstraint("payment_id", name="uq_konbini_payments_payment"),
        sa.UniqueConstraint("payment_code", name="uq_konbini_payments_code"),
    )
    op.create_table(
        "paypay_payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("payments", nullable=False),
        sa.Column("merchant_payment_id", sa.String(80), nullable=False),
        sa.Column("code_id", sa.String(80)),
        sa.Column("qr_code_url", sa.String(500)),
        sa.Column("deeplink", sa.String(500)),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", paypay_code_status, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("payment_id", name="uq_paypay_payments_payment"),
        sa.UniqueConstraint("merchant_payment_id", name="uq_paypay_payments_merchant_id"),
    )
    op.create_table(
        "payment_reminders",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        _fk("customers", nullable=False),
        _fk("invoices"),
        _fk("billing_subscriptions"),
        _fk("payments"),
        sa.Column("reminder_type", reminder_type, nullable=False),
        sa.Column("method", reminder_method, nullable=False),
        sa.Column("status", reminder_status, nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("failure_reason", sa.Text),
        *_timestamps(),
    )
    op.create_index(
        "ix_payment_reminders_scheduled_at", "payment_reminders", ["scheduled_at"]
    )
    op.create_table(
        "payment_audit_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        sa.Column("action", audit_action, nullable=False),
        sa.Column("entity_type", audit_entity_type, nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("old_data", sa.JSON),
        sa.Column("new_data", sa.JSON),
        sa.Column("user_id", sa.String(64)),
        sa.Column("user_email", sa.String(255)),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.String(500)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_payment_audit_logs_entity", "payment_audit_logs", ["entity_type", "entity_id"]
    )
    op.create_index(
        "ix_payment_audit_logs_org_created",
        "payment_audit_logs",
        ["organization_id", "created_at"],
    )
    op.create_table(
        "number_sequences",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("next_value", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "kind", "year", name="uq_number_sequences_org_kind_year"
        ),
    )
    op.create_table(
        "cron_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(80), nullable=False),
        sa.Column("task_name", sa.String(200), nullable=False),
        sa.Column("schedule", sa.String(80), nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_status", cron_job_status, nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True)),
        sa.Column("last_started_at", sa.DateTime(timezone=True)),
        sa.Column("last_finished_at", sa.DateTime(timezone=True)),
        sa.Column("last_result", sa.JSON),
        sa.Column("last_error", sa.Text),
        sa.Column("run_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_cron_jobs_name"),
    )
    op.create_table(
        "payment_reports",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _fk("organizations", nullable=False),
        sa.Column("report_date", sa.Date, nullable=False),
        sa.Column("total_payments", sa.Integer, server_default="0"),
        sa.Column("successful_payments", sa.Integer, server_default="0"),
        sa.Column("failed_payments", sa.Integer, server_default="0"),
        sa.Column("success_rate", sa.Numeric(5, 2), server_default="0"),
        sa.Column("total_revenue", sa.Numeric(14, 2), server_default="0"),
        sa.Column("total_refunds", sa.Numeric(14, 2), server_default="0"),
        sa.Column("net_revenue", sa.Numeric(14, 2), server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "report_date", name="uq_payment_reports_org_date"
        ),
    )


def downgrade() -> None:
    for table in (
        "payment_reports",
        "cron_jobs",
        "number_sequences",
        "payment_audit_logs",
        "payment_reminders",
        "paypay_payments",
        "konbini_payments",
        "billing_attempts",
        "payment_refunds",
        "payments",
        "invoice_lines",
        "invoices",
        "billing_subscriptions",
        "payment_methods",
        "customers",
        "organizations",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)

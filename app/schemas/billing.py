from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from app.models.billing import (
    BillingCycle,
    InvoiceStatus,
    PaymentMethodType,
    PaymentProvider,
    PaymentStatus,
    RefundStatus,
    SubscriptionStatus,
    TaxCategory,
)
from app.models.provider_payments import KonbiniStore
from app.models.reminder import ReminderMethod, ReminderStatus, ReminderType

_METADATA_ALIAS = AliasChoices("metadata_", "metadata")


class RequestContext(BaseModel):
    """Who performed an action, carried into the audit trail."""

    user_id: str | None = None
    user_email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


# --- Payments ---


class PaymentCreate(BaseModel):
    customer_id: UUID
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="JPY", min_length=3, max_length=3)
    provider: PaymentProvider
    method_type: PaymentMethodType | None = None
    payment_method_id: UUID | None = None
    invoice_id: UUID | None = None
    subscription_id: UUID | None = None
    description: str | None = None
    metadata: dict | None = None
    konbini_store: KonbiniStore | None = None
    expiry_days: int | None = Field(default=None, ge=1, le=60)
    retry_of_id: UUID | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    customer_id: UUID
    payment_method_id: UUID | None = None
    invoice_id: UUID | None = None
    subscription_id: UUID | None = None
    provider: PaymentProvider
    method_type: PaymentMethodType | None = None
    amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    currency: str
    status: PaymentStatus
    description: str | None = None
    external_id: str | None = None
    attempt_number: int
    metadata: dict | None = Field(default=None, validation_alias=_METADATA_ALIAS)
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RefundCreate(BaseModel):
    payment_id: UUID
    # None refunds the remaining balance
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None


class PaymentRefundRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    amount: Decimal
    reason: str | None = None
    status: RefundStatus
    external_id: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class PaymentMethodCreate(BaseModel):
    customer_id: UUID
    method_type: PaymentMethodType = PaymentMethodType.card
    provider: PaymentProvider = PaymentProvider.stripe
    token: str | None = None
    is_default: bool = False
    metadata: dict | None = None


class PaymentMethodRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    method_type: PaymentMethodType
    provider: PaymentProvider
    external_id: str | None = None
    last4: str | None = None
    brand: str | None = None
    expires_month: int | None = None
    expires_year: int | None = None
    is_default: bool
    is_active: bool
    created_at: datetime


class KonbiniConfirm(BaseModel):
    payment_code: str = Field(min_length=13, max_length=13)
    paid_at: datetime | None = None
    store_location: str | None = None


# --- Billing calculation ---


class BillingCalculation(BaseModel):
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    total_amount: Decimal
    applied_discounts: list[dict] = Field(default_factory=list)


# --- Invoices ---


class InvoiceLineCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(ge=0)
    tax_category: TaxCategory | None = None


class InvoiceCreate(BaseModel):
    customer_id: UUID
    subscription_id: UUID | None = None
    currency: str = Field(default="JPY", min_length=3, max_length=3)
    lines: list[InvoiceLineCreate] = Field(min_length=1)
    status: Literal["draft", "open"] = "open"
    issue_date: datetime | None = None
    due_date: datetime | None = None
    notes: str | None = None
    metadata: dict | None = None

    @model_validator(mode="after")
    def _validate_dates(self) -> "InvoiceCreate":
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValueError("due_date must not be before issue_date")
        return self


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus
    paid_at: datetime | None = None


class InvoiceLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    tax_category: TaxCategory | None = None
    tax_amount: Decimal


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    customer_id: UUID
    subscription_id: UUID | None = None
    invoice_number: str
    status: InvoiceStatus
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    total: Decimal
    issue_date: datetime
    due_date: datetime
    paid_at: datetime | None = None
    notes: str | None = None
    pdf_url: str | None = None
    pdf_generated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    lines: list[InvoiceLineRead] = Field(default_factory=list)


# --- Subscriptions ---


class SubscriptionCreate(BaseModel):
    customer_id: UUID
    plan_id: str = Field(min_length=1, max_length=80)
    plan_name: str = Field(min_length=1, max_length=160)
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="JPY", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.monthly
    trial_days: int | None = Field(default=None, ge=0, le=365)
    # percentage, 0-100
    discount_rate: Decimal | None = Field(default=None, ge=0, le=100)
    start_date: datetime | None = None
    metadata: dict | None = None


class SubscriptionCancel(BaseModel):
    immediate: bool = False
    reason: str | None = None


class SubscriptionPlanChange(BaseModel):
    plan_id: str = Field(min_length=1, max_length=80)
    plan_name: str = Field(min_length=1, max_length=160)
    amount: Decimal = Field(gt=0)
    proration: Literal["immediate", "next_cycle"] = "immediate"


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    customer_id: UUID
    plan_id: str
    plan_name: str
    amount: Decimal
    currency: str
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    trial_end: datetime | None = None
    discount_rate: Decimal | None = None
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    pending_plan_id: str | None = None
    pending_amount: Decimal | None = None
    created_at: datetime
    updated_at: datetime


class PlanChangeResponse(BaseModel):
    subscription: SubscriptionRead
    proration_amount: Decimal
    payment: PaymentRead | None = None


# --- Reminders ---


class ReminderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    invoice_id: UUID | None = None
    subscription_id: UUID | None = None
    payment_id: UUID | None = None
    reminder_type: ReminderType
    method: ReminderMethod
    status: ReminderStatus
    scheduled_at: datetime
    sent_at: datetime | None = None
    failure_reason: str | None = None


# --- Batch results ---


class BatchResult(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict] = Field(default_factory=list)

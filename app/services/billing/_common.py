"""Helpers shared across the billing service modules."""

from decimal import Decimal

from sqlalchemy.orm import Session

from app.errors import NotFoundError, ValidationError
from app.models.billing import BillingAttempt, BillingAttemptStatus, PaymentMethod
from app.models.organization import Customer
from app.services import tax as tax_service
from app.services.common import coerce_uuid, get_by_id


def _get_customer(db: Session, customer_id) -> Customer:
    customer = get_by_id(db, Customer, customer_id)
    if not customer or not customer.is_active:
        raise NotFoundError("Customer not found")
    return customer


def _lock_customer(db: Session, customer_id) -> Customer:
    """Load the customer row FOR UPDATE; serializes default-method changes."""
    customer = (
        db.query(Customer)
        .filter(Customer.id == coerce_uuid(customer_id))
        .with_for_update()
        .first()
    )
    if not customer or not customer.is_active:
        raise NotFoundError("Customer not found")
    return customer


def _tax_region(customer: Customer) -> str:
    if customer.tax_region:
        return customer.tax_region
    organization = customer.organization
    return organization.tax_region if organization else "JP"


def _tax_profile(customer: Customer) -> tax_service.TaxProfile:
    """Organization tax settings, with customer-level flags taking precedence."""
    organization = customer.organization
    profile = tax_service.profile_from_settings(organization.settings if organization else None)
    return tax_service.TaxProfile(
        exempt=profile.exempt or bool(customer.tax_exempt),
        use_reduced_rate=profile.use_reduced_rate or bool(customer.reduced_tax_rate),
    )


def _validate_currency(currency: str | None) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency: {currency}")
    return code


def _default_payment_method(db: Session, customer_id) -> PaymentMethod | None:
    return (
        db.query(PaymentMethod)
        .filter(PaymentMethod.customer_id == coerce_uuid(customer_id))
        .filter(PaymentMethod.is_active.is_(True))
        .filter(PaymentMethod.is_default.is_(True))
        .first()
    )


def _sum(values) -> Decimal:
    total = Decimal("0")
    for value in values:
        total += Decimal(str(value or 0))
    return total


def _claim_failed_attempt(db: Session, key: str) -> bool:
    """Move a failed billing attempt back to started and commit.

    Returns False when another run already holds the attempt.
    """
    claimed = (
        db.query(BillingAttempt)
        .filter(BillingAttempt.idempotency_key == key)
        .filter(BillingAttempt.status == BillingAttemptStatus.failed)
        .update(
            {"status": BillingAttemptStatus.started, "error": None},
            synchronize_session="fetch",
        )
    )
    db.commit()
    return bool(claimed)


def _release_attempt(db: Session, key: str, error: str) -> None:
    db.query(BillingAttempt).filter(BillingAttempt.idempotency_key == key).filter(
        BillingAttempt.status == BillingAttemptStatus.started
    ).update(
        {"status": BillingAttemptStatus.failed, "error": error},
        synchronize_session="fetch",
    )
    db.commit()

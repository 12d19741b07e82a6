"""Billing services package.

This package provides the payment, invoice, subscription and reminder
services:
    from app.services import billing as billing_service
    billing_service.payments.create_payment(db, payload)

    from app.services.billing import Invoices, invoices
"""

from app.services.billing.invoices import Invoices
from app.services.billing.payments import Payments, PaymentMethods
from app.services.billing.reminders import Reminders
from app.services.billing.subscriptions import Subscriptions

# Singleton instances for service access
payments = Payments()
payment_methods = PaymentMethods()
invoices = Invoices()
subscriptions = Subscriptions()
reminders = Reminders()

__all__ = [
    # Classes
    "Invoices",
    "Payments",
    "PaymentMethods",
    "Reminders",
    "Subscriptions",
    # Singleton instances
    "invoices",
    "payments",
    "payment_methods",
    "reminders",
    "subscriptions",
]

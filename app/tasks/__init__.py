from app.tasks.billing import (
    cleanup_konbini_payments,
    generate_daily_reports,
    mark_overdue_invoices,
    retry_failed_payments,
    run_subscription_billing,
    send_payment_reminders,
)

__all__ = [
    "run_subscription_billing",
    "cleanup_konbini_payments",
    "send_payment_reminders",
    "retry_failed_payments",
    "mark_overdue_invoices",
    "generate_daily_reports",
]

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.billing_cron import billing_cron


def _run(job_name: str) -> dict:
    session = SessionLocal()
    try:
        return billing_cron.run_job(session, job_name)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.billing.run_subscription_billing")
def run_subscription_billing():
    return _run("subscription_billing")


@celery_app.task(name="app.tasks.billing.cleanup_konbini_payments")
def cleanup_konbini_payments():
    return _run("konbini_cleanup")


@celery_app.task(name="app.tasks.billing.send_payment_reminders")
def send_payment_reminders():
    return _run("payment_reminders")


@celery_app.task(name="app.tasks.billing.retry_failed_payments")
def retry_failed_payments():
    return _run("failed_payment_retry")


@celery_app.task(name="app.tasks.billing.mark_overdue_invoices")
def mark_overdue_invoices():
    return _run("invoice_overdue")


@celery_app.task(name="app.tasks.billing.generate_daily_reports")
def generate_daily_reports():
    return _run("report_generation")

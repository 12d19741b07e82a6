"""Registry and runner for the scheduled billing jobs.

Each job is a ``CronJob`` row. A run claims the row under a lock and
holds a lease, so an overlapping run on any worker is skipped instead of
double-processing. Job failures are recorded on the row and never stop
other jobs.
"""

import logging
from datetime import datetime, time, timedelta
from decimal import Decimal
from time import monotonic
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.errors import NotFoundError
from app.metrics import observe_job
from app.models.organization import Organization
from app.models.scheduler import CronJob, CronJobStatus, PaymentReport
from app.services.billing.invoices import Invoices
from app.services.billing.payments import Payments
from app.services.billing.reminders import Reminders
from app.services.billing.subscriptions import Subscriptions
from app.services.common import as_utc, utcnow
from app.services.scheduler_config import BILLING_JOBS, DEFAULT_TIMEZONE, job_enabled

logger = logging.getLogger(__name__)

BILLING_FAILURE_ALERT_THRESHOLD = 10
DEFAULT_LEASE = timedelta(minutes=30)
JOB_LEASES = {
    "subscription_billing": timedelta(hours=2),
    "report_generation": timedelta(hours=1),
}

_schedule_tz = ZoneInfo(DEFAULT_TIMEZONE)


def _run_subscription_billing(db: Session, now: datetime) -> dict:
    result = Subscriptions.process_pending_billing(db, now=now)
    if result["failed"] > BILLING_FAILURE_ALERT_THRESHOLD:
        logger.warning(
            "Subscription billing had %s failures in one run", result["failed"]
        )
    return result


def _run_konbini_cleanup(db: Session, now: datetime) -> dict:
    return Payments.expire_konbini_payments(db, now=now)


def _run_payment_reminders(db: Session, now: datetime) -> dict:
    return Reminders.process_scheduled_reminders(db, now=now)


def _run_failed_payment_retry(db: Session, now: datetime) -> dict:
    return Payments.retry_failed_payments(db, now=now)


def _run_invoice_overdue(db: Session, now: datetime) -> dict:
    return Invoices.mark_overdue(db, now=now)


def report_window(now: datetime) -> tuple:
    """The local calendar day containing ``now`` as a UTC range."""
    local_day = as_utc(now).astimezone(_schedule_tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=_schedule_tz)
    return local_day, as_utc(start), as_utc(start + timedelta(days=1))


def generate_daily_reports(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    report_date, date_from, date_to = report_window(now)
    organizations = (
        db.query(Organization).filter(Organization.is_active.is_(True)).all()
    )
    result = {"processed": 0, "failed": 0, "skipped": 0, "errors": []}
    for organization in organizations:
        try:
            stats = Payments.get_payment_stats(db, organization.id, date_from, date_to)
            report = (
                db.query(PaymentReport)
                .filter(PaymentReport.organization_id == organization.id)
                .filter(PaymentReport.report_date == report_date)
                .first()
            )
            if report is None:
                report = PaymentReport(
                    organization_id=organization.id, report_date=report_date
                )
                db.add(report)
            report.total_payments = stats["total_payments"]
            report.successful_payments = stats["successful_payments"]
            report.failed_payments = stats["failed_payments"]
            report.success_rate = stats["success_rate"]
            report.total_revenue = stats["total_revenue"]
            report.total_refunds = stats["total_refunds"]
            report.net_revenue = stats["net_revenue"]
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("Report generation failed for organization %s", organization.id)
            result["failed"] += 1
            result["errors"].append({"id": str(organization.id), "error": str(exc)})
            continue
        result["processed"] += 1
    logger.info(
        "Generated payment reports date=%s organizations=%s failed=%s",
        report_date,
        result["processed"],
        result["failed"],
    )
    return result


JOB_RUNNERS = {
    "subscription_billing": _run_subscription_billing,
    "konbini_cleanup": _run_konbini_cleanup,
    "payment_reminders": _run_payment_reminders,
    "failed_payment_retry": _run_failed_payment_retry,
    "invoice_overdue": _run_invoice_overdue,
    "report_generation": generate_daily_reports,
}


def _json_safe(result: dict) -> dict:
    return {
        key: str(value) if isinstance(value, (Decimal, datetime)) else value
        for key, value in result.items()
    }


def _job_dict(job: CronJob) -> dict:
    return {
        "name": job.name,
        "task_name": job.task_name,
        "schedule": job.schedule,
        "enabled": job.enabled,
        "last_status": job.last_status.value if job.last_status else None,
        "last_started_at": job.last_started_at,
        "last_finished_at": job.last_finished_at,
        "last_result": job.last_result,
        "last_error": job.last_error,
        "run_count": job.run_count or 0,
    }


class BillingCron:
    @staticmethod
    def _get_job(db: Session, name: str, lock: bool = False) -> CronJob | None:
        query = db.query(CronJob).filter(CronJob.name == name)
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def ensure_jobs(db: Session) -> list[CronJob]:
        jobs = []
        for name, (task_name, _, cron_kwargs) in BILLING_JOBS.items():
            job = BillingCron._get_job(db, name)
            if job is None:
                job = CronJob(
                    name=name,
                    task_name=task_name,
                    schedule=" ".join(
                        cron_kwargs.get(field, "*")
                        for field in ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")
                    ),
                    enabled=job_enabled(name),
                    last_status=CronJobStatus.idle,
                    run_count=0,
                )
                db.add(job)
            jobs.append(job)
        db.commit()
        return jobs

    @staticmethod
    def _set_enabled(db: Session, enabled: bool) -> list[dict]:
        jobs = BillingCron.ensure_jobs(db)
        for job in jobs:
            job.enabled = enabled
        db.commit()
        logger.info("%s all billing jobs", "Started" if enabled else "Stopped")
        return [_job_dict(job) for job in jobs]

    @staticmethod
    def start_all(db: Session) -> list[dict]:
        return BillingCron._set_enabled(db, True)

    @staticmethod
    def stop_all(db: Session) -> list[dict]:
        return BillingCron._set_enabled(db, False)

    @staticmethod
    def get_job_status(db: Session, name: str | None = None):
        if name is not None and name not in BILLING_JOBS:
            raise NotFoundError(f"Unknown job: {name}")
        jobs = BillingCron.ensure_jobs(db)
        if name is None:
            return [_job_dict(job) for job in jobs]
        return next(_job_dict(job) for job in jobs if job.name == name)

    @staticmethod
    def _claim(db: Session, name: str, now: datetime, force: bool) -> CronJob | None:
        job = BillingCron._get_job(db, name, lock=True)
        if job is None:
            BillingCron.ensure_jobs(db)
            job = BillingCron._get_job(db, name, lock=True)
        if not job.enabled and not force:
            db.commit()
            return None
        if (
            job.last_status == CronJobStatus.running
            and job.lease_expires_at
            and as_utc(job.lease_expires_at) > now
        ):
            db.commit()
            return None
        job.last_status = CronJobStatus.running
        job.last_started_at = now
        job.lease_expires_at = now + JOB_LEASES.get(name, DEFAULT_LEASE)
        db.commit()
        return job

    @staticmethod
    def _finish(
        db: Session,
        name: str,
        status: CronJobStatus,
        result: dict | None = None,
        error: str | None = None,
    ) -> None:
        job = BillingCron._get_job(db, name, lock=True)
        job.last_status = status
        job.last_finished_at = utcnow()
        job.lease_expires_at = None
        job.last_result = _json_safe(result) if result is not None else None
        job.last_error = error
        job.run_count = (job.run_count or 0) + 1
        db.commit()

    @staticmethod
    def run_job(
        db: Session, name: str, now: datetime | None = None, force: bool = False
    ) -> dict:
        if name not in JOB_RUNNERS:
            raise NotFoundError(f"Unknown job: {name}")
        now = now or utcnow()
        job = BillingCron._claim(db, name, now, force)
        if job is None:
            logger.info("Skipping job %s: disabled or already running", name)
            return {"job": name, "status": CronJobStatus.skipped.value}
        started = monotonic()
        try:
            result = JOB_RUNNERS[name](db, now)
        except Exception as exc:
            db.rollback()
            logger.exception("Job %s failed", name)
            observe_job(name, CronJobStatus.failed.value, monotonic() - started)
            BillingCron._finish(db, name, CronJobStatus.failed, error=str(exc))
            return {"job": name, "status": CronJobStatus.failed.value, "error": str(exc)}
        observe_job(name, CronJobStatus.success.value, monotonic() - started)
        BillingCron._finish(db, name, CronJobStatus.success, result=result)
        return {"job": name, "status": CronJobStatus.success.value, "result": result}

    @staticmethod
    def trigger(db: Session, name: str) -> dict:
        """Run a job now, even when its schedule is stopped."""
        return BillingCron.run_job(db, name, force=True)


billing_cron = BillingCron()

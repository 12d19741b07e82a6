"""Tests for the billing job runner and daily report generation."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.errors import NotFoundError
from app.models.billing import PaymentProvider
from app.models.scheduler import CronJob, CronJobStatus, PaymentReport
from app.schemas.billing import PaymentCreate
from app.services import billing as billing_service
from app.services.billing_cron import billing_cron, report_window
from app.services.scheduler_config import BILLING_JOBS


def _job(db_session, name):
    return db_session.query(CronJob).filter(CronJob.name == name).one()


class TestJobRegistry:
    def test_ensure_jobs_creates_every_job_once(self, db_session):
        billing_cron.ensure_jobs(db_session)
        billing_cron.ensure_jobs(db_session)

        assert db_session.query(CronJob).count() == len(BILLING_JOBS)
        job = _job(db_session, "subscription_billing")
        assert job.schedule == "0 9 * * *"
        assert job.task_name == "app.tasks.billing.run_subscription_billing"

    def test_env_flag_disables_job(self, db_session, monkeypatch):
        monkeypatch.setenv("KONBINI_CLEANUP_ENABLED", "false")

        status = billing_cron.get_job_status(db_session, "konbini_cleanup")

        assert status["enabled"] is False

    def test_unknown_job(self, db_session):
        with pytest.raises(NotFoundError):
            billing_cron.get_job_status(db_session, "mine_bitcoin")
        with pytest.raises(NotFoundError):
            billing_cron.run_job(db_session, "mine_bitcoin")

    def test_stop_and_start_all(self, db_session):
        stopped = billing_cron.stop_all(db_session)
        assert all(job["enabled"] is False for job in stopped)

        started = billing_cron.start_all(db_session)
        assert all(job["enabled"] is True for job in started)


class TestRunJob:
    def test_successful_run_is_recorded(self, db_session, now):
        outcome = billing_cron.run_job(db_session, "invoice_overdue", now=now)

        job = _job(db_session, "invoice_overdue")
        assert outcome["status"] == "success"
        assert job.last_status == CronJobStatus.success
        assert job.last_result["processed"] == 0
        assert job.run_count == 1
        assert job.lease_expires_at is None

    def test_stopped_job_is_skipped_but_can_be_triggered(self, db_session):
        billing_cron.stop_all(db_session)

        skipped = billing_cron.run_job(db_session, "payment_reminders")
        triggered = billing_cron.trigger(db_session, "payment_reminders")

        assert skipped["status"] == "skipped"
        assert triggered["status"] == "success"
        assert _job(db_session, "payment_reminders").run_count == 1

    def test_running_job_with_live_lease_is_skipped(self, db_session, now):
        billing_cron.ensure_jobs(db_session)
        job = _job(db_session, "subscription_billing")
        job.last_status = CronJobStatus.running
        job.lease_expires_at = now + timedelta(minutes=10)
        db_session.commit()

        outcome = billing_cron.run_job(db_session, "subscription_billing", now=now)

        assert outcome["status"] == "skipped"

    def test_expired_lease_is_taken_over(self, db_session, now):
        billing_cron.ensure_jobs(db_session)
        job = _job(db_session, "subscription_billing")
        job.last_status = CronJobStatus.running
        job.lease_expires_at = now - timedelta(minutes=1)
        db_session.commit()

        outcome = billing_cron.run_job(db_session, "subscription_billing", now=now)

        assert outcome["status"] == "success"

    def test_failing_job_is_recorded(self, db_session, now):
        def explode(db, when):
            raise RuntimeError("database went away")

        with patch.dict(
            "app.services.billing_cron.JOB_RUNNERS", {"invoice_overdue": explode}
        ):
            outcome = billing_cron.run_job(db_session, "invoice_overdue", now=now)

        job = _job(db_session, "invoice_overdue")
        assert outcome == {
            "job": "invoice_overdue",
            "status": "failed",
            "error": "database went away",
        }
        assert job.last_status == CronJobStatus.failed
        assert job.last_error == "database went away"


class TestReports:
    def test_report_window_uses_tokyo_day(self):
        day, start, end = report_window(datetime(2024, 6, 1, 16, 0, tzinfo=timezone.utc))

        assert day == date(2024, 6, 2)
        assert start == datetime(2024, 6, 1, 15, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 6, 2, 15, 0, tzinfo=timezone.utc)

    def test_daily_report_is_upserted(
        self, db_session, organization, customer, card_method, stripe_api
    ):
        billing_service.payments.create_payment(
            db_session,
            PaymentCreate(
                customer_id=customer.id,
                amount=Decimal("10000"),
                provider=PaymentProvider.stripe,
                payment_method_id=card_method.id,
            ),
        )

        first = billing_cron.run_job(db_session, "report_generation")
        second = billing_cron.run_job(db_session, "report_generation")

        assert first["result"]["processed"] == 1
        assert second["status"] == "success"
        report = db_session.query(PaymentReport).one()
        assert report.total_payments == 1
        assert report.successful_payments == 1
        assert report.total_revenue == Decimal("11000")
        assert report.success_rate == Decimal("100")

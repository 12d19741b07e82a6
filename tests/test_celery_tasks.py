"""Tests for Celery tasks."""

from unittest.mock import MagicMock, patch

import pytest


TASK_JOBS = [
    ("run_subscription_billing", "subscription_billing"),
    ("cleanup_konbini_payments", "konbini_cleanup"),
    ("send_payment_reminders", "payment_reminders"),
    ("retry_failed_payments", "failed_payment_retry"),
    ("mark_overdue_invoices", "invoice_overdue"),
    ("generate_daily_reports", "report_generation"),
]


class TestBillingTask:
    """Tests for the scheduled billing tasks."""

    @pytest.mark.parametrize("task_name,job_name", TASK_JOBS)
    def test_task_runs_its_job(self, task_name, job_name):
        """Each task runs its job on a fresh session and closes it."""
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.billing.billing_cron.run_job",
                return_value={"job": job_name, "status": "success"},
            ) as mock_run:
                from app.tasks import billing as billing_tasks

                result = getattr(billing_tasks, task_name)()

                mock_run.assert_called_once_with(mock_session, job_name)
                assert result["status"] == "success"
                mock_session.close.assert_called_once()

    def test_exception_rollback(self):
        """Test exception triggers rollback."""
        mock_session = MagicMock()

        with patch("app.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.billing.billing_cron.run_job",
                side_effect=Exception("Billing error"),
            ):
                from app.tasks.billing import run_subscription_billing

                with pytest.raises(Exception, match="Billing error"):
                    run_subscription_billing()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()

    def test_tasks_are_registered_under_schedule_names(self):
        from app.celery_app import celery_app
        from app.services.scheduler_config import BILLING_JOBS
        import app.tasks  # noqa: F401

        for task_name, _, _ in BILLING_JOBS.values():
            assert task_name in celery_app.tasks

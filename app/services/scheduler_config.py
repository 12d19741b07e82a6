import logging
import os

from celery.schedules import crontab

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Tokyo"

# job name -> (task, env flag, crontab kwargs)
BILLING_JOBS: dict[str, tuple[str, str, dict]] = {
    "subscription_billing": (
        "app.tasks.billing.run_subscription_billing",
        "SUBSCRIPTION_BILLING_ENABLED",
        {"minute": "0", "hour": "9"},
    ),
    "konbini_cleanup": (
        "app.tasks.billing.cleanup_konbini_payments",
        "KONBINI_CLEANUP_ENABLED",
        {"minute": "0"},
    ),
    "payment_reminders": (
        "app.tasks.billing.send_payment_reminders",
        "PAYMENT_REMINDERS_ENABLED",
        {"minute": "0", "hour": "10"},
    ),
    "failed_payment_retry": (
        "app.tasks.billing.retry_failed_payments",
        "FAILED_PAYMENT_RETRY_ENABLED",
        {"minute": "0", "hour": "*/6"},
    ),
    "invoice_overdue": (
        "app.tasks.billing.mark_overdue_invoices",
        "INVOICE_OVERDUE_ENABLED",
        {"minute": "30", "hour": "0"},
    ),
    "report_generation": (
        "app.tasks.billing.generate_daily_reports",
        "REPORT_GENERATION_ENABLED",
        {"minute": "0", "hour": "23"},
    ),
}


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str) -> bool | None:
    raw = _env_value(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def job_enabled(name: str) -> bool:
    _, env_key, _ = BILLING_JOBS[name]
    enabled = _env_bool(env_key)
    return True if enabled is None else enabled


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    timezone = _env_value("CELERY_TIMEZONE") or DEFAULT_TIMEZONE
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": timezone,
        "enable_utc": True,
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL") or 5
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    for name, (task_name, _, cron_kwargs) in BILLING_JOBS.items():
        if not job_enabled(name):
            logger.info("Scheduled job %s disabled", name)
            continue
        schedule[name] = {
            "task": task_name,
            "schedule": crontab(**cron_kwargs),
        }
    return schedule

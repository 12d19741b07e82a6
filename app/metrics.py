from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

PAYMENTS_TOTAL = Counter(
    "billing_payments_total",
    "Payments created, by provider and resulting status",
    ["provider", "status"],
)
WEBHOOKS_TOTAL = Counter(
    "billing_webhooks_total",
    "Provider webhooks received",
    ["provider", "outcome"],
)
JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_payment(provider: str, status: str) -> None:
    PAYMENTS_TOTAL.labels(provider=provider, status=status).inc()


def observe_webhook(provider: str, outcome: str) -> None:
    WEBHOOKS_TOTAL.labels(provider=provider, outcome=outcome).inc()


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)

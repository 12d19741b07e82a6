import logging
from time import monotonic

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.audit import router as audit_router
from app.api.cron import router as cron_router
from app.api.invoices import router as invoices_router
from app.api.payments import router as payments_router
from app.api.reminders import router as reminders_router
from app.api.subscriptions import router as subscriptions_router
from app.api.tax import router as tax_router
from app.api.webhooks import router as webhooks_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import REQUEST_COUNT, REQUEST_LATENCY

configure_logging()

app = FastAPI(title="eikaiwa billing API")
logger = logging.getLogger(__name__)
register_error_handlers(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    started = monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    labels = {
        "method": request.method,
        "path": path,
        "status": str(response.status_code),
    }
    REQUEST_COUNT.labels(**labels).inc()
    REQUEST_LATENCY.labels(**labels).observe(monotonic() - started)
    return response


def _include_api_router(router):
    app.include_router(router, prefix="/api/v1")


_include_api_router(payments_router)
_include_api_router(invoices_router)
_include_api_router(subscriptions_router)
_include_api_router(reminders_router)
_include_api_router(audit_router)
_include_api_router(webhooks_router)
_include_api_router(cron_router)
_include_api_router(tax_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

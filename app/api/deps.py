from fastapi import Request

from app.db import get_db
from app.schemas.billing import RequestContext


def get_request_context(request: Request) -> RequestContext:
    """Audit context for the caller; identity headers are set by the gateway."""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_address and request.client:
        ip_address = request.client.host
    return RequestContext(
        user_id=request.headers.get("x-user-id"),
        user_email=request.headers.get("x-user-email"),
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )


__all__ = ["get_db", "get_request_context"]

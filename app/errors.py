from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BillingError(HTTPException):
    """Base class for service errors that map onto an HTTP response."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, details: object | None = None):
        self.message = message
        self.details = details
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": message, "details": details},
        )

    def __str__(self) -> str:
        return self.message


class ValidationError(BillingError):
    """Missing or invalid request data. Nothing was persisted."""

    status_code = 400
    code = "validation_error"


class NotFoundError(ValidationError):
    status_code = 404
    code = "not_found"


class StateError(BillingError):
    """The entity is not in a state that allows the operation."""

    status_code = 409
    code = "invalid_state"


class ProviderError(BillingError):
    """A payment provider call failed."""

    status_code = 502
    code = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        error_code: str | None = None,
        details: object | None = None,
    ):
        self.provider = provider
        self.error_code = error_code or "provider_error"
        super().__init__(message, details)


class WebhookSignatureError(ValidationError):
    status_code = 401
    code = "invalid_signature"


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def register_error_handlers(app) -> None:
    def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            error_copy.pop("ctx", None)
            if "input" in error_copy and not isinstance(
                error_copy["input"], (str, int, float, bool, type(None), dict, list)
            ):
                error_copy["input"] = str(error_copy["input"])
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )

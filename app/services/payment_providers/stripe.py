"""Card payments through the Stripe REST API."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ProviderError, ValidationError, WebhookSignatureError
from app.models.billing import Payment, PaymentProvider, PaymentStatus, RefundStatus
from app.models.organization import Customer
from app.services.common import to_minor_units, utcnow
from app.services.payment_providers.base import (
    PaymentAdapter,
    PaymentMethodDetails,
    ProviderResult,
    RefundResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300

_INTENT_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.pending,
    "requires_confirmation": PaymentStatus.pending,
    "requires_action": PaymentStatus.pending,
    "requires_capture": PaymentStatus.pending,
    "processing": PaymentStatus.processing,
    "succeeded": PaymentStatus.succeeded,
    "canceled": PaymentStatus.canceled,
}

_REFUND_STATUS_MAP = {
    "pending": RefundStatus.processing,
    "succeeded": RefundStatus.succeeded,
    "failed": RefundStatus.failed,
    "canceled": RefundStatus.canceled,
}

_WEBHOOK_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.succeeded,
    "payment_intent.payment_failed": PaymentStatus.failed,
    "payment_intent.canceled": PaymentStatus.canceled,
    "payment_intent.processing": PaymentStatus.processing,
}


def map_intent_status(status: str | None) -> PaymentStatus:
    return _INTENT_STATUS_MAP.get(status or "", PaymentStatus.failed)


def map_refund_status(status: str | None) -> RefundStatus:
    return _REFUND_STATUS_MAP.get(status or "", RefundStatus.pending)


def _form_fields(data: dict[str, Any], prefix: str | None = None) -> dict[str, str]:
    """Flatten nested dicts into Stripe's ``a[b]=c`` form encoding."""
    fields: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            fields.update(_form_fields(value, name))
        elif isinstance(value, bool):
            fields[name] = "true" if value else "false"
        else:
            fields[name] = str(value)
    return fields


def verify_webhook_signature(
    body: bytes, signature_header: str | None, secret: str | None, now: int | None = None
) -> bool:
    """Check a ``Stripe-Signature`` header (``t=...,v1=...``)."""
    if not secret or not signature_header:
        return False
    timestamp = None
    signatures: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = now if now is not None else int(time.time())
    if abs(current - ts) > WEBHOOK_TOLERANCE_SECONDS:
        return False
    signed_payload = f"{timestamp}.".encode() + body
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


class StripeAdapter(PaymentAdapter):
    provider = PaymentProvider.stripe

    def _secret_key(self) -> str:
        if not settings.stripe_secret_key:
            raise ProviderError(
                "Stripe secret key is not configured",
                provider=self.provider.value,
                error_code="not_configured",
            )
        return settings.stripe_secret_key

    def _request(self, method: str, path: str, data: dict | None = None) -> dict:
        url = f"{settings.stripe_api_base}{path}"
        try:
            resp = httpx.request(
                method,
                url,
                data=_form_fields(data) if data else None,
                auth=(self._secret_key(), ""),
                timeout=settings.provider_timeout_seconds,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error = {}
            try:
                error = exc.response.json().get("error") or {}
            except ValueError:
                pass
            logger.error(
                "Stripe request failed path=%s status=%s code=%s",
                path,
                exc.response.status_code,
                error.get("code"),
            )
            raise ProviderError(
                error.get("message") or f"Stripe returned HTTP {exc.response.status_code}",
                provider=self.provider.value,
                error_code=error.get("code") or error.get("type"),
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Stripe request failed path=%s error=%s", path, exc)
            raise ProviderError(
                f"Stripe request failed: {exc}",
                provider=self.provider.value,
                error_code="network_error",
            ) from exc
        return resp.json()

    def ensure_customer(self, db: Session, customer: Customer) -> str:
        if customer.stripe_customer_id:
            return customer.stripe_customer_id
        data = self._request(
            "POST",
            "/v1/customers",
            {
                "email": customer.email,
                "name": customer.name,
                "phone": customer.phone,
                "metadata": {
                    "customer_id": str(customer.id),
                    "organization_id": str(customer.organization_id),
                },
            },
        )
        customer.stripe_customer_id = data["id"]
        db.flush()
        return customer.stripe_customer_id

    def initiate(self, db: Session, payment: Payment, request) -> ProviderResult:
        customer = db.get(Customer, payment.customer_id)
        stripe_customer = self.ensure_customer(db, customer)
        method_ref = None
        if payment.payment_method is not None:
            method_ref = payment.payment_method.external_id
        metadata = {"payment_id": str(payment.id), "customer_id": str(payment.customer_id)}
        for key, value in (getattr(request, "metadata", None) or {}).items():
            metadata[str(key)] = str(value)
        intent = self._request(
            "POST",
            "/v1/payment_intents",
            {
                "amount": to_minor_units(payment.amount, payment.currency),
                "currency": payment.currency.lower(),
                "customer": stripe_customer,
                "payment_method": method_ref,
                # auto-confirm only when a stored method can be charged
                "confirm": bool(method_ref),
                "off_session": True if method_ref else None,
                "description": payment.description,
                "automatic_payment_methods": {
                    "enabled": True,
                    "allow_redirects": "never",
                },
                "metadata": metadata,
            },
        )
        return ProviderResult(
            external_id=intent.get("id"),
            status=map_intent_status(intent.get("status")),
            metadata={
                "stripe_payment_intent_id": intent.get("id"),
                "client_secret": intent.get("client_secret"),
                "next_action": intent.get("next_action"),
            },
        )

    def refund(
        self, db: Session, payment: Payment, amount: Decimal, reason: str | None
    ) -> RefundResult:
        data = self._request(
            "POST",
            "/v1/refunds",
            {
                "payment_intent": payment.external_id,
                "amount": to_minor_units(amount, payment.currency),
                "metadata": {
                    "payment_id": str(payment.id),
                    "reason": reason or "requested_by_customer",
                },
            },
        )
        return RefundResult(
            external_id=data.get("id"),
            status=map_refund_status(data.get("status")),
            processed_at=utcnow(),
        )

    def check_status(self, db: Session, payment: Payment) -> PaymentStatus:
        if not payment.external_id:
            return payment.status
        intent = self._request("GET", f"/v1/payment_intents/{payment.external_id}")
        return map_intent_status(intent.get("status"))

    def normalize_webhook(self, body: bytes, signature: str | None) -> WebhookEvent:
        if not verify_webhook_signature(body, signature, settings.stripe_webhook_secret):
            raise WebhookSignatureError("Invalid Stripe webhook signature")
        event = json.loads(body)
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        status = _WEBHOOK_EVENT_STATUS.get(event_type)
        paid_at = utcnow() if status == PaymentStatus.succeeded else None
        return WebhookEvent(
            external_id=obj.get("id"),
            status=status,
            event_type=event_type,
            paid_at=paid_at,
            payload=event,
        )

    def add_payment_method(self, db: Session, request) -> PaymentMethodDetails:
        if not request.token:
            raise ValidationError("Payment method token is required for Stripe")
        customer = db.get(Customer, request.customer_id)
        stripe_customer = self.ensure_customer(db, customer)
        method = self._request(
            "POST",
            f"/v1/payment_methods/{request.token}/attach",
            {"customer": stripe_customer},
        )
        card = method.get("card") or {}
        return PaymentMethodDetails(
            external_id=method.get("id"),
            last4=card.get("last4"),
            brand=card.get("brand"),
            expires_month=card.get("exp_month"),
            expires_year=card.get("exp_year"),
            metadata={"fingerprint": card.get("fingerprint")},
        )

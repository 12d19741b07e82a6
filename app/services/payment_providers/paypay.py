"""PayPay QR-code payments.

Requests are signed with HMAC-SHA256 over
``method\\nendpoint\\nbody\\ntimestamp\\nnonce`` and sent in the
``Authorization: hmac OPA-Auth:{api_key}:{signature}`` header.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import timedelta
from decimal import Decimal

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ProviderError, StateError, WebhookSignatureError
from app.models.billing import Payment, PaymentProvider, PaymentStatus, RefundStatus
from app.models.provider_payments import PayPayCodeStatus, PayPayPayment
from app.services.common import round_currency, utcnow
from app.services.payment_providers.base import (
    PaymentAdapter,
    ProviderResult,
    RefundResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

PRODUCTION_BASE_URL = "https://api.paypay.ne.jp"
SANDBOX_BASE_URL = "https://stg-api.sandbox.paypay.ne.jp"

_STATUS_MAP = {
    "CREATED": (PayPayCodeStatus.pending, PaymentStatus.pending),
    "PENDING": (PayPayCodeStatus.pending, PaymentStatus.pending),
    "AUTHORIZED": (PayPayCodeStatus.authorized, PaymentStatus.processing),
    "CAPTURED": (PayPayCodeStatus.completed, PaymentStatus.succeeded),
    "COMPLETED": (PayPayCodeStatus.completed, PaymentStatus.succeeded),
    "CANCELED": (PayPayCodeStatus.canceled, PaymentStatus.canceled),
    "EXPIRED": (PayPayCodeStatus.expired, PaymentStatus.failed),
    "FAILED": (PayPayCodeStatus.failed, PaymentStatus.failed),
    "REFUNDED": (PayPayCodeStatus.refunded, PaymentStatus.refunded),
}


def map_paypay_status(status: str | None) -> PaymentStatus:
    return _STATUS_MAP.get((status or "").upper(), (None, PaymentStatus.pending))[1]


def sign_request(
    secret: str, method: str, endpoint: str, body: str, timestamp: int, nonce: str
) -> str:
    message = "\n".join([method, endpoint, body, str(timestamp), nonce])
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    if not secret or not signature:
        return False
    expected = base64.b64encode(
        hmac.new(secret.encode(), body, hashlib.sha256).digest()
    ).decode()
    return hmac.compare_digest(expected, signature)


class PayPayAdapter(PaymentAdapter):
    provider = PaymentProvider.paypay

    def _base_url(self) -> str:
        return SANDBOX_BASE_URL if settings.paypay_sandbox else PRODUCTION_BASE_URL

    def _credentials(self) -> tuple[str, str, str]:
        if not (
            settings.paypay_api_key
            and settings.paypay_api_secret
            and settings.paypay_merchant_id
        ):
            raise ProviderError(
                "PayPay credentials are not configured",
                provider=self.provider.value,
                error_code="not_configured",
            )
        return (
            settings.paypay_api_key,
            settings.paypay_api_secret,
            settings.paypay_merchant_id,
        )

    def _request(self, method: str, endpoint: str, payload: dict | None = None) -> dict:
        api_key, secret, merchant_id = self._credentials()
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        nonce = uuid.uuid4().hex
        timestamp = int(time.time())
        signature = sign_request(secret, method, endpoint, body, timestamp, nonce)
        headers = {
            "Content-Type": "application/json",
            "X-ASSUME-MERCHANT": merchant_id,
            "X-PP-NONCE": nonce,
            "X-PP-TIMESTAMP": str(timestamp),
            "Authorization": f"hmac OPA-Auth:{api_key}:{signature}",
        }
        try:
            resp = httpx.request(
                method,
                f"{self._base_url()}{endpoint}",
                content=body or None,
                headers=headers,
                timeout=settings.provider_timeout_seconds,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            info = {}
            try:
                info = exc.response.json().get("resultInfo") or {}
            except ValueError:
                pass
            logger.error(
                "PayPay request failed method=%s endpoint=%s status=%s code=%s",
                method,
                endpoint,
                exc.response.status_code,
                info.get("code"),
            )
            raise ProviderError(
                f"PayPay API error: {info.get('message') or exc.response.status_code}",
                provider=self.provider.value,
                error_code=info.get("code"),
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("PayPay request failed endpoint=%s error=%s", endpoint, exc)
            raise ProviderError(
                f"PayPay request failed: {exc}",
                provider=self.provider.value,
                error_code="network_error",
            ) from exc
        data = resp.json()
        result = data.get("resultInfo") or {}
        if result.get("code") != "SUCCESS":
            raise ProviderError(
                f"PayPay API error: {result.get('message')}",
                provider=self.provider.value,
                error_code=result.get("code"),
            )
        return data.get("data") or {}

    def initiate(self, db: Session, payment: Payment, request) -> ProviderResult:
        merchant_payment_id = f"eikaiwa-{payment.id}-{int(time.time() * 1000)}"
        data = self._request(
            "POST",
            "/v2/codes",
            {
                "merchantPaymentId": merchant_payment_id,
                "amount": {
                    "amount": int(round_currency(payment.amount, payment.currency)),
                    "currency": payment.currency,
                },
                "codeType": "ORDER_QR",
                "orderDescription": payment.description,
                "redirectUrl": f"{settings.app_url}/payments/{payment.id}/complete",
                "redirectType": "WEB_LINK",
            },
        )
        expires_at = utcnow() + timedelta(hours=settings.paypay_expiry_hours)
        record = PayPayPayment(
            payment_id=payment.id,
            merchant_payment_id=merchant_payment_id,
            code_id=data.get("codeId"),
            qr_code_url=data.get("url"),
            deeplink=data.get("deeplink"),
            amount=payment.amount,
            expires_at=expires_at,
            status=PayPayCodeStatus.pending,
        )
        db.add(record)
        db.flush()
        return ProviderResult(
            external_id=data.get("paymentId") or merchant_payment_id,
            status=PaymentStatus.pending,
            metadata={
                "merchant_payment_id": merchant_payment_id,
                "code_id": data.get("codeId"),
                "qr_code_url": data.get("url"),
                "deeplink": data.get("deeplink"),
                "expires_at": expires_at.isoformat(),
            },
        )

    def refund(
        self, db: Session, payment: Payment, amount: Decimal, reason: str | None
    ) -> RefundResult:
        record = payment.paypay_payment
        if record is None:
            raise StateError("PayPay payment record not found")
        if Decimal(str(amount)) != Decimal(str(payment.amount)):
            raise StateError("PayPay only supports full refunds")
        data = self._request(
            "POST",
            "/v2/refunds",
            {
                "merchantRefundId": f"refund-{payment.id}-{int(time.time() * 1000)}",
                "paymentId": payment.external_id,
                "amount": {
                    "amount": int(round_currency(amount, payment.currency)),
                    "currency": payment.currency,
                },
                "reason": reason or "Customer requested refund",
            },
        )
        record.status = PayPayCodeStatus.refunded
        return RefundResult(
            external_id=data.get("refundId") or data.get("merchantRefundId"),
            status=RefundStatus.succeeded,
            processed_at=utcnow(),
        )

    def check_status(self, db: Session, payment: Payment) -> PaymentStatus:
        record = payment.paypay_payment
        if record is None:
            return payment.status
        data = self._request("GET", f"/v2/codes/payments/{record.merchant_payment_id}")
        raw = (data.get("status") or "").upper()
        code_status, payment_status = _STATUS_MAP.get(
            raw, (record.status, PaymentStatus.pending)
        )
        record.status = code_status
        return payment_status

    def cancel(self, db: Session, payment: Payment) -> bool:
        record = payment.paypay_payment
        if record is None:
            return False
        self._request("DELETE", f"/v2/codes/payments/{record.merchant_payment_id}")
        record.status = PayPayCodeStatus.canceled
        return True

    def normalize_webhook(self, body: bytes, signature: str | None) -> WebhookEvent:
        if not verify_webhook_signature(body, signature, settings.paypay_api_secret):
            raise WebhookSignatureError("Invalid PayPay webhook signature")
        payload = json.loads(body)
        raw = payload.get("status") or payload.get("state")
        return WebhookEvent(
            external_id=payload.get("paymentId") or payload.get("merchantPaymentId"),
            status=map_paypay_status(raw),
            event_type=raw,
            paid_at=utcnow() if map_paypay_status(raw) == PaymentStatus.succeeded else None,
            payload=payload,
        )

    def find_payment(self, db: Session, event: WebhookEvent) -> Payment | None:
        payment = super().find_payment(db, event)
        if payment is not None:
            return payment
        merchant_id = event.payload.get("merchantPaymentId")
        if not merchant_id:
            return None
        record = (
            db.query(PayPayPayment)
            .filter(PayPayPayment.merchant_payment_id == merchant_id)
            .first()
        )
        return record.payment if record else None

    def apply_webhook(self, db: Session, payment: Payment, event: WebhookEvent) -> None:
        record = payment.paypay_payment
        if record is None:
            return
        code_status, _ = _STATUS_MAP.get(
            (event.event_type or "").upper(), (record.status, None)
        )
        record.status = code_status
        if code_status == PayPayCodeStatus.completed:
            record.paid_at = event.paid_at or utcnow()

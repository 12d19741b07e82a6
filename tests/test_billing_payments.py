"""Tests for payment creation, refunds, retries and stats."""

import json
import uuid
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.config import settings
from app.errors import StateError, ValidationError, WebhookSignatureError
from app.models.audit import AuditAction, AuditEntityType, PaymentAuditLog
from app.models.billing import (
    Payment,
    PaymentMethod,
    PaymentMethodType,
    PaymentProvider,
    PaymentRefund,
    PaymentStatus,
    RefundStatus,
)
from app.models.organization import Customer
from app.schemas.billing import PaymentCreate, RefundCreate, RequestContext
from app.services import billing as billing_service
from tests.mocks import record_row_locks, stripe_signature


def _card_payment(customer, method, amount="10000", **kwargs):
    return PaymentCreate(
        customer_id=customer.id,
        amount=Decimal(amount),
        provider=PaymentProvider.stripe,
        payment_method_id=method.id,
        **kwargs,
    )


class TestCreatePayment:
    def test_card_payment_adds_tax_and_succeeds(self, db_session, customer, card_method, stripe_api):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        assert payment.status == PaymentStatus.succeeded
        assert payment.amount == Decimal("11000")
        assert payment.tax_amount == Decimal("1000")
        assert payment.paid_at is not None
        assert payment.external_id.startswith("pi_test_")
        assert stripe_api.paths("POST") == ["/v1/customers", "/v1/payment_intents"]
        _, _, intent = stripe_api.requests[-1]
        assert intent["amount"] == "11000"
        assert intent["currency"] == "jpy"
        assert intent["confirm"] == "true"
        db_session.refresh(customer)
        assert customer.stripe_customer_id == "cus_test_1"

    def test_existing_stripe_customer_is_reused(self, db_session, customer, card_method, stripe_api):
        customer.stripe_customer_id = "cus_existing"
        db_session.commit()

        billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))

        assert stripe_api.paths("POST") == ["/v1/payment_intents"]
        assert stripe_api.requests[-1][2]["customer"] == "cus_existing"

    def test_declined_card_leaves_failed_payment(self, db_session, customer, card_method, stripe_api):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}

        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        assert payment.status == PaymentStatus.failed
        assert payment.failed_at is not None
        assert payment.metadata_["error_code"] == "card_declined"
        assert payment.metadata_["error"] == "Your card was declined."

    def test_unconfigured_stripe_fails_payment(self, db_session, customer, card_method):
        unconfigured = settings.model_copy(update={"stripe_secret_key": None})
        with patch("app.services.payment_providers.stripe.settings", unconfigured):
            payment = billing_service.payments.create_payment(
                db_session, _card_payment(customer, card_method)
            )

        assert payment.status == PaymentStatus.failed
        assert payment.metadata_["error_code"] == "not_configured"

    def test_action_required_intent_stays_pending(self, db_session, customer, card_method, stripe_api):
        stripe_api.intent_status = "requires_action"

        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        assert payment.status == PaymentStatus.pending
        assert payment.metadata_["client_secret"] == "pi_secret"

    def test_tax_exempt_customer_pays_requested_amount(
        self, db_session, customer, card_method, stripe_api
    ):
        customer.tax_exempt = True
        db_session.commit()

        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        assert payment.amount == Decimal("10000")
        assert payment.tax_amount == Decimal("0")

    def test_method_of_another_customer_is_rejected(self, db_session, organization, card_method, stripe_api):
        other = Customer(organization_id=organization.id, name="Suzuki Hanako")
        db_session.add(other)
        db_session.commit()

        with pytest.raises(ValidationError):
            billing_service.payments.create_payment(db_session, _card_payment(other, card_method))

        assert db_session.query(Payment).count() == 0
        assert stripe_api.requests == []

    def test_invalid_currency_is_rejected(self, db_session, customer, card_method, stripe_api):
        with pytest.raises(ValidationError):
            billing_service.payments.create_payment(
                db_session, _card_payment(customer, card_method, currency="J1Y")
            )
        assert db_session.query(Payment).count() == 0

    def test_unknown_customer_is_rejected(self, db_session, stripe_api):
        with pytest.raises(ValidationError):
            billing_service.payments.create_payment(
                db_session,
                PaymentCreate(
                    customer_id=uuid.uuid4(),
                    amount=Decimal("1000"),
                    provider=PaymentProvider.stripe,
                ),
            )

    def test_creation_is_audited_with_context(self, db_session, customer, card_method, stripe_api):
        context = RequestContext(user_id="staff-1", ip_address="10.0.0.5")

        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method), context
        )

        entry = (
            db_session.query(PaymentAuditLog)
            .filter(PaymentAuditLog.entity_id == str(payment.id))
            .filter(PaymentAuditLog.action == AuditAction.create)
            .one()
        )
        assert entry.entity_type == AuditEntityType.payment
        assert entry.user_id == "staff-1"
        assert entry.ip_address == "10.0.0.5"
        assert Decimal(entry.new_data["amount"]) == Decimal("11000")


class TestKonbiniPayment:
    def test_konbini_payment_issues_code(self, db_session, customer):
        payment = billing_service.payments.create_payment(
            db_session,
            PaymentCreate(
                customer_id=customer.id,
                amount=Decimal("5000"),
                provider=PaymentProvider.konbini,
            ),
        )

        assert payment.status == PaymentStatus.pending
        assert payment.method_type == PaymentMethodType.konbini
        record = payment.konbini_payment
        assert len(record.payment_code) == 13
        assert record.payment_code.isdigit()
        assert record.amount == Decimal("5500")
        assert payment.external_id == record.payment_code
        assert "instructions" in payment.metadata_

    def test_konbini_amount_over_store_limit_is_rejected(self, db_session, customer):
        with pytest.raises(ValidationError):
            billing_service.payments.create_payment(
                db_session,
                PaymentCreate(
                    customer_id=customer.id,
                    amount=Decimal("300000"),
                    provider=PaymentProvider.konbini,
                ),
            )
        assert db_session.query(Payment).count() == 0


class TestRefunds:
    def test_partial_then_full_refund(self, db_session, customer, card_method, stripe_api):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        first = billing_service.payments.refund_payment(
            db_session, RefundCreate(payment_id=payment.id, amount=Decimal("5000"))
        )
        db_session.refresh(payment)
        assert first.status == RefundStatus.succeeded
        assert payment.status == PaymentStatus.partially_refunded

        second = billing_service.payments.refund_payment(
            db_session, RefundCreate(payment_id=payment.id)
        )
        db_session.refresh(payment)
        assert second.amount == Decimal("6000")
        assert payment.status == PaymentStatus.refunded
        assert len(billing_service.payments.list_refunds(db_session, str(payment.id))) == 2

    def test_refund_over_balance_is_rejected(self, db_session, customer, card_method, stripe_api):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        with pytest.raises(StateError):
            billing_service.payments.refund_payment(
                db_session, RefundCreate(payment_id=payment.id, amount=Decimal("11001"))
            )
        assert "/v1/refunds" not in stripe_api.paths()

    def test_refund_locks_payment_before_checking_balance(
        self, db_session, customer, card_method, stripe_api
    ):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        with record_row_locks() as locked:
            billing_service.payments.refund_payment(
                db_session, RefundCreate(payment_id=payment.id, amount=Decimal("1000"))
            )

        assert locked[0] is Payment

    def test_rejected_refund_leaves_no_row(self, db_session, customer, card_method, stripe_api):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )
        billing_service.payments.refund_payment(
            db_session, RefundCreate(payment_id=payment.id, amount=Decimal("8000"))
        )

        with pytest.raises(StateError):
            billing_service.payments.refund_payment(
                db_session, RefundCreate(payment_id=payment.id, amount=Decimal("3001"))
            )

        assert db_session.query(PaymentRefund).count() == 1

    def test_refund_of_pending_payment_is_rejected(self, db_session, customer, card_method, stripe_api):
        stripe_api.intent_status = "processing"
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        with pytest.raises(StateError):
            billing_service.payments.refund_payment(
                db_session, RefundCreate(payment_id=payment.id)
            )

    def test_konbini_refunds_are_unsupported(self, db_session, customer):
        payment = billing_service.payments.create_payment(
            db_session,
            PaymentCreate(
                customer_id=customer.id, amount=Decimal("1000"), provider=PaymentProvider.konbini
            ),
        )
        payment.status = PaymentStatus.succeeded
        db_session.commit()

        with pytest.raises(StateError, match="not supported"):
            billing_service.payments.refund_payment(
                db_session, RefundCreate(payment_id=payment.id)
            )


class TestStatusChanges:
    def test_sync_moves_processing_payment_to_succeeded(
        self, db_session, customer, card_method, stripe_api
    ):
        stripe_api.intent_status = "processing"
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )
        assert payment.status == PaymentStatus.processing

        stripe_api.intent_status = "succeeded"
        synced = billing_service.payments.sync_payment_status(db_session, str(payment.id))

        assert synced.status == PaymentStatus.succeeded
        assert synced.paid_at is not None

    def test_terminal_payment_ignores_transitions(self, db_session, customer, card_method, stripe_api):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )

        changed = billing_service.payments.transition(db_session, payment, PaymentStatus.failed)

        assert changed is False
        assert payment.status == PaymentStatus.succeeded


class TestStripeWebhook:
    def _event(self, event_type: str, intent_id: str) -> bytes:
        return json.dumps(
            {"type": event_type, "data": {"object": {"id": intent_id}}}
        ).encode()

    def test_succeeded_event_completes_payment(self, db_session, customer, card_method, stripe_api):
        stripe_api.intent_status = "processing"
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )
        body = self._event("payment_intent.succeeded", payment.external_id)

        result = billing_service.payments.handle_webhook(
            db_session, "stripe", body, stripe_signature(body, "whsec_test")
        )

        db_session.refresh(payment)
        assert result["status"] == "processed"
        assert payment.status == PaymentStatus.succeeded
        webhook_entries = (
            db_session.query(PaymentAuditLog)
            .filter(PaymentAuditLog.action == AuditAction.webhook)
            .count()
        )
        assert webhook_entries == 1

    def test_replayed_event_is_unchanged(self, db_session, customer, card_method, stripe_api):
        payment = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )
        body = self._event("payment_intent.payment_failed", payment.external_id)

        result = billing_service.payments.handle_webhook(
            db_session, "stripe", body, stripe_signature(body, "whsec_test")
        )

        assert result["status"] == "unchanged"
        assert result["payment_status"] == "succeeded"

    def test_unknown_intent_is_ignored(self, db_session, stripe_api):
        body = self._event("payment_intent.succeeded", "pi_unknown")

        result = billing_service.payments.handle_webhook(
            db_session, "stripe", body, stripe_signature(body, "whsec_test")
        )

        assert result == {"status": "ignored", "reason": "unknown_payment"}

    def test_bad_signature_is_rejected(self, db_session, stripe_api):
        body = self._event("payment_intent.succeeded", "pi_1")

        with pytest.raises(WebhookSignatureError):
            billing_service.payments.handle_webhook(
                db_session, "stripe", body, stripe_signature(body, "wrong-secret")
            )


class TestRetryFailedPayments:
    def test_failed_payment_is_retried_once(self, db_session, customer, card_method, stripe_api):
        stripe_api.decline = {"code": "card_declined", "message": "declined"}
        original = billing_service.payments.create_payment(
            db_session, _card_payment(customer, card_method)
        )
        stripe_api.decline = None

        result = billing_service.payments.retry_failed_payments(db_session)

        assert result["processed"] == 1
        assert result["failed"] == 0
        retry = db_session.query(Payment).filter(Payment.retry_of_id == original.id).one()
        assert retry.status == PaymentStatus.succeeded
        assert retry.attempt_number == 2
        assert retry.amount == original.amount

        again = billing_service.payments.retry_failed_payments(db_session)
        assert again["processed"] == 0

    def test_retry_stops_at_max_attempts(self, db_session, customer, card_method, stripe_api):
        stripe_api.decline = {"code": "card_declined", "message": "declined"}
        billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))

        for _ in range(5):
            billing_service.payments.retry_failed_payments(db_session, max_attempts=3)

        assert db_session.query(Payment).count() == 3

    def test_customer_without_default_method_is_skipped(
        self, db_session, customer, card_method, stripe_api
    ):
        stripe_api.decline = {"code": "card_declined", "message": "declined"}
        billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))
        card_method.is_default = False
        db_session.commit()

        result = billing_service.payments.retry_failed_payments(db_session)

        assert result["skipped"] == 1
        assert db_session.query(Payment).count() == 1


def test_payment_stats(db_session, organization, customer, card_method, stripe_api):
    billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))
    stripe_api.decline = {"code": "card_declined", "message": "declined"}
    billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))

    stats = billing_service.payments.get_payment_stats(db_session, str(organization.id))

    assert stats["total_payments"] == 2
    assert stats["successful_payments"] == 1
    assert stats["failed_payments"] == 1
    assert stats["success_rate"] == Decimal("50.00")
    assert stats["total_revenue"] == Decimal("11000")
    assert stats["net_revenue"] == Decimal("11000")


def test_list_payments_filters_by_status(db_session, customer, card_method, stripe_api):
    billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))

    response = billing_service.payments.list_response(
        db_session, 10, 0, customer_id=str(customer.id), status="succeeded"
    )

    assert response["count"] == 1
    assert response["items"][0].status == PaymentStatus.succeeded
    with pytest.raises(ValidationError):
        billing_service.payments.list(db_session, order_by="bogus")


def test_inactive_method_cannot_be_used(db_session, customer, card_method, stripe_api):
    card_method.is_active = False
    db_session.commit()

    with pytest.raises(ValidationError):
        billing_service.payments.create_payment(db_session, _card_payment(customer, card_method))
    assert db_session.query(PaymentMethod).count() == 1


def test_list_helpers_coexist_with_list_methods(db_session, customer, card_method, stripe_api):
    from app.services.billing.payments import PaymentMethods, Payments

    payment = billing_service.payments.create_payment(
        db_session, _card_payment(customer, card_method)
    )

    assert Payments.list_refunds.__annotations__["return"] == "list[PaymentRefund]"
    assert PaymentMethods.list_payment_methods.__annotations__["return"] == "list[PaymentMethod]"
    assert billing_service.payments.list_refunds(db_session, str(payment.id)) == []
    methods = billing_service.payment_methods.list_payment_methods(db_session, str(customer.id))
    assert [method.id for method in methods] == [card_method.id]

from __future__ import annotations

import json
import uuid
from decimal import Decimal
from urllib.parse import urlparse

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_db
from app.main import app
from tests.mocks import hex_signature, stripe_signature


@pytest.fixture()
def client(db_session):
    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.pop(get_db, None)


STAFF_HEADERS = {
    "x-user-id": "staff-1",
    "x-user-email": "office@sakura.example",
    "x-forwarded-for": "198.51.100.7, 10.0.0.1",
}


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_metrics_exposed(client) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text


def test_not_found_error_payload(client) -> None:
    resp = client.get(f"/api/v1/payments/{uuid.uuid4()}")
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "not_found"
    assert body["message"] == "Payment not found"
    assert set(body) == {"code", "message", "details", "request_id"}


def test_request_validation_error_payload(client) -> None:
    resp = client.post("/api/v1/payments", json={"amount": -5})
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_create_and_list_payments(client, customer, card_method, stripe_api) -> None:
    resp = client.post(
        "/api/v1/payments",
        json={
            "customer_id": str(customer.id),
            "amount": "10000",
            "provider": "stripe",
            "payment_method_id": str(card_method.id),
        },
        headers=STAFF_HEADERS,
    )
    assert resp.status_code == 201
    payment = resp.json()
    assert payment["status"] == "succeeded"
    assert Decimal(payment["amount"]) == Decimal("11000")

    listed = client.get("/api/v1/payments", params={"customer_id": str(customer.id)})
    assert listed.status_code == 200
    assert listed.json()["count"] == 1
    assert listed.json()["items"][0]["id"] == payment["id"]

    history = client.get(f"/api/v1/audit/payment/{payment['id']}")
    assert history.status_code == 200
    assert history.json()[0]["ip_address"] == "198.51.100.7"
    assert history.json()[0]["user_email"] == "office@sakura.example"


def test_refund_over_balance_is_rejected(client, customer, card_method, stripe_api) -> None:
    payment = client.post(
        "/api/v1/payments",
        json={
            "customer_id": str(customer.id),
            "amount": "1000",
            "provider": "stripe",
            "payment_method_id": str(card_method.id),
        },
    ).json()

    resp = client.post(
        "/api/v1/refunds", json={"payment_id": payment["id"], "amount": "5000"}
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_state"


def test_invoice_pdf_download(client, customer) -> None:
    created = client.post(
        "/api/v1/invoices",
        json={
            "customer_id": str(customer.id),
            "lines": [{"description": "Private lessons", "unit_price": "6000"}],
        },
    )
    assert created.status_code == 201
    invoice = created.json()

    resp = client.get(f"/api/v1/invoices/{invoice['id']}/pdf")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert invoice["invoice_number"] in resp.headers["content-disposition"]
    assert resp.content.startswith(b"%PDF")


def test_generated_pdf_url_is_served(client, customer) -> None:
    created = client.post(
        "/api/v1/invoices",
        json={
            "customer_id": str(customer.id),
            "lines": [{"description": "Trial lesson", "unit_price": "2000"}],
        },
    )
    invoice = created.json()

    generated = client.post(f"/api/v1/invoices/{invoice['id']}/pdf")
    assert generated.status_code == 200
    pdf_url = generated.json()["pdf_url"]
    assert urlparse(pdf_url).path == f"/api/v1/invoices/{invoice['id']}/pdf"

    resp = client.get(urlparse(pdf_url).path)
    assert resp.status_code == 200
    assert resp.content.startswith(b"%PDF")


def test_invoice_invalid_transition_is_conflict(client, customer) -> None:
    invoice = client.post(
        "/api/v1/invoices",
        json={
            "customer_id": str(customer.id),
            "status": "draft",
            "lines": [{"description": "Materials", "unit_price": "1500"}],
        },
    ).json()

    resp = client.patch(f"/api/v1/invoices/{invoice['id']}/status", json={"status": "paid"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_state"


def test_subscription_lifecycle(client, customer, card_method, stripe_api) -> None:
    created = client.post(
        "/api/v1/subscriptions",
        json={
            "customer_id": str(customer.id),
            "plan_id": "standard",
            "plan_name": "Standard Plan",
            "amount": "10000",
            "trial_days": 7,
        },
    )
    assert created.status_code == 201
    subscription = created.json()
    assert subscription["status"] == "trialing"

    scheduled = client.post(
        f"/api/v1/subscriptions/{subscription['id']}/cancel", json={"immediate": False}
    )
    assert scheduled.json()["cancel_at_period_end"] is True

    reactivated = client.post(f"/api/v1/subscriptions/{subscription['id']}/reactivate")
    assert reactivated.status_code == 200
    assert reactivated.json()["cancel_at_period_end"] is False

    again = client.post(f"/api/v1/subscriptions/{subscription['id']}/reactivate")
    assert again.status_code == 409


def test_konbini_flow(client, customer) -> None:
    payment = client.post(
        "/api/v1/payments",
        json={
            "customer_id": str(customer.id),
            "amount": "3000",
            "provider": "konbini",
            "konbini_store": "seven_eleven",
        },
    ).json()
    code = payment["external_id"]

    details = client.get(f"/api/v1/konbini/{code}")
    assert details.status_code == 200
    assert details.json()["store_name"] == "7-Eleven"

    confirmed = client.post("/api/v1/konbini/confirm", json={"payment_code": code})
    repeated = client.post("/api/v1/konbini/confirm", json={"payment_code": code})
    assert confirmed.json()["status"] == "confirmed"
    assert repeated.json()["status"] == "already_confirmed"


def test_webhook_with_bad_signature_is_unauthorized(client, stripe_api) -> None:
    resp = client.post(
        "/api/v1/webhooks/stripe",
        content=b'{"type": "payment_intent.succeeded"}',
        headers={"stripe-signature": "t=1,v1=bad"},
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_signature"


def test_stripe_webhook_for_unknown_intent_is_ignored(client, stripe_api) -> None:
    body = json.dumps(
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_unknown"}}}
    ).encode()

    resp = client.post(
        "/api/v1/webhooks/stripe",
        content=body,
        headers={"stripe-signature": stripe_signature(body, "whsec_test")},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"


def test_konbini_webhook(client, customer, konbini_secret) -> None:
    payment = client.post(
        "/api/v1/payments",
        json={"customer_id": str(customer.id), "amount": "2000", "provider": "konbini"},
    ).json()
    body = json.dumps({"payment_code": payment["external_id"], "status": "PAID"}).encode()

    resp = client.post(
        "/api/v1/webhooks/konbini",
        content=body,
        headers={"x-konbini-signature": hex_signature(body, konbini_secret)},
    )
    assert resp.status_code == 200
    assert resp.json()["payment_status"] == "succeeded"


def test_cron_jobs(client) -> None:
    jobs = client.get("/api/v1/cron/jobs")
    assert jobs.status_code == 200
    assert {job["name"] for job in jobs.json()} >= {"subscription_billing", "report_generation"}

    triggered = client.post("/api/v1/cron/jobs/invoice_overdue/trigger")
    assert triggered.json()["status"] == "success"

    unknown = client.get("/api/v1/cron/jobs/unknown")
    assert unknown.status_code == 404


def test_tax_endpoints(client) -> None:
    rates = client.get("/api/v1/tax/rates")
    assert rates.status_code == 200
    assert Decimal(str(rates.json()["standard"])) == Decimal("0.1")

    calculated = client.get("/api/v1/tax/calculate", params={"amount": "8000", "reduced": True})
    assert calculated.status_code == 200
    breakdown = calculated.json()["breakdown"]
    assert breakdown["tax_amount"]["formatted"] == "¥640"
    assert breakdown["total"]["formatted"] == "¥8,640"

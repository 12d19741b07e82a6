"""Mock utilities for testing external dependencies."""

import hashlib
import hmac
import time
from contextlib import contextmanager
from typing import Any
from unittest.mock import patch

import httpx
from sqlalchemy.orm import Query


class FakeSMTP:
    """Mock SMTP server for email tests."""

    def __init__(self, host: str = "", port: int = 25, **kwargs):
        self.host = host
        self.port = port
        self.messages: list[tuple[str, str, str]] = []
        self.started_tls = False
        self.logged_in = False
        self.closed = False

    def starttls(self):
        self.started_tls = True

    def login(self, user: str, password: str):
        self.logged_in = True

    def sendmail(self, from_addr: str, to_addrs: str, msg: str):
        self.messages.append((from_addr, to_addrs, msg))

    def quit(self):
        self.closed = True


class FakeStripeAPI:
    """Stands in for ``httpx.request`` against the Stripe REST API.

    Returns real ``httpx.Response`` objects so ``raise_for_status`` behaves
    as it does in production.
    """

    def __init__(self, intent_status: str = "succeeded"):
        self.intent_status = intent_status
        self.decline: dict | None = None
        self.requests: list[tuple[str, str, dict]] = []
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    def paths(self, method: str | None = None) -> list[str]:
        return [path for verb, path, _ in self.requests if method in (None, verb)]

    def __call__(self, method: str, url: str, data: dict | None = None, **kwargs) -> httpx.Response:
        path = httpx.URL(url).path
        self.requests.append((method, path, dict(data or {})))
        request = httpx.Request(method, url)
        payload: dict[str, Any]
        if method == "POST" and path == "/v1/customers":
            payload = {"id": self._next_id("cus")}
        elif method == "POST" and path == "/v1/payment_intents":
            if self.decline is not None:
                return httpx.Response(402, json={"error": self.decline}, request=request)
            payload = {
                "id": self._next_id("pi"),
                "status": self.intent_status,
                "client_secret": "pi_secret",
            }
        elif method == "GET" and path.startswith("/v1/payment_intents/"):
            payload = {"id": path.rsplit("/", 1)[-1], "status": self.intent_status}
        elif method == "POST" and path == "/v1/refunds":
            payload = {"id": self._next_id("re"), "status": "succeeded"}
        elif method == "POST" and path.endswith("/attach"):
            payload = {
                "id": path.split("/")[3],
                "card": {
                    "last4": "4242",
                    "brand": "visa",
                    "exp_month": 12,
                    "exp_year": 2030,
                    "fingerprint": "fp_test",
                },
            }
        else:
            return httpx.Response(404, json={"error": {"message": "not found"}}, request=request)
        return httpx.Response(200, json=payload, request=request)


def stripe_signature(body: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def hex_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@contextmanager
def record_row_locks():
    """Collect the entities queried with ``with_for_update``.

    SQLite ignores FOR UPDATE, so tests assert on the request instead.
    """
    locked: list = []
    original = Query.with_for_update

    def _spy(query, *args, **kwargs):
        locked.append(query.column_descriptions[0]["entity"])
        return original(query, *args, **kwargs)

    with patch.object(Query, "with_for_update", _spy):
        yield locked

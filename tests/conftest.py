import sqlite3
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import sqltypes

from app.config import settings
from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))

# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

import app.models  # noqa: E402,F401
from app.models.billing import PaymentMethod, PaymentMethodType, PaymentProvider  # noqa: E402
from app.models.organization import Customer, Organization  # noqa: E402
from tests.mocks import FakeStripeAPI  # noqa: E402


@pytest.fixture()
def engine():
    # Services commit and roll back on their own, so every test gets a
    # fresh in-memory database instead of an outer rollback-only transaction.
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def now():
    return datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def organization(db_session):
    organization = Organization(name="Sakura English School", email="office@sakura.example")
    db_session.add(organization)
    db_session.commit()
    db_session.refresh(organization)
    return organization


@pytest.fixture()
def customer(db_session, organization):
    customer = Customer(
        organization_id=organization.id,
        name="Yamada Taro",
        email=_unique_email(),
        phone="090-1234-5678",
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def card_method(db_session, customer):
    method = PaymentMethod(
        customer_id=customer.id,
        method_type=PaymentMethodType.card,
        provider=PaymentProvider.stripe,
        external_id="pm_card_visa",
        last4="4242",
        brand="visa",
        is_default=True,
    )
    db_session.add(method)
    db_session.commit()
    db_session.refresh(method)
    return method


@pytest.fixture()
def stripe_api():
    """Stripe configured with a fake HTTP layer; intents succeed unless told otherwise."""
    fake = FakeStripeAPI()
    configured = settings.model_copy(
        update={"stripe_secret_key": "sk_test_123", "stripe_webhook_secret": "whsec_test"}
    )
    with patch("app.services.payment_providers.stripe.settings", configured):
        with patch(
            "app.services.payment_providers.stripe.httpx.request", side_effect=fake
        ):
            yield fake


@pytest.fixture()
def konbini_secret():
    configured = settings.model_copy(update={"konbini_webhook_secret": "konbini-secret"})
    with patch("app.services.payment_providers.konbini.settings", configured):
        yield "konbini-secret"

import pytest
from sqlalchemy.exc import IntegrityError

from app.errors import NotFoundError, StateError, ValidationError
from app.models.billing import PaymentMethod, PaymentMethodType, PaymentProvider
from app.models.organization import Customer
from app.schemas.billing import PaymentMethodCreate
from app.services import billing as billing_service
from tests.mocks import record_row_locks


def _add_card(db_session, customer, token: str, is_default: bool = False):
    return billing_service.payment_methods.add_payment_method(
        db_session,
        PaymentMethodCreate(
            customer_id=customer.id,
            method_type=PaymentMethodType.card,
            provider=PaymentProvider.stripe,
            token=token,
            is_default=is_default,
        ),
    )


def _defaults(db_session, customer) -> list:
    return (
        db_session.query(PaymentMethod)
        .filter(PaymentMethod.customer_id == customer.id)
        .filter(PaymentMethod.is_default.is_(True))
        .all()
    )


def test_first_method_becomes_default(db_session, customer, stripe_api):
    method = _add_card(db_session, customer, "pm_card_visa")

    assert method.is_default
    assert method.last4 == "4242"
    assert method.brand == "visa"
    assert method.external_id == "pm_card_visa"
    assert "/v1/payment_methods/pm_card_visa/attach" in stripe_api.paths("POST")


def test_later_method_is_not_default_unless_asked(db_session, customer, stripe_api):
    first = _add_card(db_session, customer, "pm_first")
    second = _add_card(db_session, customer, "pm_second")

    assert first.is_default
    assert not second.is_default

    third = _add_card(db_session, customer, "pm_third", is_default=True)

    assert [m.id for m in _defaults(db_session, customer)] == [third.id]


def test_set_default_clears_previous(db_session, customer, stripe_api):
    first = _add_card(db_session, customer, "pm_first")
    second = _add_card(db_session, customer, "pm_second")

    billing_service.payment_methods.set_default_payment_method(db_session, str(second.id))

    db_session.refresh(first)
    assert not first.is_default
    assert [m.id for m in _defaults(db_session, customer)] == [second.id]


def test_removing_default_promotes_newest_remaining(db_session, customer, stripe_api):
    first = _add_card(db_session, customer, "pm_first")
    second = _add_card(db_session, customer, "pm_second")

    promoted = billing_service.payment_methods.remove_payment_method(db_session, str(first.id))

    db_session.refresh(first)
    assert promoted.id == second.id
    assert not first.is_active
    assert [m.id for m in _defaults(db_session, customer)] == [second.id]
    listed = billing_service.payment_methods.list_payment_methods(db_session, str(customer.id))
    assert [m.id for m in listed] == [second.id]


def test_removed_method_cannot_be_removed_twice(db_session, customer, stripe_api):
    method = _add_card(db_session, customer, "pm_first")
    billing_service.payment_methods.remove_payment_method(db_session, str(method.id))

    with pytest.raises(NotFoundError):
        billing_service.payment_methods.remove_payment_method(db_session, str(method.id))
    with pytest.raises(StateError):
        billing_service.payment_methods.set_default_payment_method(db_session, str(method.id))


def test_stripe_method_requires_token(db_session, customer, stripe_api):
    with pytest.raises(ValidationError):
        billing_service.payment_methods.add_payment_method(
            db_session,
            PaymentMethodCreate(customer_id=customer.id, provider=PaymentProvider.stripe),
        )
    assert db_session.query(PaymentMethod).count() == 0


def test_default_change_locks_the_customer(db_session, customer, stripe_api):
    with record_row_locks() as locked:
        _add_card(db_session, customer, "pm_first", is_default=True)

    assert Customer in locked


def test_database_allows_one_active_default_per_customer(db_session, customer, card_method):
    db_session.add(
        PaymentMethod(
            customer_id=customer.id,
            method_type=PaymentMethodType.card,
            provider=PaymentProvider.stripe,
            external_id="pm_duplicate",
            is_default=True,
        )
    )

    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()

    db_session.add(
        PaymentMethod(
            customer_id=customer.id,
            method_type=PaymentMethodType.card,
            provider=PaymentProvider.stripe,
            external_id="pm_retired",
            is_default=True,
            is_active=False,
        )
    )
    db_session.commit()

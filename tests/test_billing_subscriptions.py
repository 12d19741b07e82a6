"""Tests for the subscription lifecycle, periodic billing and proration."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.config import settings
from app.errors import StateError
from app.models.billing import (
    BillingAttempt,
    BillingAttemptStatus,
    BillingCycle,
    Payment,
    PaymentStatus,
    SubscriptionStatus,
)
from app.models.reminder import PaymentReminder, ReminderStatus, ReminderType
from app.schemas.billing import SubscriptionCancel, SubscriptionCreate, SubscriptionPlanChange
from app.services import billing as billing_service
from app.services.billing.subscriptions import add_billing_cycle, calculate_proration

JUNE_1 = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _subscribe(db_session, customer, **kwargs):
    kwargs.setdefault("plan_id", "standard")
    kwargs.setdefault("plan_name", "Standard Plan")
    kwargs.setdefault("amount", Decimal("10000"))
    return billing_service.subscriptions.create_subscription(
        db_session, SubscriptionCreate(customer_id=customer.id, **kwargs)
    )


def _payments(db_session, subscription):
    return (
        db_session.query(Payment)
        .filter(Payment.subscription_id == subscription.id)
        .order_by(Payment.created_at.asc())
        .all()
    )


class TestCalendarMath:
    def test_proration_for_upgrade_halfway(self):
        now = datetime(2024, 6, 16, tzinfo=timezone.utc)
        period_end = now + timedelta(days=15)

        amount = calculate_proration(
            Decimal("10000"), Decimal("20000"), period_end, BillingCycle.monthly, now
        )

        assert amount == Decimal("5000")

    def test_proration_for_downgrade_is_negative(self):
        now = datetime(2024, 6, 16, tzinfo=timezone.utc)

        amount = calculate_proration(
            Decimal("20000"),
            Decimal("10000"),
            now + timedelta(days=15),
            BillingCycle.monthly,
            now,
        )

        assert amount == Decimal("-5000")

    def test_partial_days_count_as_whole(self):
        now = datetime(2024, 6, 16, tzinfo=timezone.utc)

        amount = calculate_proration(
            Decimal("0"),
            Decimal("3000"),
            now + timedelta(days=14, hours=12),
            BillingCycle.monthly,
            now,
        )

        assert amount == Decimal("1500")

    def test_proration_after_period_end_is_zero(self):
        now = datetime(2024, 6, 16, tzinfo=timezone.utc)

        amount = calculate_proration(
            Decimal("10000"),
            Decimal("20000"),
            now - timedelta(days=1),
            BillingCycle.monthly,
            now,
        )

        assert amount == Decimal("0")

    def test_month_end_is_clamped(self):
        assert add_billing_cycle(
            datetime(2024, 1, 31, tzinfo=timezone.utc), BillingCycle.monthly
        ) == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert add_billing_cycle(
            datetime(2024, 2, 29, tzinfo=timezone.utc), BillingCycle.yearly
        ) == datetime(2025, 2, 28, tzinfo=timezone.utc)
        assert add_billing_cycle(
            datetime(2024, 12, 15, tzinfo=timezone.utc), BillingCycle.monthly
        ) == datetime(2025, 1, 15, tzinfo=timezone.utc)
        assert add_billing_cycle(JUNE_1, BillingCycle.weekly) == JUNE_1 + timedelta(days=7)


class TestCreateSubscription:
    def test_without_trial_charges_first_period(self, db_session, customer, card_method, stripe_api):
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        assert subscription.status == SubscriptionStatus.active
        assert subscription.current_period_start.replace(tzinfo=timezone.utc) == JUNE_1
        assert subscription.next_billing_date.replace(tzinfo=timezone.utc) == datetime(
            2024, 7, 1, tzinfo=timezone.utc
        )
        payments = _payments(db_session, subscription)
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.succeeded
        assert payments[0].amount == Decimal("11000")
        assert payments[0].metadata_["billing_period"] == "2024-06-01/2024-07-01"
        attempt = db_session.query(BillingAttempt).one()
        assert attempt.status == BillingAttemptStatus.succeeded
        assert attempt.payment_id == payments[0].id

    def test_discount_is_applied_before_tax(self, db_session, customer, card_method, stripe_api):
        subscription = _subscribe(
            db_session, customer, start_date=JUNE_1, discount_rate=Decimal("10")
        )

        assert _payments(db_session, subscription)[0].amount == Decimal("9900")

    def test_trial_defers_billing(self, db_session, customer, card_method, stripe_api):
        subscription = _subscribe(db_session, customer, trial_days=14)

        assert subscription.status == SubscriptionStatus.trialing
        assert subscription.next_billing_date == subscription.trial_end
        assert _payments(db_session, subscription) == []
        types = sorted(
            reminder.reminder_type.value
            for reminder in db_session.query(PaymentReminder)
            .filter(PaymentReminder.subscription_id == subscription.id)
            .all()
        )
        assert types == [ReminderType.subscription_renewal.value, ReminderType.trial_ending.value]

    def test_no_default_method_leaves_past_due(self, db_session, customer):
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        assert subscription.status == SubscriptionStatus.past_due
        assert _payments(db_session, subscription) == []


class TestPeriodicBilling:
    def test_trial_end_is_billed(self, db_session, customer, card_method, stripe_api):
        subscription = _subscribe(db_session, customer, trial_days=14)
        trial_end = subscription.trial_end.replace(tzinfo=timezone.utc)

        result = billing_service.subscriptions.process_pending_billing(
            db_session, now=trial_end + timedelta(hours=1)
        )

        db_session.refresh(subscription)
        assert result["processed"] == 1
        assert subscription.status == SubscriptionStatus.active
        assert subscription.current_period_start.replace(tzinfo=timezone.utc) == trial_end

    def test_nothing_due_is_not_billed(self, db_session, customer, card_method, stripe_api):
        _subscribe(db_session, customer, trial_days=14)

        result = billing_service.subscriptions.process_pending_billing(db_session)

        assert result == {"processed": 0, "failed": 0, "skipped": 0, "errors": []}

    def test_declined_charge_moves_to_past_due(self, db_session, customer, card_method, stripe_api):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}

        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        assert subscription.status == SubscriptionStatus.past_due
        assert subscription.failed_attempts == 1
        assert subscription.next_billing_date.replace(tzinfo=timezone.utc) == JUNE_1
        failed_notices = (
            db_session.query(PaymentReminder)
            .filter(PaymentReminder.reminder_type == ReminderType.payment_failed)
            .count()
        )
        assert failed_notices == 1

    def test_same_period_is_never_charged_twice(
        self, db_session, customer, card_method, stripe_api
    ):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)
        stripe_api.decline = None

        result = billing_service.subscriptions.process_pending_billing(db_session)

        assert result["skipped"] == 1
        assert len(_payments(db_session, subscription)) == 1
        assert db_session.query(BillingAttempt).count() == 1

    def test_successful_retry_reactivates(self, db_session, customer, card_method, stripe_api):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)
        stripe_api.decline = None

        result = billing_service.payments.retry_failed_payments(db_session)

        db_session.refresh(subscription)
        assert result["processed"] == 1
        assert subscription.status == SubscriptionStatus.active
        assert subscription.failed_attempts == 0
        assert subscription.next_billing_date.replace(tzinfo=timezone.utc) == datetime(
            2024, 7, 1, tzinfo=timezone.utc
        )
        assert db_session.query(BillingAttempt).one().status == BillingAttemptStatus.succeeded

    def test_exhausted_retries_leave_unpaid(self, db_session, customer, card_method, stripe_api):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        billing_service.payments.retry_failed_payments(db_session, max_attempts=3)
        billing_service.payments.retry_failed_payments(db_session, max_attempts=3)

        db_session.refresh(subscription)
        assert len(_payments(db_session, subscription)) == 3
        assert subscription.failed_attempts == 3
        assert subscription.status == SubscriptionStatus.unpaid


    def test_past_due_period_is_charged_again_by_a_later_run(
        self, db_session, customer, card_method, stripe_api
    ):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)
        stripe_api.decline = None

        result = billing_service.subscriptions.process_pending_billing(
            db_session, now=datetime.now(timezone.utc) + timedelta(days=3)
        )

        db_session.refresh(subscription)
        payments = _payments(db_session, subscription)
        assert result["processed"] == 1
        assert subscription.status == SubscriptionStatus.active
        assert subscription.failed_attempts == 0
        assert len(payments) == 2
        assert payments[1].retry_of_id == payments[0].id
        assert payments[1].status == PaymentStatus.succeeded
        assert db_session.query(BillingAttempt).one().status == BillingAttemptStatus.succeeded

    def test_past_due_with_no_retries_left_becomes_unpaid(
        self, db_session, customer, card_method, stripe_api
    ):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)
        subscription.failed_attempts = settings.max_retry_attempts
        db_session.commit()

        billing_service.subscriptions.process_pending_billing(
            db_session, now=datetime.now(timezone.utc) + timedelta(days=3)
        )

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.unpaid
        assert len(_payments(db_session, subscription)) == 1

    def test_retry_job_leaves_an_in_flight_attempt_alone(
        self, db_session, customer, card_method, stripe_api
    ):
        stripe_api.decline = {"code": "card_declined", "message": "Your card was declined."}
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)
        stripe_api.decline = None
        attempt = db_session.query(BillingAttempt).one()
        attempt.status = BillingAttemptStatus.started
        db_session.commit()

        result = billing_service.payments.retry_failed_payments(db_session)

        assert result["skipped"] == 1
        assert len(_payments(db_session, subscription)) == 1


class TestCancellation:
    def test_immediate_cancel(self, db_session, customer, card_method, stripe_api):
        subscription = _subscribe(db_session, customer, trial_days=14)

        canceled = billing_service.subscriptions.cancel_subscription(
            db_session,
            str(subscription.id),
            SubscriptionCancel(immediate=True, reason="moving abroad"),
        )

        assert canceled.status == SubscriptionStatus.canceled
        assert canceled.canceled_at is not None
        assert canceled.metadata_["cancel_reason"] == "moving abroad"
        pending = (
            db_session.query(PaymentReminder)
            .filter(PaymentReminder.subscription_id == subscription.id)
            .filter(PaymentReminder.status == ReminderStatus.pending)
            .count()
        )
        assert pending == 0
        with pytest.raises(StateError):
            billing_service.subscriptions.cancel_subscription(
                db_session, str(subscription.id), SubscriptionCancel(immediate=True)
            )
        with pytest.raises(StateError):
            billing_service.subscriptions.reactivate_subscription(db_session, str(subscription.id))

    def test_cancel_at_period_end_then_billing_closes_it(
        self, db_session, customer, card_method, stripe_api
    ):
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        scheduled = billing_service.subscriptions.cancel_subscription(
            db_session, str(subscription.id), SubscriptionCancel()
        )
        assert scheduled.status == SubscriptionStatus.active
        assert scheduled.cancel_at_period_end

        result = billing_service.subscriptions.process_pending_billing(db_session)

        db_session.refresh(subscription)
        assert result["processed"] == 1
        assert subscription.status == SubscriptionStatus.canceled
        assert len(_payments(db_session, subscription)) == 1

    def test_reactivate_clears_scheduled_cancel(
        self, db_session, customer, card_method, stripe_api
    ):
        subscription = _subscribe(db_session, customer, trial_days=14)
        billing_service.subscriptions.cancel_subscription(
            db_session, str(subscription.id), SubscriptionCancel()
        )

        reactivated = billing_service.subscriptions.reactivate_subscription(
            db_session, str(subscription.id)
        )

        assert not reactivated.cancel_at_period_end
        with pytest.raises(StateError):
            billing_service.subscriptions.reactivate_subscription(db_session, str(subscription.id))


class TestPlanChanges:
    def test_immediate_upgrade_charges_proration(
        self, db_session, customer, card_method, stripe_api
    ):
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        result = billing_service.subscriptions.change_subscription_plan(
            db_session,
            str(subscription.id),
            SubscriptionPlanChange(plan_id="premium", plan_name="Premium Plan", amount=20000),
            now=datetime(2024, 6, 16, tzinfo=timezone.utc),
        )

        assert result["proration_amount"] == Decimal("5000")
        assert result["payment"].status == PaymentStatus.succeeded
        assert result["payment"].amount == Decimal("5500")
        assert result["payment"].metadata_["type"] == "proration"
        assert result["subscription"].plan_id == "premium"
        assert result["subscription"].amount == Decimal("20000")
        assert result["subscription"].next_billing_date.replace(
            tzinfo=timezone.utc
        ) == datetime(2024, 7, 1, tzinfo=timezone.utc)

    def test_immediate_downgrade_is_not_credited(
        self, db_session, customer, card_method, stripe_api
    ):
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        result = billing_service.subscriptions.change_subscription_plan(
            db_session,
            str(subscription.id),
            SubscriptionPlanChange(plan_id="lite", plan_name="Lite Plan", amount=5000),
            now=datetime(2024, 6, 16, tzinfo=timezone.utc),
        )

        assert result["proration_amount"] == Decimal("-2500")
        assert result["payment"] is None
        assert len(_payments(db_session, subscription)) == 1

    def test_next_cycle_change_applies_at_renewal(
        self, db_session, customer, card_method, stripe_api
    ):
        subscription = _subscribe(db_session, customer, start_date=JUNE_1)

        result = billing_service.subscriptions.change_subscription_plan(
            db_session,
            str(subscription.id),
            SubscriptionPlanChange(
                plan_id="premium",
                plan_name="Premium Plan",
                amount=20000,
                proration="next_cycle",
            ),
        )
        assert result["subscription"].plan_id == "standard"
        assert result["subscription"].pending_plan_id == "premium"

        outcome = billing_service.subscriptions.process_subscription_payment(
            db_session, str(subscription.id)
        )

        db_session.refresh(subscription)
        assert outcome["status"] == "succeeded"
        assert subscription.plan_id == "premium"
        assert subscription.pending_plan_id is None
        assert _payments(db_session, subscription)[-1].amount == Decimal("22000")

    def test_canceled_subscription_cannot_change_plan(
        self, db_session, customer, card_method, stripe_api
    ):
        subscription = _subscribe(db_session, customer, trial_days=7)
        billing_service.subscriptions.cancel_subscription(
            db_session, str(subscription.id), SubscriptionCancel(immediate=True)
        )

        with pytest.raises(StateError):
            billing_service.subscriptions.change_subscription_plan(
                db_session,
                str(subscription.id),
                SubscriptionPlanChange(plan_id="premium", plan_name="Premium", amount=20000),
            )


def test_subscription_analytics(db_session, organization, customer, card_method, stripe_api):
    _subscribe(db_session, customer, start_date=JUNE_1)
    leaving = _subscribe(db_session, customer, start_date=JUNE_1, plan_id="kids")
    billing_service.subscriptions.cancel_subscription(
        db_session, str(leaving.id), SubscriptionCancel(immediate=True)
    )

    analytics = billing_service.subscriptions.get_subscription_analytics(
        db_session, str(organization.id)
    )

    assert analytics["total_subscriptions"] == 2
    assert analytics["active_subscriptions"] == 1
    assert analytics["mrr"] == Decimal("10000.00")
    assert analytics["arpu"] == Decimal("10000.00")
    assert analytics["churn_rate"] == Decimal("50.00")

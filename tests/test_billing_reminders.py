from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx

from app.config import settings
from app.models.reminder import PaymentReminder, ReminderMethod, ReminderStatus, ReminderType
from app.schemas.billing import InvoiceCreate, InvoiceLineCreate
from app.services import billing as billing_service
from app.services import notification_channels
from app.services.billing.reminders import render_message
from tests.mocks import FakeSMTP


def _open_invoice(db_session, customer, due_date):
    return billing_service.invoices.create_invoice(
        db_session,
        InvoiceCreate(
            customer_id=customer.id,
            lines=[InvoiceLineCreate(description="Monthly lessons", unit_price=Decimal("8000"))],
            due_date=due_date,
        ),
    )


def _make_due(db_session, reminder_ids, when):
    for reminder in db_session.query(PaymentReminder).filter(PaymentReminder.id.in_(reminder_ids)):
        reminder.scheduled_at = when
    db_session.commit()


def test_reminder_message_mentions_invoice(db_session, customer):
    invoice = _open_invoice(db_session, customer, datetime.now(timezone.utc) + timedelta(days=10))
    reminder = (
        db_session.query(PaymentReminder)
        .filter(PaymentReminder.reminder_type == ReminderType.payment_due)
        .first()
    )

    subject, body = render_message(reminder)

    assert invoice.invoice_number in subject
    assert "¥8,800" in body
    assert customer.name in body


def test_email_is_preferred_channel(db_session, customer):
    _open_invoice(db_session, customer, datetime.now(timezone.utc) + timedelta(days=10))

    methods = {reminder.method for reminder in db_session.query(PaymentReminder).all()}

    assert methods == {ReminderMethod.email}


def test_process_sends_due_reminders(db_session, customer):
    _open_invoice(db_session, customer, datetime.now(timezone.utc) + timedelta(days=10))
    due_ids = [
        reminder.id
        for reminder in db_session.query(PaymentReminder)
        .filter(PaymentReminder.reminder_type == ReminderType.payment_due)
        .limit(2)
    ]
    _make_due(db_session, due_ids, datetime.now(timezone.utc) - timedelta(minutes=5))

    with patch(
        "app.services.billing.reminders.notification_channels.deliver",
        return_value=(True, None),
    ) as deliver:
        result = billing_service.reminders.process_scheduled_reminders(db_session)

    assert result["processed"] == 2
    assert deliver.call_count == 2
    sent = (
        db_session.query(PaymentReminder)
        .filter(PaymentReminder.status == ReminderStatus.sent)
        .all()
    )
    assert {reminder.id for reminder in sent} == set(due_ids)
    assert all(reminder.sent_at is not None for reminder in sent)


def test_failed_delivery_marks_reminder_failed(db_session, customer):
    _open_invoice(db_session, customer, datetime.now(timezone.utc) + timedelta(days=10))
    reminder = db_session.query(PaymentReminder).first()
    _make_due(db_session, [reminder.id], datetime.now(timezone.utc) - timedelta(minutes=5))

    with patch(
        "app.services.billing.reminders.notification_channels.deliver",
        return_value=(False, "SMTP is not configured"),
    ):
        result = billing_service.reminders.process_scheduled_reminders(db_session)

    db_session.refresh(reminder)
    assert result["failed"] == 1
    assert reminder.status == ReminderStatus.failed
    assert reminder.failure_reason == "SMTP is not configured"


def test_reminders_in_the_future_are_left_alone(db_session, customer):
    _open_invoice(db_session, customer, datetime.now(timezone.utc) + timedelta(days=10))

    result = billing_service.reminders.process_scheduled_reminders(db_session)

    assert result["processed"] == 0
    assert result["failed"] == 0


def test_reminder_stats(db_session, organization, customer):
    _open_invoice(db_session, customer, datetime.now(timezone.utc) + timedelta(days=10))

    stats = billing_service.reminders.get_reminder_stats(db_session, str(organization.id))

    assert stats["total"] == 4
    assert stats["by_status"]["pending"] == 4
    assert stats["by_type"]["payment_overdue"] == 1
    assert stats["delivery_rate"] == 0


def test_send_email_over_smtp():
    fake = FakeSMTP()
    configured = settings.model_copy(
        update={
            "smtp_host": "smtp.example.com",
            "smtp_username": "u",
            "smtp_password": "p",
            "smtp_use_tls": True,
        }
    )
    with patch("app.services.notification_channels.settings", configured):
        with patch(
            "app.services.notification_channels._create_smtp_client", return_value=fake
        ):
            ok, error = notification_channels.send_email(
                "student@example.com", "Payment reminder", "Please pay"
            )

    assert ok and error is None
    assert fake.started_tls and fake.logged_in and fake.closed
    assert fake.messages[0][1] == "student@example.com"


def test_sms_without_webhook_is_reported():
    configured = settings.model_copy(update={"sms_webhook_url": None})
    with patch("app.services.notification_channels.settings", configured):
        ok, error = notification_channels.send_sms("090-1234-5678", "hello")

    assert not ok
    assert error == "SMS webhook is not configured"


def test_domestic_phone_numbers_get_country_code():
    assert notification_channels._normalize_phone("090-1234-5678") == "+819012345678"
    assert notification_channels._normalize_phone("+1 (555) 123-4567") == "+15551234567"


def test_line_push_message():
    configured = settings.model_copy(update={"line_channel_access_token": "line-token"})
    request = httpx.Request("POST", "https://api.line.me/v2/bot/message/push")
    with patch("app.services.notification_channels.settings", configured):
        with patch(
            "app.services.notification_channels.httpx.post",
            return_value=httpx.Response(200, json={}, request=request),
        ) as mock_post:
            ok, error = notification_channels.send_line_message("U123", "Lesson fee due")

    assert ok and error is None
    kwargs = mock_post.call_args.kwargs
    assert mock_post.call_args.args[0] == f"{configured.line_api_base}/v2/bot/message/push"
    assert kwargs["headers"]["Authorization"] == "Bearer line-token"
    assert kwargs["json"]["to"] == "U123"


def test_line_without_linked_account():
    ok, error = notification_channels.send_line_message(None, "hello")

    assert not ok
    assert error == "Customer has no LINE account linked"

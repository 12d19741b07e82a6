"""Outbound delivery for payment reminders: email, SMS and LINE.

Every sender returns ``(success, error_message)`` and never raises, so a
failing channel only marks its reminder FAILED.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import httpx

from app.config import settings
from app.models.reminder import ReminderMethod

logger = logging.getLogger(__name__)


def _create_smtp_client(host: str, port: int, timeout: float) -> smtplib.SMTP:
    return smtplib.SMTP(host, port, timeout=timeout)


def send_email(to_email: str | None, subject: str, body: str) -> tuple[bool, str | None]:
    if not to_email:
        return False, "Customer has no email address"
    if not settings.smtp_host:
        return False, "SMTP is not configured"
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain", "utf-8"))
    try:
        server = _create_smtp_client(
            settings.smtp_host, settings.smtp_port, settings.provider_timeout_seconds
        )
        try:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_username and settings.smtp_password:
                server.login(settings.smtp_username, settings.smtp_password)
            server.sendmail(settings.smtp_from_email, to_email, msg.as_string())
        finally:
            server.quit()
    except smtplib.SMTPAuthenticationError as exc:
        logger.error("SMTP authentication failed for %s: %s", to_email, exc)
        return False, "SMTP authentication failed"
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False, str(exc)
    return True, None


def _normalize_phone(phone: str) -> str:
    normalized = phone.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")
    if not normalized.startswith("+"):
        # domestic Japanese numbers drop the trunk 0
        if normalized.startswith("0"):
            normalized = "+81" + normalized[1:]
        else:
            normalized = "+" + normalized
    return normalized


def send_sms(phone: str | None, body: str) -> tuple[bool, str | None]:
    if not phone:
        return False, "Customer has no phone number"
    if not settings.sms_webhook_url:
        return False, "SMS webhook is not configured"
    headers = {}
    if settings.sms_api_key:
        headers["Authorization"] = f"Bearer {settings.sms_api_key}"
    try:
        response = httpx.post(
            settings.sms_webhook_url,
            json={"to": _normalize_phone(phone), "message": body},
            headers=headers,
            timeout=settings.provider_timeout_seconds,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        logger.error("sms_send_failed status=%s", exc.response.status_code)
        return False, f"HTTP {exc.response.status_code}"
    except httpx.HTTPError as exc:
        logger.error("sms_send_failed error=%s", exc)
        return False, str(exc)
    return True, None


def send_line_message(line_user_id: str | None, body: str) -> tuple[bool, str | None]:
    if not line_user_id:
        return False, "Customer has no LINE account linked"
    if not settings.line_channel_access_token:
        return False, "LINE messaging is not configured"
    try:
        response = httpx.post(
            f"{settings.line_api_base}/v2/bot/message/push",
            json={"to": line_user_id, "messages": [{"type": "text", "text": body[:5000]}]},
            headers={"Authorization": f"Bearer {settings.line_channel_access_token}"},
            timeout=settings.provider_timeout_seconds,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        logger.error("line_push_failed status=%s", exc.response.status_code)
        return False, f"HTTP {exc.response.status_code}"
    except httpx.HTTPError as exc:
        logger.error("line_push_failed error=%s", exc)
        return False, str(exc)
    return True, None


def deliver(method: ReminderMethod, customer, subject: str, body: str) -> tuple[bool, str | None]:
    if method == ReminderMethod.email:
        return send_email(customer.email, subject, body)
    if method == ReminderMethod.sms:
        return send_sms(customer.phone, f"{subject}\n{body}")
    if method == ReminderMethod.line:
        return send_line_message(customer.line_user_id, f"{subject}\n\n{body}")
    return False, f"Unsupported reminder method: {method}"

# Overview: Notification adapters; outbound appointment e-mail (Resend) and in-app notification records.

"""
Notification Service

Two channels:
- e-mail through a Notifier (ResendNotifier in production, LoggingNotifier
  when no API key is configured)
- in-app Notification rows shown in the user's dashboard feed

E-mail is best-effort. Lifecycle code calls notify_safely(), which logs and
swallows any failure so a mail outage never rolls back a booking,
cancellation or payment transition. In-app rows are written inside the
caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import resend

from ..extensions import db
from ..models import Appointment, Notification
from schedula.time_utils import format_hhmm, utc_to_local


logger = logging.getLogger(__name__)


# In-app notification types
NOTIFY_APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"
NOTIFY_APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"
NOTIFY_PAYMENT_AFTER_CANCELLATION = "PAYMENT_AFTER_CANCELLATION"
NOTIFY_RECURRING_CREATED = "RECURRING_APPOINTMENT_CREATED"
NOTIFY_RECURRING_CANCELLED = "RECURRING_APPOINTMENT_CANCELLED"
NOTIFY_WAITLIST_JOINED = "WAITLIST_JOINED"
NOTIFY_WAITLIST_BOOKED = "WAITLIST_BOOKED"
NOTIFY_WAITLIST_CANCELLED = "WAITLIST_CANCELLED"
NOTIFY_WAITLIST_EXPIRED = "WAITLIST_EXPIRED"


@dataclass(frozen=True)
class AppointmentNotice:
    """Everything an appointment e-mail needs, detached from the session."""
    appointment_id: int
    service_name: str
    provider_name: str
    business_name: str
    start_time: datetime  # UTC-naive
    end_time: datetime
    timezone: str = "UTC"
    amount_cents: int | None = None
    currency: str = "USD"
    status: str | None = None
    refund_amount_cents: int | None = None
    refund_status: str | None = None
    reason: str | None = None

    @property
    def local_date(self) -> str:
        return utc_to_local(self.start_time, self.timezone).strftime("%A, %B %d, %Y")

    @property
    def local_time_range(self) -> str:
        start = utc_to_local(self.start_time, self.timezone)
        end = utc_to_local(self.end_time, self.timezone)
        return f"{format_hhmm(start)} - {format_hhmm(end)}"


def notice_for(appointment: Appointment, *, currency: str = "USD") -> AppointmentNotice:
    tenant = appointment.tenant
    return AppointmentNotice(
        appointment_id=appointment.id,
        service_name=appointment.service.name if appointment.service else "",
        provider_name=appointment.provider.name if appointment.provider else "",
        business_name=tenant.name if tenant else "",
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        timezone=(tenant.timezone if tenant else None) or "UTC",
        amount_cents=appointment.payment_amount_cents,
        currency=currency,
        status=appointment.status,
        refund_amount_cents=appointment.refund_amount_cents,
        refund_status=appointment.refund_status,
        reason=appointment.cancellation_reason,
    )


def format_money(amount_cents: int | None, currency: str = "USD") -> str:
    return f"{(amount_cents or 0) / 100:,.2f} {currency.upper()}"


class Notifier(Protocol):
    def send_appointment_confirmation(self, recipient: str, name: str, notice: AppointmentNotice) -> None: ...

    def send_payment_confirmation(self, recipient: str, name: str, notice: AppointmentNotice) -> None: ...

    def send_payment_failure(self, recipient: str, name: str, notice: AppointmentNotice) -> None: ...

    def send_cancellation_with_refund(self, recipient: str, name: str, notice: AppointmentNotice) -> None: ...


# =============================================================================
# E-MAIL BODIES
# =============================================================================

def _confirmation_body(name: str, notice: AppointmentNotice) -> tuple[str, str]:
    subject = f"Appointment {'confirmed' if notice.status == 'CONFIRMED' else 'received'}: {notice.service_name}"
    html = (
        f"<p>Hi {name},</p>"
        f"<p>Your appointment for <strong>{notice.service_name}</strong> with {notice.provider_name} "
        f"is on {notice.local_date}, {notice.local_time_range}.</p>"
        f"<p>Status: {notice.status}</p>"
        f"<p>{notice.business_name}</p>"
    )
    return subject, html


def _payment_confirmation_body(name: str, notice: AppointmentNotice) -> tuple[str, str]:
    subject = f"Payment received: {notice.service_name}"
    html = (
        f"<p>Hi {name},</p>"
        f"<p>We received your payment of {format_money(notice.amount_cents, notice.currency)} "
        f"for {notice.service_name} on {notice.local_date}, {notice.local_time_range}.</p>"
        f"<p>{notice.business_name}</p>"
    )
    return subject, html


def _payment_failure_body(name: str, notice: AppointmentNotice) -> tuple[str, str]:
    subject = f"Payment failed: {notice.service_name}"
    html = (
        f"<p>Hi {name},</p>"
        f"<p>Your payment for {notice.service_name} on {notice.local_date} could not be processed. "
        f"Your booking is still pending; please try again.</p>"
        f"<p>{notice.business_name}</p>"
    )
    return subject, html


def _cancellation_body(name: str, notice: AppointmentNotice) -> tuple[str, str]:
    subject = f"Appointment cancelled: {notice.service_name}"
    lines = [
        f"<p>Hi {name},</p>",
        f"<p>Your appointment for {notice.service_name} on {notice.local_date}, "
        f"{notice.local_time_range} has been cancelled.</p>",
    ]
    if notice.reason:
        lines.append(f"<p>Reason: {notice.reason}</p>")
    if notice.refund_status == "FAILED":
        lines.append("<p>We could not process your refund automatically. Our team will follow up.</p>")
    elif notice.refund_amount_cents:
        lines.append(f"<p>Refund: {format_money(notice.refund_amount_cents, notice.currency)}</p>")
    lines.append(f"<p>{notice.business_name}</p>")
    return subject, "".join(lines)


class ResendNotifier:
    """Sends appointment e-mails through the Resend API."""

    def __init__(self, api_key: str, from_address: str):
        self.api_key = api_key
        self.from_address = from_address

    def _send(self, recipient: str, subject: str, html: str):
        resend.api_key = self.api_key
        response = resend.Emails.send({
            "from": self.from_address,
            "to": [recipient],
            "subject": subject,
            "html": html,
        })
        logger.info("Email sent via Resend to %s: %s", recipient, response)
        return response

    def send_appointment_confirmation(self, recipient, name, notice):
        self._send(recipient, *_confirmation_body(name, notice))

    def send_payment_confirmation(self, recipient, name, notice):
        self._send(recipient, *_payment_confirmation_body(name, notice))

    def send_payment_failure(self, recipient, name, notice):
        self._send(recipient, *_payment_failure_body(name, notice))

    def send_cancellation_with_refund(self, recipient, name, notice):
        self._send(recipient, *_cancellation_body(name, notice))


class LoggingNotifier:
    """Development notifier: renders each e-mail and writes the subject to the log."""

    def _log(self, recipient: str, subject: str, html: str) -> None:
        logger.info("Email (not sent) to %s: %s", recipient, subject)

    def send_appointment_confirmation(self, recipient, name, notice):
        self._log(recipient, *_confirmation_body(name, notice))

    def send_payment_confirmation(self, recipient, name, notice):
        self._log(recipient, *_payment_confirmation_body(name, notice))

    def send_payment_failure(self, recipient, name, notice):
        self._log(recipient, *_payment_failure_body(name, notice))

    def send_cancellation_with_refund(self, recipient, name, notice):
        self._log(recipient, *_cancellation_body(name, notice))


def notify_safely(func, *args, **kwargs) -> bool:
    """
    Run a best-effort notification call.

    Returns True on success. Any exception is logged and swallowed.
    """
    try:
        func(*args, **kwargs)
        return True
    except Exception:
        logger.exception("Notification %s failed", getattr(func, "__name__", func))
        return False


def create_in_app_notification(
    tenant_id: int,
    user_id: int,
    type: str,
    title: str,
    message: str,
    data: dict | None = None,
) -> Notification:
    """Add a dashboard notification to the current session; the caller commits."""
    notification = Notification(
        tenant_id=tenant_id,
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
        is_read=False,
    )
    db.session.add(notification)
    return notification


def list_notifications(tenant_id: int, user_id: int, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    q = db.session.query(Notification).filter(
        Notification.tenant_id == tenant_id,
        Notification.user_id == user_id,
    )
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(tenant_id: int, user_id: int) -> int:
    return (
        db.session.query(Notification)
        .filter(
            Notification.tenant_id == tenant_id,
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
        .count()
    )


def mark_read(tenant_id: int, user_id: int, notification_id: int) -> Notification | None:
    notification = (
        db.session.query(Notification)
        .filter_by(id=notification_id, tenant_id=tenant_id, user_id=user_id)
        .first()
    )
    if notification is None:
        return None
    notification.is_read = True
    db.session.commit()
    return notification


def mark_all_read(tenant_id: int, user_id: int) -> int:
    count = (
        db.session.query(Notification)
        .filter(
            Notification.tenant_id == tenant_id,
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.session.commit()
    return count

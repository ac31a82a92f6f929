# Overview: Collaborator wiring; builds the payment, notification, calendar and storage adapters per app.

from __future__ import annotations

from dataclasses import dataclass, field

from flask import Flask, current_app

from .calendar_service import CalendarSync, GoogleCalendarSync, NullCalendarSync
from .notification_service import LoggingNotifier, Notifier, ResendNotifier
from .payment_gateway import PaymentGateway, StripeGateway
from .storage_service import S3Storage


EXTENSION_KEY = "schedula"


@dataclass
class Collaborators:
    """
    External collaborators used by the booking core.

    payments and storage are None when not configured; callers surface that
    as an error. notifier and calendar always exist (logging / no-op
    fallbacks).
    """
    payments: PaymentGateway | None = None
    notifier: Notifier = field(default_factory=LoggingNotifier)
    calendar: CalendarSync = field(default_factory=NullCalendarSync)
    storage: S3Storage | None = None


def build_collaborators(config) -> Collaborators:
    payments = None
    if config.get("STRIPE_SECRET_KEY"):
        payments = StripeGateway(config["STRIPE_SECRET_KEY"], config.get("STRIPE_WEBHOOK_SECRET"))

    notifier: Notifier = LoggingNotifier()
    if config.get("RESEND_API_KEY"):
        notifier = ResendNotifier(config["RESEND_API_KEY"], config.get("EMAIL_FROM_ADDRESS"))

    calendar: CalendarSync = NullCalendarSync()
    if config.get("GOOGLE_CALENDAR_CREDENTIALS_JSON"):
        calendar = GoogleCalendarSync.from_json(
            config["GOOGLE_CALENDAR_CREDENTIALS_JSON"],
            config.get("GOOGLE_CALENDAR_ID") or "primary",
        )

    storage = None
    if config.get("S3_BUCKET_NAME"):
        storage = S3Storage(
            config["S3_BUCKET_NAME"],
            region=config.get("S3_REGION") or "us-east-1",
            endpoint_url=config.get("S3_ENDPOINT_URL"),
            expiration=int(config.get("PRESIGNED_URL_EXPIRATION") or 3600),
        )

    return Collaborators(payments=payments, notifier=notifier, calendar=calendar, storage=storage)


def init_collaborators(app: Flask, collaborators: Collaborators | None = None) -> Collaborators:
    """Attach collaborators to the app; tests pass fakes."""
    if collaborators is None:
        collaborators = build_collaborators(app.config)
    app.extensions[EXTENSION_KEY] = collaborators
    return collaborators


def get_collaborators() -> Collaborators:
    return current_app.extensions[EXTENSION_KEY]

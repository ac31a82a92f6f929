"""
Pytest fixtures for Schedula tests.

Provides the app on in-memory SQLite, fake payment / e-mail / calendar
collaborators, tenant fixtures and auth helpers.
"""

import json
from datetime import date, datetime, timedelta

import pytest

from schedula import create_app
from schedula.extensions import db
from schedula.models import Tenant, TenantSettings, User, Service
from schedula.models.auth import ROLE_ADMIN, ROLE_PROVIDER, ROLE_CLIENT
from schedula.services.auth_service import hash_password
from schedula.services.collaborators import Collaborators
from schedula.services.payment_gateway import (
    GatewayEvent,
    PaymentGatewayError,
    PaymentIntent,
    RefundReceipt,
    WebhookVerificationError,
)
from schedula.services.policy_service import default_settings_json
from schedula.services.session_service import create_session
from schedula.time_utils import utcnow


PASSWORD = "Password123"


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeGateway:
    """In-memory payment gateway; signature "valid" passes webhook verification."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.intents = []
        self.refunds = []
        self.fail_refunds = False
        self.fail_intents = False

    def create_payment_intent(self, amount_cents, currency, metadata, *, destination_account=None,
                              application_fee_cents=None, description=None):
        if self.fail_intents:
            raise PaymentGatewayError("card network unavailable")
        intent = PaymentIntent(id=f"pi_{len(self.intents) + 1}", client_secret=f"secret_{len(self.intents) + 1}")
        self.intents.append({
            "id": intent.id,
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": metadata,
            "destination_account": destination_account,
            "application_fee_cents": application_fee_cents,
        })
        return intent

    def refund(self, charge_id, amount_cents, metadata):
        if self.fail_refunds:
            raise PaymentGatewayError("refund rejected")
        self.refunds.append({"charge_id": charge_id, "amount_cents": amount_cents, "metadata": metadata})
        return RefundReceipt(id=f"re_{len(self.refunds)}", amount_cents=amount_cents, status="succeeded")

    def parse_webhook(self, payload, signature):
        if signature != "valid":
            raise WebhookVerificationError("bad signature")
        body = json.loads(payload)
        return GatewayEvent(
            id=body["id"],
            type=body["type"],
            payment_intent_id=body.get("payment_intent_id"),
            charge_id=body.get("charge_id"),
        )


class RecordingNotifier:
    def __init__(self):
        self.reset()

    def reset(self):
        self.sent = []
        self.fail = False

    def _record(self, kind, recipient, name, notice):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((kind, recipient, notice))

    def send_appointment_confirmation(self, recipient, name, notice):
        self._record("confirmation", recipient, name, notice)

    def send_payment_confirmation(self, recipient, name, notice):
        self._record("payment_confirmation", recipient, name, notice)

    def send_payment_failure(self, recipient, name, notice):
        self._record("payment_failure", recipient, name, notice)

    def send_cancellation_with_refund(self, recipient, name, notice):
        self._record("cancellation", recipient, name, notice)

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


class FakeCalendar:
    def __init__(self):
        self.reset()

    def reset(self):
        self.created = []
        self.updated = []
        self.deleted = []
        self.fail = False

    def create_event(self, title, description, start, end, attendees=None):
        if self.fail:
            raise RuntimeError("calendar api down")
        event_id = f"evt_{len(self.created) + 1}"
        self.created.append((event_id, title, start, end))
        return event_id

    def update_event(self, event_id, start, end):
        self.updated.append((event_id, start, end))
        return True

    def delete_event(self, event_id):
        self.deleted.append(event_id)
        return True


class FakeStorage:
    def presigned_upload(self, tenant_id, content_type):
        from schedula.services.storage_service import ALLOWED_IMAGE_TYPES, StorageError
        if content_type not in ALLOWED_IMAGE_TYPES:
            raise StorageError(f"Unsupported file type: {content_type}")
        key = f"tenants/{tenant_id}/services/test.{ALLOWED_IMAGE_TYPES[content_type]}"
        return {
            "upload_url": f"https://uploads.test/{key}?signature=abc",
            "key": key,
            "file_url": f"https://uploads.test/{key}",
            "expires_in": 3600,
        }


# =============================================================================
# APP / DB
# =============================================================================

@pytest.fixture(scope='session')
def collaborators():
    return Collaborators(
        payments=FakeGateway(),
        notifier=RecordingNotifier(),
        calendar=FakeCalendar(),
        storage=FakeStorage(),
    )


@pytest.fixture(scope='session')
def app(collaborators):
    """Create application for testing."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'LOG_LEVEL': 'WARNING',
        },
        collaborators=collaborators,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, collaborators):
    """Create fresh database (and fresh fakes) for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        collaborators.payments.reset()
        collaborators.notifier.reset()
        collaborators.calendar.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='session')
def password_hash():
    """One bcrypt hash shared by all fixture users."""
    return hash_password(PASSWORD)


# =============================================================================
# TENANT FIXTURES
# =============================================================================

def make_tenant(db_session, slug, *, timezone="UTC", **sections):
    """Tenant open 09:00-17:00 every day; keyword sections are merged into the default policy."""
    tenant = Tenant(name=f"{slug.title()} Studio", slug=slug, timezone=timezone, is_active=True)
    db_session.add(tenant)
    db_session.flush()
    settings = default_settings_json()
    # Tests book any day of the week
    for day in settings["working_hours"].values():
        day.update({"start": "09:00", "end": "17:00", "enabled": True})
    for key, value in sections.items():
        settings[key].update(value)
    db_session.add(TenantSettings(tenant_id=tenant.id, **settings))
    db_session.commit()
    return tenant


def make_user(db_session, tenant, email, role, password_hash, name=None):
    user = User(
        tenant_id=tenant.id,
        email=email,
        name=name or email.split("@")[0].title(),
        role=role,
        password_hash=password_hash,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def tenant(db_session):
    """Tenant A: default policy plus online payments and a one-year booking window."""
    return make_tenant(
        db_session,
        "acme",
        payment_rules={"accept_online": True},
        booking_rules={"max_advance_booking_days": 365},
    )


@pytest.fixture(scope='function')
def other_tenant(db_session):
    return make_tenant(db_session, "beta")


@pytest.fixture(scope='function')
def admin(db_session, tenant, password_hash):
    return make_user(db_session, tenant, "owner@acme.example.com", ROLE_ADMIN, password_hash)


@pytest.fixture(scope='function')
def provider(db_session, tenant, password_hash):
    return make_user(db_session, tenant, "pat@acme.example.com", ROLE_PROVIDER, password_hash, name="Pat Provider")


@pytest.fixture(scope='function')
def other_provider(db_session, tenant, password_hash):
    return make_user(db_session, tenant, "sam@acme.example.com", ROLE_PROVIDER, password_hash, name="Sam Provider")


@pytest.fixture(scope='function')
def client_user(db_session, tenant, password_hash):
    return make_user(db_session, tenant, "jane@example.com", ROLE_CLIENT, password_hash, name="Jane Client")


@pytest.fixture(scope='function')
def service(db_session, tenant, provider):
    """60 minute service priced at 200.00."""
    svc = Service(
        tenant_id=tenant.id,
        provider_id=provider.id,
        name="Deep Tissue Massage",
        duration_minutes=60,
        price_cents=20000,
        is_active=True,
    )
    db_session.add(svc)
    db_session.commit()
    return svc


# =============================================================================
# TIME / AUTH HELPERS
# =============================================================================

def future_day(days=7) -> date:
    return (utcnow() + timedelta(days=days)).date()


def at(day: date, hour: int, minute: int = 0) -> datetime:
    """UTC-naive instant on a day (tenant fixtures use UTC)."""
    return datetime(day.year, day.month, day.day, hour, minute)


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def token_for(user) -> str:
    _, token = create_session(user_id=user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def tenant_headers(tenant) -> dict:
    return {'X-Tenant-Id': tenant.slug}

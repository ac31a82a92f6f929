# Overview: Appointment lifecycle manager; booking, payment callbacks, cancellation and refunds.

"""
Schedula Appointment Lifecycle Service

================================================================================
PURPOSE: Own every state change of an Appointment
================================================================================

STATE MACHINE:
    PENDING -> CONFIRMED -> COMPLETED
    PENDING | CONFIRMED -> CANCELLED

    PENDING:   Booked, awaiting provider approval and/or online payment
    CONFIRMED: Approved (and paid, for online bookings); blocks the provider
    COMPLETED: Terminal, appointment took place
    CANCELLED: Terminal, no longer blocks the provider

PAYMENT SUB-STATE:
    PENDING -> PAID | FAILED     (payment gateway callbacks)
    PAID -> REFUNDED             (only through cancellation, non-zero refund)

RULES (NON-NEGOTIABLE):
1. No two PENDING/CONFIRMED appointments of one provider overlap. The
   conflict check and the insert share one transaction that holds the
   provider's booking lock.
2. ONLINE bookings always start PENDING; the payment webhook confirms them.
3. A refund gateway failure never blocks a cancellation; it is recorded as
   refund_status FAILED with a zero refund amount.
4. Notification e-mail and calendar sync are best-effort and run after the
   primary transition has committed.
5. Webhook handling is idempotent: replayed events and events for vanished
   appointments are logged and ignored.

================================================================================
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError

from ..extensions import db
from ..models import Appointment, PaymentEvent, Service, TenantSettings, User
from ..models.appointments import (
    BLOCKING_STATUSES,
    PAYMENT_FAILED,
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_ONLINE,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    REFUND_STATUS_FAILED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    VALID_PAYMENT_METHODS,
    VALID_STATUSES,
)
from ..models.auth import ROLE_ADMIN, ROLE_CLIENT, ROLE_PROVIDER
from ..validation import is_valid_email, parse_datetime_field, parse_id_field, parse_text_field
from schedula.time_utils import cancellation_deadline, to_utc_z, utcnow
from .auth_service import hash_password
from .collaborators import Collaborators, get_collaborators
from .concurrency import acquire_provider_lock, begin_isolated, lock_for_update, run_with_retry
from .conflict_service import has_conflict
from .notification_service import (
    NOTIFY_APPOINTMENT_BOOKED,
    NOTIFY_APPOINTMENT_CANCELLED,
    NOTIFY_PAYMENT_AFTER_CANCELLATION,
    create_in_app_notification,
    notice_for,
    notify_safely,
)
from .calendar_service import sync_calendar_safely
from .payment_gateway import EVENT_PAYMENT_FAILED, EVENT_PAYMENT_SUCCEEDED, GatewayEvent, PaymentGatewayError
from .policy_service import REFUND_FULL, REFUND_PARTIAL, CancellationRules, TenantPolicy, get_policy


logger = logging.getLogger(__name__)


# Platform commission taken from online payments, in percent
PLATFORM_FEE_PERCENT = 5

SLOT_TAKEN_MESSAGE = "Time slot is already booked. Please choose a different time."

VALID_TRANSITIONS = {
    (STATUS_PENDING, STATUS_CONFIRMED),
    (STATUS_CONFIRMED, STATUS_COMPLETED),
    (STATUS_PENDING, STATUS_CANCELLED),
    (STATUS_CONFIRMED, STATUS_CANCELLED),
}


# =============================================================================
# ERRORS
# =============================================================================

class AppointmentError(Exception):
    """Base for lifecycle rejections; status_code is the HTTP mapping."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailedError(AppointmentError):
    status_code = 400


class NotFoundError(AppointmentError):
    status_code = 404


class AlreadyCancelledError(AppointmentError):
    status_code = 400


class PastAppointmentError(AppointmentError):
    status_code = 400


class CancellationNotAllowedError(AppointmentError):
    status_code = 403


class DeadlinePassedError(AppointmentError):
    status_code = 400


class NotAuthorizedError(AppointmentError):
    status_code = 403


class SlotUnavailableError(AppointmentError):
    status_code = 409


class TenantContextMissingError(AppointmentError):
    status_code = 400


class OnlineBookingDisabledError(AppointmentError):
    status_code = 403


class InvalidTransitionError(AppointmentError):
    status_code = 400


class PaymentUnavailableError(AppointmentError):
    status_code = 400


# =============================================================================
# STATE MACHINE HELPERS
# =============================================================================

def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise ValidationFailedError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    """
    Check a status change against the lifecycle rules.

    COMPLETED and CANCELLED are terminal. Same-state transitions are not
    transitions and return False.
    """
    validate_status(from_status)
    validate_status(to_status)
    return (from_status, to_status) in VALID_TRANSITIONS


def _require_transition(appointment: Appointment, to_status: str) -> None:
    if not can_transition(appointment.status, to_status):
        raise InvalidTransitionError(
            f"Cannot change appointment from {appointment.status} to {to_status}"
        )


def initial_status(payment_method: str, policy: TenantPolicy) -> str:
    """CONFIRMED only for cash bookings at tenants that do not require approval."""
    if payment_method == PAYMENT_METHOD_CASH and not policy.booking.require_confirmation:
        return STATUS_CONFIRMED
    return STATUS_PENDING


def compute_refund(amount_cents: int | None, rules: CancellationRules) -> int:
    """
    Refund due on cancellation of a paid booking, in cents.

    full -> amount, partial -> amount * pct / 100 (rounded down to the cent),
    none -> 0.
    """
    amount = amount_cents or 0
    if rules.refund_policy == REFUND_FULL:
        return amount
    if rules.refund_policy == REFUND_PARTIAL:
        return (amount * rules.partial_refund_percentage) // 100
    return 0


def booking_message(appointment: Appointment) -> str:
    if appointment.payment_method == PAYMENT_METHOD_ONLINE:
        return "Appointment created. Please complete payment to confirm your booking."
    if appointment.status == STATUS_PENDING:
        return "Appointment request submitted. You will receive a confirmation once the business approves it."
    return "Appointment booked successfully!"


# =============================================================================
# LOOKUPS
# =============================================================================

def _is_party(appointment: Appointment, user: User) -> bool:
    return user.role == ROLE_ADMIN or user.id in (appointment.client_id, appointment.provider_id)


def _is_staff_for(appointment: Appointment, user: User) -> bool:
    return user.role == ROLE_ADMIN or user.id == appointment.provider_id


def _load(appointment_id: int, tenant_id: int, *, for_update: bool = False) -> Appointment:
    if tenant_id is None:
        raise TenantContextMissingError("Tenant context is required")
    q = db.session.query(Appointment).filter_by(id=appointment_id, tenant_id=tenant_id)
    if for_update:
        q = lock_for_update(q)
    appointment = q.first()
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


def get_appointment(appointment_id: int, tenant_id: int, actor: User) -> Appointment:
    appointment = _load(appointment_id, tenant_id)
    if not _is_party(appointment, actor):
        raise NotAuthorizedError("You are not authorized to view this appointment")
    return appointment


def get_payment_status(appointment_id: int, tenant_id: int) -> dict:
    """Payment summary shown on the public payment-success page."""
    appointment = _load(appointment_id, tenant_id)
    return {
        "id": appointment.id,
        "start_time": to_utc_z(appointment.start_time),
        "end_time": to_utc_z(appointment.end_time),
        "status": appointment.status,
        "payment_method": appointment.payment_method,
        "payment_status": appointment.payment_status,
        "payment_amount_cents": appointment.payment_amount_cents,
        "service": {"name": appointment.service.name, "duration_minutes": appointment.service.duration_minutes},
        "provider": {"name": appointment.provider.name},
    }


def list_appointments(
    tenant_id: int,
    actor: User,
    *,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Appointment], int]:
    """Role-scoped listing: clients see their own, providers their calendar, admins everything."""
    q = db.session.query(Appointment).filter(Appointment.tenant_id == tenant_id)
    if actor.role == ROLE_CLIENT:
        q = q.filter(Appointment.client_id == actor.id)
    elif actor.role == ROLE_PROVIDER:
        q = q.filter(Appointment.provider_id == actor.id)
    if status:
        validate_status(status)
        q = q.filter(Appointment.status == status)
    if date_from:
        q = q.filter(Appointment.start_time >= date_from)
    if date_to:
        q = q.filter(Appointment.start_time < date_to)

    total = q.count()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    items = (
        q.order_by(Appointment.start_time.asc(), Appointment.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total


def _get_service(tenant_id: int, service_id) -> Service:
    service = (
        db.session.query(Service)
        .filter_by(id=service_id, tenant_id=tenant_id, is_active=True)
        .first()
    )
    if service is None:
        raise NotFoundError("Service not found")
    return service


def _get_provider(tenant_id: int, provider_id) -> User:
    provider = (
        db.session.query(User)
        .filter(
            User.id == provider_id,
            User.tenant_id == tenant_id,
            User.is_active.is_(True),
            User.role.in_((ROLE_PROVIDER, ROLE_ADMIN)),
        )
        .first()
    )
    if provider is None:
        raise NotFoundError("Provider not found")
    return provider


def resolve_client(tenant_id: int, email: str, name: str, phone: str | None = None) -> User:
    """
    Find the tenant's user with this e-mail or create a CLIENT account.

    Idempotent by (tenant, lower-cased e-mail). A concurrent insert of the
    same e-mail loses on the unique constraint and re-reads the winner.
    Public bookers get an unusable random password.
    """
    email = email.strip().lower()

    def _find():
        return (
            db.session.query(User)
            .filter(User.tenant_id == tenant_id, func.lower(User.email) == email)
            .first()
        )

    user = _find()
    if user is not None:
        if phone and user.phone != phone:
            user.phone = phone
        return user

    try:
        with db.session.begin_nested():
            user = User(
                tenant_id=tenant_id,
                email=email,
                name=name.strip(),
                phone=phone,
                role=ROLE_CLIENT,
                password_hash=hash_password(secrets.token_urlsafe(32), check_strength=False),
                is_active=True,
            )
            db.session.add(user)
    except IntegrityError:
        user = _find()
        if user is None:
            raise
    return user


# =============================================================================
# CREATE
# =============================================================================

@dataclass(frozen=True)
class BookingRequest:
    service_id: int
    provider_id: int | None
    start_time: datetime
    end_time: datetime | None = None
    client_name: str | None = None
    client_email: str | None = None
    client_phone: str | None = None
    notes: str | None = None
    payment_method: str = PAYMENT_METHOD_CASH


def parse_booking_request(payload: dict, *, client: User | None = None) -> BookingRequest:
    """
    Normalize a booking payload.

    When client is given (an authenticated client booking for themselves)
    the client_* fields are taken from the account instead of the payload.
    """
    if not isinstance(payload, dict):
        raise ValidationFailedError("Invalid JSON payload")

    required = ["service_id", "start_time"]
    if client is None:
        required += ["client_name", "client_email"]
    missing = [f for f in required if payload.get(f) is None or payload.get(f) == ""]
    if missing:
        raise ValidationFailedError(f"Missing required fields: {', '.join(missing)}")

    try:
        service_id = parse_id_field(payload, "service_id", required=True)
        provider_id = parse_id_field(payload, "provider_id")
        payment_method = parse_text_field(payload, "payment_method") or PAYMENT_METHOD_CASH
        notes = parse_text_field(payload, "notes")
        if client is None:
            client_name = parse_text_field(payload, "client_name", max_length=255)
            client_email = parse_text_field(payload, "client_email", max_length=255)
            client_phone = parse_text_field(payload, "client_phone", max_length=64)
        else:
            client_name, client_email, client_phone = client.name, client.email, client.phone
        start_time = parse_datetime_field(payload, "start_time")
        end_time = parse_datetime_field(payload, "end_time", required=False)
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    payment_method = payment_method.upper()
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationFailedError("Invalid payment method. Must be CASH or ONLINE")
    if not client_name:
        raise ValidationFailedError("Missing required fields: client_name")
    if not is_valid_email(client_email):
        raise ValidationFailedError("Invalid email format")

    return BookingRequest(
        service_id=service_id,
        provider_id=provider_id,
        start_time=start_time,
        end_time=end_time,
        client_name=client_name,
        client_email=client_email,
        client_phone=client_phone,
        notes=notes,
        payment_method=payment_method,
    )


def _check_payment_method(payment_method: str, policy: TenantPolicy) -> None:
    if payment_method == PAYMENT_METHOD_ONLINE and not policy.payment.accept_online:
        raise ValidationFailedError("Online payment is not accepted by this business")
    if payment_method == PAYMENT_METHOD_CASH and not policy.payment.accept_cash:
        raise ValidationFailedError("Cash payment is not accepted by this business")


def _check_advance_window(start: datetime, policy: TenantPolicy, now: datetime) -> None:
    days = policy.booking.max_advance_booking_days
    if days and start > now + timedelta(days=days):
        raise ValidationFailedError(f"Appointments can only be booked up to {days} days in advance")


def _insert_with_lock(build, provider_id: int, tenant_id: int, start: datetime, end: datetime,
                      *, exclude_appointment_id: int | None = None):
    """
    Run conflict check + write under the provider lock, with retries.

    build() is called inside the locked transaction after the conflict check
    passed; it stages the write and returns the value to hand back. Lock
    failures that survive the retries surface as SlotUnavailableError.
    """
    def _op():
        begin_isolated()
        acquire_provider_lock(provider_id)
        if has_conflict(provider_id, tenant_id, start, end, exclude_appointment_id=exclude_appointment_id):
            raise SlotUnavailableError(SLOT_TAKEN_MESSAGE)
        result = build()
        db.session.commit()
        return result

    try:
        return run_with_retry(_op)
    except AppointmentError:
        db.session.rollback()
        raise
    except OperationalError:
        db.session.rollback()
        logger.warning("Booking lock for provider %s not acquired after retries", provider_id)
        raise SlotUnavailableError(SLOT_TAKEN_MESSAGE)


def create_appointment(
    tenant_id: int | None,
    request: BookingRequest,
    *,
    public: bool = False,
    collaborators: Collaborators | None = None,
    now: datetime | None = None,
    notify: bool = True,
    recurring_appointment_id: int | None = None,
    payment_amount_cents: int | None = None,
) -> Appointment:
    """
    Book a provider's time (Create).

    Args:
        tenant_id: Tenant resolved from the session or X-Tenant-Id header
        request: Normalized booking request (see parse_booking_request)
        public: True for unauthenticated bookings; these require online
            booking to be enabled for the tenant
        notify: False suppresses e-mail/calendar side effects (series expansion)
        recurring_appointment_id: Series the instance belongs to
        payment_amount_cents: Override of the service price (series template)

    Returns:
        The committed appointment (PENDING or CONFIRMED)

    Raises:
        TenantContextMissingError, ValidationFailedError, OnlineBookingDisabledError,
        NotFoundError, SlotUnavailableError
    """
    if tenant_id is None:
        raise TenantContextMissingError("Tenant context is required")
    now = now or utcnow()
    policy = get_policy(tenant_id)

    _check_payment_method(request.payment_method, policy)
    if public and not policy.booking.enable_online_booking:
        raise OnlineBookingDisabledError("Online booking is currently disabled for this business")

    service = _get_service(tenant_id, request.service_id)
    provider_id = request.provider_id or service.provider_id
    if provider_id is None:
        raise ValidationFailedError("provider_id is required")
    provider = _get_provider(tenant_id, provider_id)

    start = request.start_time
    end = request.end_time or start + timedelta(minutes=service.duration_minutes)
    if end <= start:
        raise ValidationFailedError("end_time must be after start_time")
    if start <= now:
        raise ValidationFailedError("Appointment time must be in the future")
    _check_advance_window(start, policy, now)

    status = initial_status(request.payment_method, policy)
    amount = payment_amount_cents if payment_amount_cents is not None else service.price_cents
    provider_pk = provider.id
    service_pk = service.id
    service_name = service.name

    def _build():
        client = resolve_client(tenant_id, request.client_email, request.client_name, request.client_phone)
        appointment = Appointment(
            tenant_id=tenant_id,
            client_id=client.id,
            provider_id=provider_pk,
            service_id=service_pk,
            start_time=start,
            end_time=end,
            status=status,
            notes=request.notes,
            payment_method=request.payment_method,
            payment_status=PAYMENT_PENDING,
            payment_amount_cents=amount,
            recurring_appointment_id=recurring_appointment_id,
        )
        db.session.add(appointment)
        db.session.flush()
        if notify:
            create_in_app_notification(
                tenant_id,
                provider_pk,
                NOTIFY_APPOINTMENT_BOOKED,
                "New appointment booked",
                f"{client.name} booked {service_name} for {start.isoformat()}Z",
                {"appointment_id": appointment.id},
            )
        return appointment.id

    appointment_id = _insert_with_lock(_build, provider_pk, tenant_id, start, end)
    appointment = db.session.get(Appointment, appointment_id)

    if notify:
        collaborators = collaborators or get_collaborators()
        _after_booking(appointment, policy, collaborators)
    return appointment


def _after_booking(appointment: Appointment, policy: TenantPolicy, collaborators: Collaborators) -> None:
    client = appointment.client
    notify_safely(
        collaborators.notifier.send_appointment_confirmation,
        client.email,
        client.name,
        notice_for(appointment, currency=policy.payment.currency),
    )
    event_id = sync_calendar_safely(
        collaborators.calendar.create_event,
        f"{appointment.service.name} - {client.name}",
        appointment.notes or "",
        appointment.start_time,
        appointment.end_time,
        [client.email, appointment.provider.email],
    )
    if event_id:
        appointment.calendar_event_id = event_id
        db.session.commit()


# =============================================================================
# PAYMENT CALLBACKS
# =============================================================================

def _event_processed(event_id: str | None) -> bool:
    if not event_id:
        return False
    return db.session.query(PaymentEvent.id).filter_by(event_id=event_id).first() is not None


def _record_event(event_id: str | None, event_type: str, payment_intent_id: str | None,
                  appointment_id: int | None) -> None:
    if not event_id:
        return
    db.session.add(PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        payment_intent_id=payment_intent_id,
        appointment_id=appointment_id,
        processed_at=utcnow(),
    ))


def _commit_event() -> bool:
    """Commit a webhook transition; a duplicate event id means another worker won."""
    try:
        db.session.commit()
        return True
    except IntegrityError:
        db.session.rollback()
        logger.info("Payment event already processed by a concurrent delivery")
        return False


def confirm_payment(
    payment_intent_id: str,
    charge_id: str | None = None,
    *,
    event_id: str | None = None,
    collaborators: Collaborators | None = None,
) -> Appointment | None:
    """
    Payment succeeded (ConfirmPayment): PAID, charge stored, PENDING -> CONFIRMED.

    Idempotent: a replayed event, an already-paid appointment, or an
    appointment that no longer exists are logged and ignored. A cancelled
    appointment is never re-confirmed; its payment is refunded in full and
    the tenant's admins are told the outcome.
    """
    if _event_processed(event_id):
        logger.info("Skipping already processed payment event %s", event_id)
        return None

    appointment = db.session.query(Appointment).filter_by(payment_intent_id=payment_intent_id).first()
    if appointment is None:
        logger.warning("Payment succeeded for unknown payment intent %s", payment_intent_id)
        _record_event(event_id, EVENT_PAYMENT_SUCCEEDED, payment_intent_id, None)
        _commit_event()
        return None

    if appointment.payment_status in (PAYMENT_PAID, PAYMENT_REFUNDED):
        _record_event(event_id, EVENT_PAYMENT_SUCCEEDED, payment_intent_id, appointment.id)
        _commit_event()
        return appointment

    appointment.payment_status = PAYMENT_PAID
    if charge_id:
        appointment.charge_id = charge_id
    if appointment.status == STATUS_PENDING:
        appointment.status = STATUS_CONFIRMED
    elif appointment.status == STATUS_CANCELLED:
        logger.warning("Payment succeeded for cancelled appointment %s", appointment.id)
    _record_event(event_id, EVENT_PAYMENT_SUCCEEDED, payment_intent_id, appointment.id)
    if not _commit_event():
        return None

    collaborators = collaborators or get_collaborators()
    policy = get_policy(appointment.tenant_id)
    if appointment.status == STATUS_CANCELLED:
        _refund_late_payment(appointment, collaborators, policy)
        return appointment

    notify_safely(
        collaborators.notifier.send_payment_confirmation,
        appointment.client.email,
        appointment.client.name,
        notice_for(appointment, currency=policy.payment.currency),
    )
    return appointment


def _refund_late_payment(appointment: Appointment, collaborators: Collaborators, policy: TenantPolicy) -> None:
    """
    Give back a payment that arrived after the booking was cancelled.

    The cancellation was accepted while nothing had been paid, so the whole
    amount is due back regardless of the refund policy. Every active admin
    of the tenant gets an in-app notice with the outcome.
    """
    amount = appointment.payment_amount_cents or 0
    reason = "Payment received after cancellation"
    refunded = 0
    refund_status = REFUND_STATUS_FAILED
    try:
        if collaborators.payments is None:
            raise PaymentGatewayError("Payment gateway not configured")
        if not appointment.charge_id:
            raise PaymentGatewayError("No charge to refund")
        receipt = collaborators.payments.refund(
            appointment.charge_id,
            amount,
            {"appointment_id": appointment.id, "reason": reason},
        )
        refunded = receipt.amount_cents
        refund_status = receipt.status.upper()
    except PaymentGatewayError as exc:
        logger.error("Refund of late payment failed for appointment %s: %s", appointment.id, exc)

    appointment.refund_status = refund_status
    if refunded > 0:
        appointment.refund_amount_cents = refunded
        appointment.refund_reason = reason
        appointment.payment_status = PAYMENT_REFUNDED
        message = f"Refunded {refunded / 100:.2f} {policy.payment.currency} to {appointment.client.name}"
    else:
        message = f"Refund to {appointment.client.name} failed; refund manually"
    admins = (
        db.session.query(User)
        .filter(User.tenant_id == appointment.tenant_id, User.role == ROLE_ADMIN, User.is_active.is_(True))
        .all()
    )
    for admin in admins:
        create_in_app_notification(
            appointment.tenant_id,
            admin.id,
            NOTIFY_PAYMENT_AFTER_CANCELLATION,
            "Payment received for a cancelled appointment",
            message,
            {"appointment_id": appointment.id, "refund_amount_cents": refunded, "refund_status": refund_status},
        )
    db.session.commit()

    if refunded > 0:
        notify_safely(
            collaborators.notifier.send_cancellation_with_refund,
            appointment.client.email,
            appointment.client.name,
            notice_for(appointment, currency=policy.payment.currency),
        )


def fail_payment(
    payment_intent_id: str,
    *,
    event_id: str | None = None,
    collaborators: Collaborators | None = None,
) -> Appointment | None:
    """Payment failed (FailPayment): payment FAILED, appointment status unchanged."""
    if _event_processed(event_id):
        logger.info("Skipping already processed payment event %s", event_id)
        return None

    appointment = db.session.query(Appointment).filter_by(payment_intent_id=payment_intent_id).first()
    if appointment is None:
        logger.warning("Payment failed for unknown payment intent %s", payment_intent_id)
        _record_event(event_id, EVENT_PAYMENT_FAILED, payment_intent_id, None)
        _commit_event()
        return None

    # A late failure never overrides a settled payment
    if appointment.payment_status in (PAYMENT_PAID, PAYMENT_REFUNDED, PAYMENT_FAILED):
        _record_event(event_id, EVENT_PAYMENT_FAILED, payment_intent_id, appointment.id)
        _commit_event()
        return appointment

    appointment.payment_status = PAYMENT_FAILED
    _record_event(event_id, EVENT_PAYMENT_FAILED, payment_intent_id, appointment.id)
    if not _commit_event():
        return None

    collaborators = collaborators or get_collaborators()
    policy = get_policy(appointment.tenant_id)
    notify_safely(
        collaborators.notifier.send_payment_failure,
        appointment.client.email,
        appointment.client.name,
        notice_for(appointment, currency=policy.payment.currency),
    )
    return appointment


def handle_gateway_event(event: GatewayEvent, *, collaborators: Collaborators | None = None) -> Appointment | None:
    """Dispatch a verified gateway event; unhandled types are ignored."""
    if event.type == EVENT_PAYMENT_SUCCEEDED and event.payment_intent_id:
        return confirm_payment(event.payment_intent_id, event.charge_id, event_id=event.id, collaborators=collaborators)
    if event.type == EVENT_PAYMENT_FAILED and event.payment_intent_id:
        return fail_payment(event.payment_intent_id, event_id=event.id, collaborators=collaborators)
    logger.info("Ignoring payment event %s of type %s", event.id, event.type)
    return None


def start_online_payment(
    appointment_id: int,
    tenant_id: int,
    actor: User,
    *,
    collaborators: Collaborators | None = None,
) -> dict:
    """
    Create a gateway payment intent for an ONLINE, unpaid appointment.

    Returns:
        {"client_secret": ..., "payment_intent_id": ...}
    """
    appointment = _load(appointment_id, tenant_id)
    if not _is_party(appointment, actor):
        raise NotAuthorizedError("You are not authorized to pay for this appointment")
    if appointment.status == STATUS_CANCELLED:
        raise AlreadyCancelledError("Appointment is already cancelled")
    if appointment.payment_method != PAYMENT_METHOD_ONLINE:
        raise ValidationFailedError("Appointment is not set up for online payment")
    if appointment.payment_status == PAYMENT_PAID:
        raise ValidationFailedError("Appointment is already paid")
    if appointment.payment_intent_id:
        raise ValidationFailedError("Payment intent already exists for this appointment")
    if not appointment.payment_amount_cents:
        raise ValidationFailedError("Appointment has no amount due")

    collaborators = collaborators or get_collaborators()
    if collaborators.payments is None:
        raise PaymentUnavailableError("Online payments are not configured")
    settings = db.session.query(TenantSettings).filter_by(tenant_id=tenant_id).first()
    account_id = settings.payment_account_id if settings else None
    if not account_id:
        raise PaymentUnavailableError("This business has not connected a payment account")

    policy = get_policy(tenant_id)
    amount = appointment.payment_amount_cents
    try:
        intent = collaborators.payments.create_payment_intent(
            amount,
            policy.payment.currency,
            {
                "appointment_id": appointment.id,
                "tenant_id": tenant_id,
                "client_id": appointment.client_id,
            },
            destination_account=account_id,
            application_fee_cents=(amount * PLATFORM_FEE_PERCENT) // 100,
            description=f"{appointment.service.name} with {appointment.provider.name}",
        )
    except PaymentGatewayError as exc:
        logger.warning("Payment intent creation failed for appointment %s: %s", appointment.id, exc)
        raise PaymentUnavailableError("Payment could not be started. Please try again.")

    appointment.payment_intent_id = intent.id
    db.session.commit()
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}


# =============================================================================
# CANCEL
# =============================================================================

@dataclass(frozen=True)
class CancellationResult:
    appointment: Appointment
    refund_amount_cents: int
    refund_status: str | None  # receipt status, FAILED, or None when no refund applied


def cancel_appointment(
    appointment_id: int,
    tenant_id: int | None,
    actor: User,
    reason: str | None = None,
    *,
    collaborators: Collaborators | None = None,
    now: datetime | None = None,
) -> CancellationResult:
    """
    Cancel a PENDING or CONFIRMED appointment and refund per tenant policy.

    Checks, in order: exists in tenant, requester is client / provider /
    admin, not already cancelled, not completed, not in the past,
    cancellation allowed, deadline not passed, reason present when required.

    Refunds apply to paid ONLINE bookings with a charge on file. A gateway
    failure is logged and recorded as refund_status FAILED; the
    cancellation still succeeds.
    """
    now = now or utcnow()
    appointment = _load(appointment_id, tenant_id, for_update=True)
    if not _is_party(appointment, actor):
        raise NotAuthorizedError("You are not authorized to cancel this appointment")
    if appointment.status == STATUS_CANCELLED:
        raise AlreadyCancelledError("Appointment is already cancelled")
    if appointment.status == STATUS_COMPLETED:
        raise InvalidTransitionError("Completed appointments cannot be cancelled")
    if appointment.start_time <= now:
        raise PastAppointmentError("Cannot cancel past appointments")

    policy = get_policy(tenant_id)
    rules = policy.cancellation
    if not rules.allow_cancellation:
        raise CancellationNotAllowedError("Cancellations are not allowed by this business")
    if now > cancellation_deadline(appointment.start_time, rules.deadline_hours):
        raise DeadlinePassedError(
            f"Cancellation must be made at least {rules.deadline_hours} hours before the appointment"
        )
    if reason is not None and not isinstance(reason, str):
        raise ValidationFailedError("Cancellation reason must be text")
    reason = (reason or "").strip() or None
    if rules.require_reason and not reason:
        raise ValidationFailedError("A cancellation reason is required")

    _require_transition(appointment, STATUS_CANCELLED)
    collaborators = collaborators or get_collaborators()

    refund_amount = 0
    refund_status = None
    refundable = (
        appointment.payment_method == PAYMENT_METHOD_ONLINE
        and appointment.payment_status == PAYMENT_PAID
        and appointment.charge_id
    )
    if refundable:
        due = compute_refund(appointment.payment_amount_cents, rules)
        if due > 0:
            try:
                if collaborators.payments is None:
                    raise PaymentGatewayError("Payment gateway not configured")
                receipt = collaborators.payments.refund(
                    appointment.charge_id,
                    due,
                    {"appointment_id": appointment.id, "reason": reason or "cancelled"},
                )
                refund_amount = receipt.amount_cents
                refund_status = receipt.status.upper()
            except PaymentGatewayError as exc:
                logger.error("Refund failed for appointment %s: %s", appointment.id, exc)
                refund_amount = 0
                refund_status = REFUND_STATUS_FAILED

    appointment.status = STATUS_CANCELLED
    appointment.cancellation_reason = reason
    appointment.cancelled_at = now
    appointment.refund_status = refund_status
    if refund_amount > 0:
        appointment.refund_amount_cents = refund_amount
        appointment.refund_reason = reason or "Appointment cancelled"
        appointment.payment_status = PAYMENT_REFUNDED

    counterparty_id = appointment.provider_id if actor.id == appointment.client_id else appointment.client_id
    create_in_app_notification(
        appointment.tenant_id,
        counterparty_id,
        NOTIFY_APPOINTMENT_CANCELLED,
        "Appointment cancelled",
        f"{appointment.service.name} on {appointment.start_time.isoformat()}Z was cancelled by {actor.name}",
        {"appointment_id": appointment.id, "reason": reason},
    )
    db.session.commit()

    notify_safely(
        collaborators.notifier.send_cancellation_with_refund,
        appointment.client.email,
        appointment.client.name,
        notice_for(appointment, currency=policy.payment.currency),
    )
    if appointment.calendar_event_id:
        sync_calendar_safely(collaborators.calendar.delete_event, appointment.calendar_event_id)

    return CancellationResult(appointment=appointment, refund_amount_cents=refund_amount, refund_status=refund_status)


# =============================================================================
# CONFIRM / COMPLETE / RESCHEDULE
# =============================================================================

def confirm_appointment(
    appointment_id: int,
    tenant_id: int | None,
    actor: User,
    *,
    collaborators: Collaborators | None = None,
) -> Appointment:
    """Provider or admin approves a PENDING booking (PENDING -> CONFIRMED)."""
    appointment = _load(appointment_id, tenant_id, for_update=True)
    if not _is_staff_for(appointment, actor):
        raise NotAuthorizedError("Only the provider or an admin can confirm this appointment")
    _require_transition(appointment, STATUS_CONFIRMED)
    appointment.status = STATUS_CONFIRMED
    db.session.commit()

    collaborators = collaborators or get_collaborators()
    policy = get_policy(appointment.tenant_id)
    notify_safely(
        collaborators.notifier.send_appointment_confirmation,
        appointment.client.email,
        appointment.client.name,
        notice_for(appointment, currency=policy.payment.currency),
    )
    return appointment


def complete_appointment(
    appointment_id: int,
    tenant_id: int | None,
    actor: User,
    *,
    now: datetime | None = None,
) -> Appointment:
    """CONFIRMED -> COMPLETED, once the appointment has started."""
    now = now or utcnow()
    appointment = _load(appointment_id, tenant_id, for_update=True)
    if not _is_staff_for(appointment, actor):
        raise NotAuthorizedError("Only the provider or an admin can complete this appointment")
    _require_transition(appointment, STATUS_COMPLETED)
    if appointment.start_time > now:
        raise ValidationFailedError("Appointment has not started yet")
    appointment.status = STATUS_COMPLETED
    db.session.commit()
    return appointment


def reschedule_appointment(
    appointment_id: int,
    tenant_id: int | None,
    actor: User,
    start_time: datetime,
    end_time: datetime | None = None,
    *,
    collaborators: Collaborators | None = None,
    now: datetime | None = None,
) -> Appointment:
    """
    Move a PENDING/CONFIRMED booking to a new interval.

    The duration is kept when end_time is omitted. The conflict check
    ignores the appointment being moved.
    """
    now = now or utcnow()
    appointment = _load(appointment_id, tenant_id)
    if not _is_party(appointment, actor):
        raise NotAuthorizedError("You are not authorized to reschedule this appointment")
    if appointment.status == STATUS_CANCELLED:
        raise AlreadyCancelledError("Appointment is already cancelled")
    if appointment.status not in BLOCKING_STATUSES:
        raise InvalidTransitionError(f"Cannot reschedule a {appointment.status} appointment")

    end = end_time or start_time + (appointment.end_time - appointment.start_time)
    if end <= start_time:
        raise ValidationFailedError("end_time must be after start_time")
    if start_time <= now:
        raise ValidationFailedError("Appointment time must be in the future")
    policy = get_policy(tenant_id)
    _check_advance_window(start_time, policy, now)

    appointment_pk = appointment.id

    def _build():
        target = db.session.get(Appointment, appointment_pk)
        if target.status not in BLOCKING_STATUSES:
            raise InvalidTransitionError(f"Cannot reschedule a {target.status} appointment")
        target.start_time = start_time
        target.end_time = end
        return target.id

    _insert_with_lock(
        _build,
        appointment.provider_id,
        tenant_id,
        start_time,
        end,
        exclude_appointment_id=appointment_pk,
    )
    appointment = db.session.get(Appointment, appointment_pk)

    if appointment.calendar_event_id:
        collaborators = collaborators or get_collaborators()
        sync_calendar_safely(
            collaborators.calendar.update_event,
            appointment.calendar_event_id,
            appointment.start_time,
            appointment.end_time,
        )
    return appointment

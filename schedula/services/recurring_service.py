# Overview: Recurring appointment expander; generates series instances and sweeps them on deactivation.

"""
Recurring Appointment Service

A RecurringAppointment is a rule; its instances are ordinary Appointments
created through appointment_service.create_appointment, so every instance
passes the same validation and provider-lock conflict check as a single
booking. Instances that conflict (or fall outside the booking window) are
skipped and reported back; the rest of the series is still created.

RULES:
1. Dates are generated in the tenant's local calendar and converted to UTC
   with the rule's local start_time
2. days_of_week uses 0 = Sunday ... 6 = Saturday
3. Expansion horizon at creation: end_date, or three months from today;
   never more than MAX_INSTANCES_PER_EXPANSION instances
4. Deactivating or deleting a rule cancels every future PENDING/CONFIRMED
   instance in a single bulk update and notifies the counterparty
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from ..extensions import db
from ..models import Appointment, RecurringAppointment, Service, User
from ..models.appointments import (
    BLOCKING_STATUSES,
    FREQUENCIES,
    PAYMENT_METHOD_CASH,
    STATUS_CANCELLED,
    VALID_PAYMENT_METHODS,
)
from ..models.auth import ROLE_ADMIN, ROLE_CLIENT, ROLE_PROVIDER
from schedula.time_utils import local_to_utc, parse_date, parse_hhmm, to_utc_z, utc_to_local, utcnow
from ..validation import parse_id_field, parse_text_field
from .appointment_service import (
    AppointmentError,
    BookingRequest,
    NotAuthorizedError,
    NotFoundError,
    TenantContextMissingError,
    ValidationFailedError,
    create_appointment,
)
from .notification_service import (
    NOTIFY_RECURRING_CANCELLED,
    NOTIFY_RECURRING_CREATED,
    create_in_app_notification,
)
from .policy_service import HHMM_RE, get_policy


logger = logging.getLogger(__name__)


# Defaults of the pure generator when a rule has no end condition
DEFAULT_MAX_OCCURRENCES = 52
DEFAULT_SPAN_YEARS = 2

# Creation-time expansion limits
MAX_INSTANCES_PER_EXPANSION = 20
DEFAULT_HORIZON_MONTHS = 3

REASON_DEACTIVATED = "Recurring appointment deactivated"
REASON_DELETED = "Recurring appointment deleted"

UPDATABLE_FIELDS = {"notes", "is_active", "end_date", "max_occurrences"}


# =============================================================================
# DATE GENERATION (pure)
# =============================================================================

def _add_months(d: date, months: int, day: int | None = None) -> date | None:
    """Same day-of-month `months` later; None when that month is too short."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = day or d.day
    if day > calendar.monthrange(year, month)[1]:
        return None
    return date(year, month, day)


def _months_later(d: date, months: int) -> date:
    """`months` later, clamped to the end of a shorter month."""
    target = _add_months(d.replace(day=1), months, 1)
    last = calendar.monthrange(target.year, target.month)[1]
    return target.replace(day=min(d.day, last))


def _add_years(d: date, years: int) -> date:
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        # Feb 29 -> Feb 28
        return d.replace(year=d.year + years, day=28)


def sunday_based_weekday(d: date) -> int:
    return (d.weekday() + 1) % 7


def generate_occurrence_dates(
    start_date: date,
    frequency: str,
    interval: int = 1,
    days_of_week: list[int] | None = None,
    day_of_month: int | None = None,
    end_date: date | None = None,
    max_occurrences: int | None = None,
) -> list[date]:
    """
    Local calendar dates of a series, in order.

    Args:
        start_date: First candidate date (inclusive)
        frequency: DAILY, WEEKLY, BIWEEKLY, MONTHLY, QUARTERLY or YEARLY
        interval: Every N periods
        days_of_week: WEEKLY/BIWEEKLY matching days, 0 = Sunday
        day_of_month: MONTHLY day; defaults to start_date's day
        end_date: Last candidate date (inclusive); default start + 2 years
        max_occurrences: Cap on the number of dates; default 52

    WEEKLY/BIWEEKLY walk one day at a time and, on reaching a Sunday, skip
    ahead (interval - 1) weeks, or (2 * interval - 1) for BIWEEKLY.
    """
    if frequency not in FREQUENCIES:
        raise ValidationFailedError(f"Invalid frequency '{frequency}'")
    interval = max(int(interval or 1), 1)
    limit = max_occurrences or DEFAULT_MAX_OCCURRENCES
    final = end_date or _add_years(start_date, DEFAULT_SPAN_YEARS)

    dates: list[date] = []
    if frequency in ("WEEKLY", "BIWEEKLY"):
        wanted = set(days_of_week or [])
        if not wanted:
            return dates
        current = start_date
        while len(dates) < limit and current <= final:
            if sunday_based_weekday(current) in wanted:
                dates.append(current)
            current += timedelta(days=1)
            if sunday_based_weekday(current) == 0:
                weeks = interval * 2 - 1 if frequency == "BIWEEKLY" else interval - 1
                current += timedelta(weeks=weeks)
        return dates

    if frequency == "MONTHLY":
        day = day_of_month or start_date.day
        first_month = start_date.replace(day=1)
        # First month whose `day` falls on or after start_date
        months = 0 if start_date.day <= day else 1
        while len(dates) < limit:
            if _add_months(first_month, months, 1) > final:
                break
            candidate = _add_months(first_month, months, day)
            months += interval
            if candidate is None:
                continue
            if candidate > final:
                break
            dates.append(candidate)
        return dates

    n = 0
    while len(dates) < limit:
        if frequency == "DAILY":
            current = start_date + timedelta(days=interval * n)
        elif frequency == "QUARTERLY":
            current = _months_later(start_date, 3 * interval * n)
        else:  # YEARLY
            current = _add_years(start_date, interval * n)
        if current > final:
            break
        dates.append(current)
        n += 1
    return dates


# =============================================================================
# SERIES MANAGEMENT
# =============================================================================

@dataclass
class ExpansionResult:
    rule: RecurringAppointment
    created: list[Appointment] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "recurring_appointment": self.rule.to_dict(),
            "appointments": [a.to_dict() for a in self.created],
            "skipped": self.skipped,
        }


def _int_field(payload: dict, key: str, *, minimum: int, maximum: int, required: bool = False):
    raw = payload.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationFailedError(f"{key} is required")
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationFailedError(f"{key} must be an integer")
    if raw < minimum or raw > maximum:
        raise ValidationFailedError(f"{key} must be between {minimum} and {maximum}")
    return raw


def _date_field(payload: dict, key: str, *, required: bool = False) -> date | None:
    raw = payload.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationFailedError(f"{key} is required")
        return None
    try:
        return parse_date(str(raw))
    except ValueError:
        raise ValidationFailedError(f"{key} must be a YYYY-MM-DD date")


def _load_rule(rule_id: int, tenant_id: int | None) -> RecurringAppointment:
    if tenant_id is None:
        raise TenantContextMissingError("Tenant context is required")
    rule = db.session.query(RecurringAppointment).filter_by(id=rule_id, tenant_id=tenant_id).first()
    if rule is None:
        raise NotFoundError("Recurring appointment not found")
    return rule


def _can_manage(rule: RecurringAppointment, user: User) -> bool:
    return user.role == ROLE_ADMIN or user.id in (rule.client_id, rule.provider_id)


def get_recurring(rule_id: int, tenant_id: int | None, actor: User) -> RecurringAppointment:
    rule = _load_rule(rule_id, tenant_id)
    if not _can_manage(rule, actor):
        raise NotAuthorizedError("You are not authorized to view this recurring appointment")
    return rule


def list_recurring(
    tenant_id: int,
    actor: User,
    *,
    is_active: bool | None = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[RecurringAppointment], int]:
    q = db.session.query(RecurringAppointment).filter(RecurringAppointment.tenant_id == tenant_id)
    if actor.role == ROLE_CLIENT:
        q = q.filter(RecurringAppointment.client_id == actor.id)
    elif actor.role == ROLE_PROVIDER:
        q = q.filter(RecurringAppointment.provider_id == actor.id)
    if is_active is not None:
        q = q.filter(RecurringAppointment.is_active.is_(is_active))
    total = q.count()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    items = (
        q.order_by(RecurringAppointment.created_at.desc(), RecurringAppointment.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total


def create_recurring(
    tenant_id: int | None,
    actor: User,
    payload: dict,
    *,
    collaborators=None,
    now: datetime | None = None,
) -> ExpansionResult:
    """
    Create a series rule and book its instances.

    Only clients create series, for themselves. The provider defaults to the
    service's default provider.

    Returns:
        ExpansionResult with the rule, the booked instances and the skipped
        instances ({"start_time", "reason"})
    """
    if tenant_id is None:
        raise TenantContextMissingError("Tenant context is required")
    if actor.role != ROLE_CLIENT:
        raise NotAuthorizedError("Only clients can create recurring appointments")
    if not isinstance(payload, dict):
        raise ValidationFailedError("Invalid JSON payload")
    now = now or utcnow()

    frequency = str(payload.get("frequency") or "").upper()
    if frequency not in FREQUENCIES:
        raise ValidationFailedError(f"frequency must be one of: {', '.join(FREQUENCIES)}")
    interval = _int_field(payload, "interval", minimum=1, maximum=12) or 1

    days_of_week = payload.get("days_of_week")
    if frequency in ("WEEKLY", "BIWEEKLY"):
        if (
            not isinstance(days_of_week, list)
            or not days_of_week
            or any(isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6 for d in days_of_week)
        ):
            raise ValidationFailedError("days_of_week must be a non-empty list of integers 0-6 (0 = Sunday)")
        days_of_week = sorted(set(days_of_week))
    else:
        days_of_week = None
    day_of_month = _int_field(payload, "day_of_month", minimum=1, maximum=31) if frequency == "MONTHLY" else None

    start_date = _date_field(payload, "start_date", required=True)
    end_date = _date_field(payload, "end_date")
    if end_date is not None and end_date < start_date:
        raise ValidationFailedError("end_date must be on or after start_date")
    start_time = payload.get("start_time")
    if not isinstance(start_time, str) or not HHMM_RE.match(start_time):
        raise ValidationFailedError("start_time must be HH:MM")
    max_occurrences = _int_field(payload, "max_occurrences", minimum=1, maximum=365)

    payment_method = str(payload.get("payment_method") or PAYMENT_METHOD_CASH).upper()
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationFailedError("Invalid payment method. Must be CASH or ONLINE")

    try:
        service_id = parse_id_field(payload, "service_id", required=True)
        provider_id = parse_id_field(payload, "provider_id")
        notes = parse_text_field(payload, "notes")
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    service = (
        db.session.query(Service)
        .filter_by(id=service_id, tenant_id=tenant_id, is_active=True)
        .first()
    )
    if service is None:
        raise NotFoundError("Service not found")
    provider_id = provider_id or service.provider_id
    if provider_id is None:
        raise ValidationFailedError("provider_id is required")
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

    duration = _int_field(payload, "duration_minutes", minimum=5, maximum=24 * 60) or service.duration_minutes
    amount = _int_field(payload, "payment_amount_cents", minimum=0, maximum=9_999_999)

    policy = get_policy(tenant_id)
    rule = RecurringAppointment(
        tenant_id=tenant_id,
        client_id=actor.id,
        provider_id=provider.id,
        service_id=service.id,
        frequency=frequency,
        interval=interval,
        days_of_week=days_of_week,
        day_of_month=day_of_month,
        start_date=start_date,
        start_time=start_time,
        end_date=end_date,
        max_occurrences=max_occurrences,
        duration_minutes=duration,
        notes=notes,
        payment_method=payment_method,
        payment_amount_cents=amount if amount is not None else service.price_cents,
        is_active=True,
    )
    db.session.add(rule)
    db.session.commit()

    today_local = utc_to_local(now, policy.timezone).date()
    horizon = end_date or _months_later(today_local, DEFAULT_HORIZON_MONTHS)
    count = min(max_occurrences, MAX_INSTANCES_PER_EXPANSION) if max_occurrences else MAX_INSTANCES_PER_EXPANSION
    dates = generate_occurrence_dates(
        start_date, frequency, interval, days_of_week, day_of_month, horizon, count,
    )

    result = ExpansionResult(rule=rule)
    wall_clock = parse_hhmm(start_time)
    for day in dates:
        start = local_to_utc(day, wall_clock, policy.timezone)
        request = BookingRequest(
            service_id=service.id,
            provider_id=provider.id,
            start_time=start,
            end_time=start + timedelta(minutes=duration),
            client_name=actor.name,
            client_email=actor.email,
            client_phone=actor.phone,
            notes=rule.notes,
            payment_method=payment_method,
        )
        try:
            appointment = create_appointment(
                tenant_id,
                request,
                collaborators=collaborators,
                now=now,
                notify=False,
                recurring_appointment_id=rule.id,
                payment_amount_cents=rule.payment_amount_cents,
            )
        except AppointmentError as exc:
            result.skipped.append({"start_time": to_utc_z(start), "reason": exc.message})
            continue
        result.created.append(appointment)

    create_in_app_notification(
        tenant_id,
        provider.id,
        NOTIFY_RECURRING_CREATED,
        "New Recurring Appointment",
        f"{actor.name} has created a recurring appointment for {service.name}",
        {"recurring_appointment_id": rule.id, "created": len(result.created), "skipped": len(result.skipped)},
    )
    db.session.commit()
    if result.skipped:
        logger.info(
            "Recurring appointment %s: %d instances skipped", rule.id, len(result.skipped)
        )
    return result


def cancel_future_instances(rule: RecurringAppointment, reason: str, *, now: datetime | None = None) -> int:
    """
    Cancel every future PENDING/CONFIRMED instance of the rule in one bulk update.

    Past, COMPLETED and already CANCELLED instances are untouched. The
    caller commits.
    """
    now = now or utcnow()
    return (
        db.session.query(Appointment)
        .filter(
            Appointment.recurring_appointment_id == rule.id,
            Appointment.start_time > now,
            Appointment.status.in_(BLOCKING_STATUSES),
        )
        .update(
            {
                Appointment.status: STATUS_CANCELLED,
                Appointment.cancellation_reason: reason,
                Appointment.cancelled_at: now,
            },
            synchronize_session=False,
        )
    )


def _notify_series_cancelled(rule: RecurringAppointment, actor: User, reason: str, cancelled: int) -> None:
    recipient_id = rule.provider_id if actor.id == rule.client_id else rule.client_id
    create_in_app_notification(
        rule.tenant_id,
        recipient_id,
        NOTIFY_RECURRING_CANCELLED,
        "Recurring Appointment Cancelled",
        f"{reason} by {actor.name}; {cancelled} upcoming appointment(s) cancelled",
        {"recurring_appointment_id": rule.id, "cancelled": cancelled},
    )


def update_recurring(
    rule_id: int,
    tenant_id: int | None,
    actor: User,
    patch: dict,
    *,
    now: datetime | None = None,
) -> tuple[RecurringAppointment, int]:
    """
    Update a rule's notes, end condition or active flag.

    Switching is_active from true to false runs the cancellation sweep.

    Returns:
        (rule, number of instances cancelled)
    """
    rule = _load_rule(rule_id, tenant_id)
    if not _can_manage(rule, actor):
        raise NotAuthorizedError("You are not authorized to modify this recurring appointment")
    if not isinstance(patch, dict) or not patch:
        raise ValidationFailedError("Update payload must be a non-empty object")
    unknown = sorted(set(patch) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailedError(f"Field not allowed: {', '.join(unknown)}")

    if "notes" in patch:
        try:
            rule.notes = parse_text_field(patch, "notes")
        except ValueError as exc:
            raise ValidationFailedError(str(exc))
    if "end_date" in patch:
        rule.end_date = _date_field(patch, "end_date")
    if "max_occurrences" in patch:
        rule.max_occurrences = _int_field(patch, "max_occurrences", minimum=1, maximum=365)

    cancelled = 0
    if "is_active" in patch:
        if not isinstance(patch["is_active"], bool):
            raise ValidationFailedError("is_active must be a boolean")
        if rule.is_active and not patch["is_active"]:
            cancelled = cancel_future_instances(rule, REASON_DEACTIVATED, now=now)
            _notify_series_cancelled(rule, actor, REASON_DEACTIVATED, cancelled)
        rule.is_active = patch["is_active"]

    db.session.commit()
    return rule, cancelled


def deactivate_recurring(rule_id: int, tenant_id: int | None, actor: User, *, now: datetime | None = None) -> int:
    _, cancelled = update_recurring(rule_id, tenant_id, actor, {"is_active": False}, now=now)
    return cancelled


def delete_recurring(rule_id: int, tenant_id: int | None, actor: User, *, now: datetime | None = None) -> int:
    """Cancel future instances, detach all instances and delete the rule."""
    rule = _load_rule(rule_id, tenant_id)
    if not _can_manage(rule, actor):
        raise NotAuthorizedError("You are not authorized to delete this recurring appointment")

    cancelled = cancel_future_instances(rule, REASON_DELETED, now=now)
    _notify_series_cancelled(rule, actor, REASON_DELETED, cancelled)
    db.session.query(Appointment).filter(Appointment.recurring_appointment_id == rule.id).update(
        {Appointment.recurring_appointment_id: None},
        synchronize_session=False,
    )
    db.session.delete(rule)
    db.session.commit()
    return cancelled

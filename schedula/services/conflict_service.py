# Overview: Conflict checker; detects overlapping blocking appointments for a provider.

"""
Conflict Checker

Authoritative booking-time overlap test. Only PENDING and CONFIRMED
appointments block a provider; CANCELLED and COMPLETED never do.

The test is the raw half-open interval overlap with no buffer applied.
Buffer time only shapes the availability report (availability_service);
the booking-time check deliberately does not use it, so a booking placed
inside another appointment's buffer is still accepted.

Callers that insert must run this inside the transaction that holds the
provider lock (see concurrency.acquire_provider_lock); on its own it is a
fast-path guard, not the guarantee.
"""

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import Appointment
from ..models.appointments import BLOCKING_STATUSES


def overlapping_query(
    provider_id: int,
    tenant_id: int,
    start: datetime,
    end: datetime,
    *,
    statuses=BLOCKING_STATUSES,
    exclude_appointment_id: int | None = None,
):
    """Appointments of the provider whose [start_time, end_time) overlaps [start, end)."""
    q = db.session.query(Appointment).filter(
        Appointment.tenant_id == tenant_id,
        Appointment.provider_id == provider_id,
        Appointment.status.in_(statuses),
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if exclude_appointment_id is not None:
        q = q.filter(Appointment.id != exclude_appointment_id)
    return q


def find_conflicts(
    provider_id: int,
    tenant_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> list[Appointment]:
    return (
        overlapping_query(provider_id, tenant_id, start, end, exclude_appointment_id=exclude_appointment_id)
        .order_by(Appointment.start_time.asc())
        .all()
    )


def has_conflict(
    provider_id: int,
    tenant_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> bool:
    """
    True if [start, end) overlaps any PENDING/CONFIRMED appointment of the provider.

    Args:
        provider_id: Provider whose calendar is checked
        tenant_id: Tenant scope
        start, end: Proposed half-open interval (UTC-naive)
        exclude_appointment_id: Ignore this appointment (rescheduling itself)
    """
    q = overlapping_query(provider_id, tenant_id, start, end, exclude_appointment_id=exclude_appointment_id)
    return db.session.query(q.exists()).scalar()

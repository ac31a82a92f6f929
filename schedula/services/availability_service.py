# Overview: Availability engine; turns working hours, buffer and existing bookings into a slot report.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from ..models import Appointment
from ..models.appointments import STATUS_CANCELLED, VALID_STATUSES
from schedula.time_utils import (
    day_name,
    expand_interval,
    format_hhmm,
    intervals_overlap,
    iter_slot_starts,
    local_day_bounds,
    local_to_utc,
    to_utc_z,
    utc_to_local,
    utcnow,
)
from .policy_service import TenantPolicy
from .conflict_service import overlapping_query


DEFAULT_SLOT_MINUTES = 30


@dataclass(frozen=True)
class Slot:
    start: datetime  # UTC-naive
    end: datetime
    label: str  # local HH:MM
    available: bool

    def to_dict(self) -> dict:
        return {
            "time": self.label,
            "available": self.available,
            "datetime": to_utc_z(self.start),
        }


def _day_appointments(policy: TenantPolicy, provider_id: int, day: date) -> list[Appointment]:
    """
    Non-cancelled appointments of the provider overlapping the local calendar day.

    The window is widened by the buffer so an appointment just outside the
    day still blocks the slots its buffer reaches.
    """
    day_start, day_end = local_day_bounds(day, policy.timezone)
    window_start, window_end = expand_interval(day_start, day_end, policy.booking.buffer_time_minutes)
    statuses = tuple(s for s in sorted(VALID_STATUSES) if s != STATUS_CANCELLED)
    return (
        overlapping_query(provider_id, policy.tenant_id, window_start, window_end, statuses=statuses)
        .order_by(Appointment.start_time.asc())
        .all()
    )


def build_slots(
    policy: TenantPolicy,
    day: date,
    busy: list[tuple[datetime, datetime]],
    *,
    now: datetime,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> list[Slot]:
    """
    Pure slot computation for one local day.

    Args:
        policy: Tenant policy (working hours, buffer, timezone)
        day: Local calendar date
        busy: Existing (start, end) intervals, UTC-naive, before buffering
        now: Current UTC-naive instant; slots starting at or before it are unavailable
        slot_minutes: Fixed slot width
    """
    hours = policy.hours_for(day_name(day))
    if hours is None or not hours.enabled:
        return []

    open_at = local_to_utc(day, hours.start, policy.timezone)
    close_at = local_to_utc(day, hours.end, policy.timezone)
    buffered = [expand_interval(s, e, policy.booking.buffer_time_minutes) for s, e in busy]

    slots: list[Slot] = []
    for start in iter_slot_starts(open_at, close_at, slot_minutes):
        end = start + timedelta(minutes=slot_minutes)
        blocked = any(intervals_overlap(start, end, b_start, b_end) for b_start, b_end in buffered)
        is_past = start <= now
        slots.append(
            Slot(
                start=start,
                end=end,
                label=format_hhmm(utc_to_local(start, policy.timezone)),
                available=not blocked and not is_past,
            )
        )
    return slots


def get_available_slots(
    policy: TenantPolicy,
    provider_id: int,
    day: date,
    *,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
    now: datetime | None = None,
) -> list[Slot]:
    """
    Full-day availability report for a provider.

    Returns every slot of the day in chronological order with an availability
    flag; callers decide what to show. A disabled or unconfigured day yields
    an empty list.
    """
    hours = policy.hours_for(day_name(day))
    if hours is None or not hours.enabled:
        return []

    appointments = _day_appointments(policy, provider_id, day)
    busy = [(a.start_time, a.end_time) for a in appointments]
    return build_slots(
        policy,
        day,
        busy,
        now=now if now is not None else utcnow(),
        slot_minutes=slot_minutes,
    )

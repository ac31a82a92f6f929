from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


# Index matches date.weekday(): Monday == 0
DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    # Normalize to UTC-naive
    if dt.tzinfo is None:
        # interpret naive as UTC
        return dt.replace(tzinfo=None)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse "YYYY-MM-DD" (a full ISO datetime is accepted and truncated)."""
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    if len(s) > 10:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    return date.fromisoformat(s)


def parse_hhmm(value: str) -> time:
    """Parse a wall-clock "HH:MM" label."""
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def format_hhmm(value: time | datetime) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def day_name(d: date) -> str:
    return DAY_NAMES[d.weekday()]


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_to_utc(d: date, t: time, tz_name: Optional[str]) -> datetime:
    """Wall-clock (d, t) in the tenant's timezone -> UTC-naive instant."""
    local = datetime.combine(d, t).replace(tzinfo=get_zone(tz_name))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(dt: datetime, tz_name: Optional[str]) -> datetime:
    """UTC-naive instant -> aware datetime in the tenant's timezone."""
    return dt.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name))


def local_day_bounds(d: date, tz_name: Optional[str]) -> tuple[datetime, datetime]:
    """Half-open UTC-naive interval covering calendar day d in the tenant's timezone."""
    start = local_to_utc(d, time(0, 0), tz_name)
    end = local_to_utc(d + timedelta(days=1), time(0, 0), tz_name)
    return start, end


def iter_slot_starts(start: datetime, end: datetime, slot_minutes: int) -> Iterator[datetime]:
    """Yield slot starts from start while the start is before end."""
    step = timedelta(minutes=slot_minutes)
    current = start
    while current < end:
        yield current
        current += step


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open [a_start, a_end) and [b_start, b_end) overlap iff a < d and c < b."""
    return a_start < b_end and b_start < a_end


def expand_interval(start: datetime, end: datetime, minutes: int) -> tuple[datetime, datetime]:
    pad = timedelta(minutes=minutes or 0)
    return start - pad, end + pad


def cancellation_deadline(start: datetime, deadline_hours: int) -> datetime:
    """Latest instant at which an appointment starting at `start` may still be cancelled."""
    return start - timedelta(hours=deadline_hours)

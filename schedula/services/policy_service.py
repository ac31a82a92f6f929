# Overview: Tenant policy store; typed read access and validated updates for per-tenant booking policy.

"""
Tenant Policy Store

WHY: Booking, cancellation and payment behaviour is configured per tenant.
The settings row keeps four JSON sections; this module is the only place
that reads or writes them. Everything else receives a frozen TenantPolicy
with explicit defaults.

RULES:
1. Exactly one tenant_settings row per tenant (created on registration,
   lazily created by ensure_settings otherwise)
2. A missing section means "use the defaults for that section"
3. A present working_hours section is authoritative: days it omits have
   no hours
4. Patches are merged onto the stored section and the merged result is
   validated before anything is written
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field, asdict
from datetime import time
from typing import Any

from ..extensions import db
from ..models import Tenant, TenantSettings
from schedula.time_utils import DAY_NAMES, parse_hhmm, format_hhmm
from .concurrency import run_with_retry


REFUND_FULL = "full"
REFUND_PARTIAL = "partial"
REFUND_NONE = "none"
REFUND_POLICIES = (REFUND_FULL, REFUND_PARTIAL, REFUND_NONE)

HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")

SECTIONS = ("working_hours", "booking_rules", "cancellation_rules", "payment_rules")


DEFAULT_WORKING_HOURS = {
    "monday": {"start": "09:00", "end": "17:00", "enabled": True},
    "tuesday": {"start": "09:00", "end": "17:00", "enabled": True},
    "wednesday": {"start": "09:00", "end": "17:00", "enabled": True},
    "thursday": {"start": "09:00", "end": "17:00", "enabled": True},
    "friday": {"start": "09:00", "end": "17:00", "enabled": True},
    "saturday": {"start": "09:00", "end": "13:00", "enabled": False},
    "sunday": {"start": "09:00", "end": "17:00", "enabled": False},
}


class PolicyValidationError(ValueError):
    """Raised when stored or submitted policy values are malformed."""
    pass


@dataclass(frozen=True)
class WorkingDay:
    start: time
    end: time
    enabled: bool = True


@dataclass(frozen=True)
class BookingRules:
    enable_online_booking: bool = True
    require_confirmation: bool = False
    buffer_time_minutes: int = 15
    # None or 0 means unlimited
    max_advance_booking_days: int | None = 30


@dataclass(frozen=True)
class CancellationRules:
    allow_cancellation: bool = True
    deadline_hours: int = 24
    refund_policy: str = REFUND_FULL
    partial_refund_percentage: int = 50
    require_reason: bool = True


@dataclass(frozen=True)
class PaymentRules:
    accept_cash: bool = True
    accept_online: bool = False
    currency: str = "USD"
    require_upfront: bool = False


@dataclass(frozen=True)
class TenantPolicy:
    tenant_id: int
    timezone: str
    working_hours: dict[str, WorkingDay]
    booking: BookingRules = field(default_factory=BookingRules)
    cancellation: CancellationRules = field(default_factory=CancellationRules)
    payment: PaymentRules = field(default_factory=PaymentRules)

    def hours_for(self, day: str) -> WorkingDay | None:
        return self.working_hours.get(day)


# =============================================================================
# PARSING (JSON -> typed)
# =============================================================================

def _expect_bool(section: str, key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise PolicyValidationError(f"{section}.{key}: expected boolean")
    return value


def _expect_int(section: str, key: str, value: Any, *, minimum: int = 0, maximum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PolicyValidationError(f"{section}.{key}: expected integer")
    if value < minimum:
        raise PolicyValidationError(f"{section}.{key}: must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise PolicyValidationError(f"{section}.{key}: must be <= {maximum}")
    return value


def _reject_unknown(section: str, raw: dict, allowed) -> None:
    unknown = sorted(set(raw) - set(allowed))
    if unknown:
        raise PolicyValidationError(f"{section}: unknown keys {', '.join(unknown)}")


def parse_working_hours(raw: Any) -> dict[str, WorkingDay]:
    if raw is None:
        raw = DEFAULT_WORKING_HOURS
    if not isinstance(raw, dict):
        raise PolicyValidationError("working_hours: expected an object keyed by weekday")
    _reject_unknown("working_hours", raw, DAY_NAMES)

    days: dict[str, WorkingDay] = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise PolicyValidationError(f"working_hours.{name}: expected an object")
        _reject_unknown(f"working_hours.{name}", entry, ("start", "end", "enabled"))
        start = entry.get("start")
        end = entry.get("end")
        if not isinstance(start, str) or not HHMM_RE.match(start):
            raise PolicyValidationError(f"working_hours.{name}.start: expected HH:MM")
        if not isinstance(end, str) or not HHMM_RE.match(end):
            raise PolicyValidationError(f"working_hours.{name}.end: expected HH:MM")
        enabled = _expect_bool(f"working_hours.{name}", "enabled", entry.get("enabled", True))
        start_t, end_t = parse_hhmm(start), parse_hhmm(end)
        if enabled and start_t >= end_t:
            raise PolicyValidationError(f"working_hours.{name}: start must be before end")
        days[name] = WorkingDay(start=start_t, end=end_t, enabled=enabled)
    return days


def parse_booking_rules(raw: Any) -> BookingRules:
    if raw is None:
        return BookingRules()
    if not isinstance(raw, dict):
        raise PolicyValidationError("booking_rules: expected an object")
    _reject_unknown("booking_rules", raw, BookingRules.__dataclass_fields__)
    defaults = BookingRules()
    max_advance = raw.get("max_advance_booking_days", defaults.max_advance_booking_days)
    if max_advance is not None:
        max_advance = _expect_int("booking_rules", "max_advance_booking_days", max_advance, maximum=3650)
    return BookingRules(
        enable_online_booking=_expect_bool(
            "booking_rules", "enable_online_booking",
            raw.get("enable_online_booking", defaults.enable_online_booking),
        ),
        require_confirmation=_expect_bool(
            "booking_rules", "require_confirmation",
            raw.get("require_confirmation", defaults.require_confirmation),
        ),
        buffer_time_minutes=_expect_int(
            "booking_rules", "buffer_time_minutes",
            raw.get("buffer_time_minutes", defaults.buffer_time_minutes), maximum=24 * 60,
        ),
        max_advance_booking_days=max_advance or None,
    )


def parse_cancellation_rules(raw: Any) -> CancellationRules:
    if raw is None:
        return CancellationRules()
    if not isinstance(raw, dict):
        raise PolicyValidationError("cancellation_rules: expected an object")
    _reject_unknown("cancellation_rules", raw, CancellationRules.__dataclass_fields__)
    defaults = CancellationRules()
    refund_policy = raw.get("refund_policy", defaults.refund_policy)
    if refund_policy not in REFUND_POLICIES:
        raise PolicyValidationError(
            f"cancellation_rules.refund_policy: expected one of {', '.join(REFUND_POLICIES)}"
        )
    return CancellationRules(
        allow_cancellation=_expect_bool(
            "cancellation_rules", "allow_cancellation",
            raw.get("allow_cancellation", defaults.allow_cancellation),
        ),
        deadline_hours=_expect_int(
            "cancellation_rules", "deadline_hours",
            raw.get("deadline_hours", defaults.deadline_hours), maximum=24 * 365,
        ),
        refund_policy=refund_policy,
        partial_refund_percentage=_expect_int(
            "cancellation_rules", "partial_refund_percentage",
            raw.get("partial_refund_percentage", defaults.partial_refund_percentage), maximum=100,
        ),
        require_reason=_expect_bool(
            "cancellation_rules", "require_reason",
            raw.get("require_reason", defaults.require_reason),
        ),
    )


def parse_payment_rules(raw: Any) -> PaymentRules:
    if raw is None:
        return PaymentRules()
    if not isinstance(raw, dict):
        raise PolicyValidationError("payment_rules: expected an object")
    _reject_unknown("payment_rules", raw, PaymentRules.__dataclass_fields__)
    defaults = PaymentRules()
    currency = raw.get("currency", defaults.currency)
    if not isinstance(currency, str) or not CURRENCY_RE.match(currency):
        raise PolicyValidationError("payment_rules.currency: expected a 3-letter ISO code")
    rules = PaymentRules(
        accept_cash=_expect_bool("payment_rules", "accept_cash", raw.get("accept_cash", defaults.accept_cash)),
        accept_online=_expect_bool("payment_rules", "accept_online", raw.get("accept_online", defaults.accept_online)),
        currency=currency.upper(),
        require_upfront=_expect_bool(
            "payment_rules", "require_upfront", raw.get("require_upfront", defaults.require_upfront),
        ),
    )
    if not rules.accept_cash and not rules.accept_online:
        raise PolicyValidationError("payment_rules: at least one payment method must be accepted")
    return rules


def build_policy(tenant: Tenant, settings: TenantSettings | None) -> TenantPolicy:
    return TenantPolicy(
        tenant_id=tenant.id,
        timezone=tenant.timezone or "UTC",
        working_hours=parse_working_hours(settings.working_hours if settings else None),
        booking=parse_booking_rules(settings.booking_rules if settings else None),
        cancellation=parse_cancellation_rules(settings.cancellation_rules if settings else None),
        payment=parse_payment_rules(settings.payment_rules if settings else None),
    )


# =============================================================================
# SERIALIZATION (typed -> JSON)
# =============================================================================

def working_hours_to_json(days: dict[str, WorkingDay]) -> dict:
    return {
        name: {"start": format_hhmm(day.start), "end": format_hhmm(day.end), "enabled": day.enabled}
        for name, day in days.items()
    }


def policy_to_dict(policy: TenantPolicy) -> dict:
    return {
        "tenant_id": policy.tenant_id,
        "timezone": policy.timezone,
        "working_hours": working_hours_to_json(policy.working_hours),
        "booking_rules": asdict(policy.booking),
        "cancellation_rules": asdict(policy.cancellation),
        "payment_rules": asdict(policy.payment),
    }


def default_settings_json() -> dict:
    return {
        "working_hours": copy.deepcopy(DEFAULT_WORKING_HOURS),
        "booking_rules": asdict(BookingRules()),
        "cancellation_rules": asdict(CancellationRules()),
        "payment_rules": asdict(PaymentRules()),
    }


# =============================================================================
# STORE
# =============================================================================

def _get_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise PolicyValidationError(f"Tenant {tenant_id} not found")
    return tenant


def ensure_settings(tenant_id: int, *, commit: bool = True) -> TenantSettings:
    """Return the tenant's settings row, creating it with defaults when absent."""
    settings = db.session.query(TenantSettings).filter_by(tenant_id=tenant_id).first()
    if settings is not None:
        return settings
    settings = TenantSettings(tenant_id=tenant_id, **default_settings_json())
    db.session.add(settings)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return settings


def get_policy(tenant_id: int) -> TenantPolicy:
    """Typed policy for a tenant; sections that were never stored use defaults."""
    tenant = _get_tenant(tenant_id)
    settings = db.session.query(TenantSettings).filter_by(tenant_id=tenant_id).first()
    return build_policy(tenant, settings)


def update_policy(tenant_id: int, patch: dict) -> TenantPolicy:
    """
    Merge a partial policy update onto the stored sections and persist it.

    Args:
        tenant_id: Tenant whose policy is updated
        patch: {"working_hours": {...}, "booking_rules": {...}, ...}; any
            subset of sections, each a partial object

    Raises:
        PolicyValidationError: unknown sections/keys or invalid values.
            Nothing is written when validation fails.
    """
    if not isinstance(patch, dict) or not patch:
        raise PolicyValidationError("Settings patch must be a non-empty object")
    _reject_unknown("settings", patch, SECTIONS)

    def _op():
        tenant = _get_tenant(tenant_id)
        settings = ensure_settings(tenant_id, commit=False)

        merged = {}
        for section in SECTIONS:
            stored = getattr(settings, section)
            current = copy.deepcopy(stored) if stored is not None else default_settings_json()[section]
            update = patch.get(section)
            if update is not None:
                if not isinstance(update, dict):
                    raise PolicyValidationError(f"{section}: expected an object")
                current.update(copy.deepcopy(update))
            merged[section] = current

        # Validate the full merged policy before writing anything
        policy = TenantPolicy(
            tenant_id=tenant.id,
            timezone=tenant.timezone or "UTC",
            working_hours=parse_working_hours(merged["working_hours"]),
            booking=parse_booking_rules(merged["booking_rules"]),
            cancellation=parse_cancellation_rules(merged["cancellation_rules"]),
            payment=parse_payment_rules(merged["payment_rules"]),
        )

        settings.working_hours = working_hours_to_json(policy.working_hours)
        settings.booking_rules = asdict(policy.booking)
        settings.cancellation_rules = asdict(policy.cancellation)
        settings.payment_rules = asdict(policy.payment)
        db.session.commit()
        return policy

    try:
        return run_with_retry(_op)
    except PolicyValidationError:
        db.session.rollback()
        raise

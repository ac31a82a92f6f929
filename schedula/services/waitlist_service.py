# Overview: Waitlist service; client standing requests, status changes and the expiry sweep.

from __future__ import annotations

import re
from datetime import datetime, timedelta

from ..extensions import db
from ..models import Service, User, WaitlistEntry
from ..models.auth import ROLE_ADMIN, ROLE_CLIENT, ROLE_PROVIDER
from ..models.waitlist import (
    WAITLIST_ACTIVE,
    WAITLIST_BOOKED,
    WAITLIST_CANCELLED,
    WAITLIST_EXPIRED,
    WAITLIST_NOTIFIED,
    WAITLIST_STATUSES,
)
from ..validation import parse_datetime_field, parse_id_field, parse_text_field
from schedula.time_utils import utcnow
from .appointment_service import (
    NotAuthorizedError,
    NotFoundError,
    TenantContextMissingError,
    ValidationFailedError,
)
from .notification_service import (
    NOTIFY_WAITLIST_BOOKED,
    NOTIFY_WAITLIST_CANCELLED,
    NOTIFY_WAITLIST_EXPIRED,
    NOTIFY_WAITLIST_JOINED,
    create_in_app_notification,
)


WAITLIST_TTL = timedelta(days=30)
MIN_PRIORITY = 1
MAX_PRIORITY = 10

TIME_SLOT_RE = re.compile(r"^(morning|afternoon|evening|([01]\d|2[0-3]):[0-5]\d-([01]\d|2[0-3]):[0-5]\d)$")

UPDATABLE_FIELDS = {"status", "priority", "notes", "preferred_date", "preferred_time_slot", "flexible_dates", "flexible_times"}


def _priority(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not MIN_PRIORITY <= value <= MAX_PRIORITY:
        raise ValidationFailedError(f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}")
    return value


def _time_slot(value):
    if value in (None, ""):
        return None
    if not isinstance(value, str) or not TIME_SLOT_RE.match(value):
        raise ValidationFailedError("preferred_time_slot must be morning, afternoon, evening or HH:MM-HH:MM")
    return value


def _bool(payload: dict, key: str, default: bool = False) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise ValidationFailedError(f"{key} must be a boolean")
    return value


def _scoped_query(tenant_id: int, actor: User):
    q = db.session.query(WaitlistEntry).filter(WaitlistEntry.tenant_id == tenant_id)
    if actor.role == ROLE_CLIENT:
        q = q.filter(WaitlistEntry.client_id == actor.id)
    elif actor.role == ROLE_PROVIDER:
        q = q.filter(WaitlistEntry.provider_id == actor.id)
    return q


def get_entry(entry_id: int, tenant_id: int | None, actor: User) -> WaitlistEntry:
    """Entries outside the actor's scope are reported as not found."""
    if tenant_id is None:
        raise TenantContextMissingError("Tenant context is required")
    entry = _scoped_query(tenant_id, actor).filter(WaitlistEntry.id == entry_id).first()
    if entry is None:
        raise NotFoundError("Waitlist entry not found")
    return entry


def list_entries(
    tenant_id: int,
    actor: User,
    *,
    status: str | None = None,
    service_id: int | None = None,
    provider_id: int | None = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[WaitlistEntry], int]:
    """Priority high to low, then oldest first."""
    q = _scoped_query(tenant_id, actor)
    if status:
        status = status.upper()
        if status not in WAITLIST_STATUSES:
            raise ValidationFailedError(f"Invalid status '{status}'")
        q = q.filter(WaitlistEntry.status == status)
    if service_id:
        q = q.filter(WaitlistEntry.service_id == service_id)
    if provider_id and actor.role == ROLE_ADMIN:
        q = q.filter(WaitlistEntry.provider_id == provider_id)

    total = q.count()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    items = (
        q.order_by(WaitlistEntry.priority.desc(), WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total


def join_waitlist(tenant_id: int | None, actor: User, payload: dict, *, now: datetime | None = None) -> WaitlistEntry:
    """
    Add the client to a service's waitlist.

    One ACTIVE entry per (client, service, provider). Entries expire after
    30 days. The provider, when named, gets an in-app notification.
    """
    if tenant_id is None:
        raise TenantContextMissingError("Tenant context is required")
    if actor.role != ROLE_CLIENT:
        raise NotAuthorizedError("Only clients can join waitlist")
    if not isinstance(payload, dict):
        raise ValidationFailedError("Invalid JSON payload")
    now = now or utcnow()
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

    if provider_id is not None:
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

    existing = (
        db.session.query(WaitlistEntry.id)
        .filter(
            WaitlistEntry.tenant_id == tenant_id,
            WaitlistEntry.client_id == actor.id,
            WaitlistEntry.service_id == service.id,
            WaitlistEntry.provider_id.is_(None) if provider_id is None else WaitlistEntry.provider_id == provider_id,
            WaitlistEntry.status == WAITLIST_ACTIVE,
        )
        .first()
    )
    if existing is not None:
        raise ValidationFailedError("You are already on the waitlist for this service")

    try:
        preferred_date = parse_datetime_field(payload, "preferred_date", required=False)
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    entry = WaitlistEntry(
        tenant_id=tenant_id,
        client_id=actor.id,
        provider_id=provider_id,
        service_id=service.id,
        preferred_date=preferred_date,
        preferred_time_slot=_time_slot(payload.get("preferred_time_slot")),
        flexible_dates=_bool(payload, "flexible_dates"),
        flexible_times=_bool(payload, "flexible_times"),
        notes=notes,
        status=WAITLIST_ACTIVE,
        priority=_priority(payload.get("priority", MIN_PRIORITY)),
        notification_sent=False,
        expires_at=now + WAITLIST_TTL,
    )
    db.session.add(entry)
    db.session.flush()

    if provider_id is not None:
        create_in_app_notification(
            tenant_id,
            provider_id,
            NOTIFY_WAITLIST_JOINED,
            "New Waitlist Entry",
            f"{actor.name} has joined the waitlist for {service.name}",
            {"waitlist_id": entry.id, "service_name": service.name},
        )
    db.session.commit()
    return entry


def _status_notification(entry: WaitlistEntry, new_status: str, actor: User):
    """(recipient_id, type, message) for a status change, or None."""
    client_name = entry.client.name if entry.client else "A client"
    service_name = entry.service.name if entry.service else "a service"
    if new_status == WAITLIST_BOOKED:
        return (
            entry.provider_id,
            NOTIFY_WAITLIST_BOOKED,
            f"{client_name} has booked an appointment from the waitlist for {service_name}",
        )
    if new_status == WAITLIST_CANCELLED:
        recipient = entry.provider_id if actor.role == ROLE_CLIENT else entry.client_id
        return recipient, NOTIFY_WAITLIST_CANCELLED, f"Waitlist entry for {service_name} has been cancelled"
    if new_status == WAITLIST_EXPIRED:
        return entry.client_id, NOTIFY_WAITLIST_EXPIRED, f"Waitlist entry for {service_name} has expired"
    return None


def update_entry(entry_id: int, tenant_id: int | None, actor: User, patch: dict) -> WaitlistEntry:
    """
    Change status, priority or preferences of an entry.

    NOTIFIED marks notification_sent. BOOKED, CANCELLED and EXPIRED notify
    the provider, the counterparty and the client respectively.
    """
    entry = get_entry(entry_id, tenant_id, actor)
    if not isinstance(patch, dict) or not patch:
        raise ValidationFailedError("Update payload must be a non-empty object")
    unknown = sorted(set(patch) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailedError(f"Field not allowed: {', '.join(unknown)}")

    old_status = entry.status
    new_status = None
    if "status" in patch:
        new_status = str(patch["status"]).upper()
        if new_status not in WAITLIST_STATUSES:
            raise ValidationFailedError(f"Invalid status '{patch['status']}'")
        entry.status = new_status
        if new_status == WAITLIST_NOTIFIED:
            entry.notification_sent = True
    if "priority" in patch:
        entry.priority = _priority(patch["priority"])
    if "preferred_time_slot" in patch:
        entry.preferred_time_slot = _time_slot(patch["preferred_time_slot"])
    try:
        if "notes" in patch:
            entry.notes = parse_text_field(patch, "notes")
        if "preferred_date" in patch:
            entry.preferred_date = parse_datetime_field(patch, "preferred_date", required=False)
    except ValueError as exc:
        raise ValidationFailedError(str(exc))
    for key in ("flexible_dates", "flexible_times"):
        if key in patch:
            setattr(entry, key, _bool(patch, key))

    if new_status and new_status != old_status:
        notice = _status_notification(entry, new_status, actor)
        if notice and notice[0]:
            recipient_id, kind, message = notice
            create_in_app_notification(
                entry.tenant_id,
                recipient_id,
                kind,
                "Waitlist Update",
                message,
                {"waitlist_id": entry.id, "old_status": old_status, "new_status": new_status},
            )
    db.session.commit()
    return entry


def remove_entry(entry_id: int, tenant_id: int | None, actor: User) -> None:
    entry = get_entry(entry_id, tenant_id, actor)
    recipient_id = entry.provider_id if actor.role == ROLE_CLIENT else entry.client_id
    if recipient_id:
        client_name = entry.client.name if entry.client else "A client"
        service_name = entry.service.name if entry.service else "a service"
        create_in_app_notification(
            entry.tenant_id,
            recipient_id,
            NOTIFY_WAITLIST_CANCELLED,
            "Waitlist Entry Removed",
            f"{client_name} has been removed from the waitlist for {service_name}",
            {"waitlist_id": entry.id},
        )
    db.session.delete(entry)
    db.session.commit()


def expire_entries(*, now: datetime | None = None, tenant_id: int | None = None) -> int:
    """
    Mark ACTIVE entries past expires_at as EXPIRED and notify their clients.

    Returns the number of entries expired.
    """
    now = now or utcnow()
    q = db.session.query(WaitlistEntry).filter(
        WaitlistEntry.status == WAITLIST_ACTIVE,
        WaitlistEntry.expires_at.isnot(None),
        WaitlistEntry.expires_at <= now,
    )
    if tenant_id is not None:
        q = q.filter(WaitlistEntry.tenant_id == tenant_id)

    expired = q.all()
    for entry in expired:
        entry.status = WAITLIST_EXPIRED
        service_name = entry.service.name if entry.service else "a service"
        create_in_app_notification(
            entry.tenant_id,
            entry.client_id,
            NOTIFY_WAITLIST_EXPIRED,
            "Waitlist Update",
            f"Waitlist entry for {service_name} has expired",
            {"waitlist_id": entry.id},
        )
    db.session.commit()
    return len(expired)

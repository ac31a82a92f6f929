# Overview: Multi-tenant service; tenant registration, tenant context resolution and scoping checks.

"""
Multi-Tenant Service: Registration, Tenant Context and Scoping Helpers

SECURITY INVARIANTS:
1. Every authenticated request has g.tenant_id set from the session
2. Public requests name their tenant in the X-Tenant-Id header (slug or id)
3. User ids from client input are validated against the tenant before use
4. Records of another tenant are reported as "not found", never "forbidden"
"""

from __future__ import annotations

import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Tenant, TenantSettings, User
from ..models.auth import ROLE_ADMIN, ROLE_PROVIDER
from ..validation import ConflictError, ValidationError
from .auth_service import create_user
from .policy_service import default_settings_json


SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,62}[a-z0-9])?$")

TENANT_HEADER = "X-Tenant-Id"


class TenantAccessError(Exception):
    """Raised when tenant context is missing or cross-tenant access is attempted."""
    pass


def resolve_tenant(handle: str | None) -> Tenant | None:
    """Active tenant by slug, or by numeric id; None when unknown."""
    if not handle:
        return None
    handle = handle.strip()
    q = db.session.query(Tenant).filter(Tenant.is_active.is_(True))
    if handle.isdigit():
        tenant = q.filter(Tenant.id == int(handle)).first()
        if tenant is not None:
            return tenant
    return q.filter(Tenant.slug == handle.lower()).first()


def require_user_in_tenant(user_id, tenant_id: int, roles=None, *, active_only: bool = False) -> User:
    """
    Load a user of this tenant or raise TenantAccessError.

    user_id may come straight from a query string; anything that is not a
    whole number is treated as an unknown user.
    """
    if isinstance(user_id, str) and user_id.strip().isdigit():
        user_id = int(user_id)
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise TenantAccessError("User not found")
    user = db.session.query(User).filter_by(id=user_id, tenant_id=tenant_id).first()
    if user is None or (roles and user.role not in roles) or (active_only and not user.is_active):
        raise TenantAccessError("User not found")
    return user


def list_providers(tenant_id: int) -> list[User]:
    return (
        db.session.query(User)
        .filter(
            User.tenant_id == tenant_id,
            User.role.in_((ROLE_PROVIDER, ROLE_ADMIN)),
            User.is_active.is_(True),
        )
        .order_by(User.name.asc())
        .all()
    )


def _validate_timezone(tz_name: str) -> str:
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone '{tz_name}'")
    return tz_name


def register_tenant(
    *,
    name: str,
    slug: str,
    admin_email: str,
    admin_name: str,
    admin_password: str,
    timezone: str = "UTC",
    email: str | None = None,
) -> tuple[Tenant, User]:
    """
    Create a tenant, its admin account and its policy row with defaults.

    Everything is written in one transaction.

    Raises:
        ValidationError: bad name, slug or timezone (and admin account problems)
        ConflictError: slug already taken
    """
    if not name or not str(name).strip():
        raise ValidationError("Business name is required")
    slug = (slug or "").strip().lower()
    if not SLUG_RE.match(slug):
        raise ValidationError("slug must be 3-64 lowercase letters, digits or hyphens")
    timezone = _validate_timezone(timezone or "UTC")

    if db.session.query(Tenant.id).filter_by(slug=slug).first() is not None:
        raise ConflictError(f"Tenant slug '{slug}' is already taken")

    try:
        tenant = Tenant(name=str(name).strip(), slug=slug, timezone=timezone, email=email, is_active=True)
        db.session.add(tenant)
        db.session.flush()

        db.session.add(TenantSettings(tenant_id=tenant.id, **default_settings_json()))
        admin = create_user(
            tenant.id,
            admin_email,
            admin_name,
            admin_password,
            ROLE_ADMIN,
            commit=False,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Tenant slug '{slug}' is already taken")
    except Exception:
        db.session.rollback()
        raise
    return tenant, admin


def set_payment_account(tenant_id: int, account_id: str | None) -> TenantSettings:
    settings = db.session.query(TenantSettings).filter_by(tenant_id=tenant_id).first()
    if settings is None:
        raise TenantAccessError("Tenant not found")
    settings.payment_account_id = account_id or None
    db.session.commit()
    return settings


def list_tenants(include_inactive: bool = False) -> list[Tenant]:
    q = db.session.query(Tenant)
    if not include_inactive:
        q = q.filter(Tenant.is_active.is_(True))
    return q.order_by(Tenant.id.asc()).all()

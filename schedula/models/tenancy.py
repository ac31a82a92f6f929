from __future__ import annotations

from ..extensions import db
from schedula.time_utils import to_utc_z


class Tenant(db.Model):
    """
    Multi-tenant root: every business using the platform is a Tenant.

    WHY: Shared-database multi-tenancy with strict isolation.
    Users, services, appointments and policy all belong to exactly one tenant.

    DESIGN:
    - slug is the public handle resolved from the X-Tenant-Id header / subdomain
    - timezone is the wall-clock used for working hours and slot labels
    """
    __tablename__ = "tenants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=True)
    timezone = db.Column(db.String(64), nullable=False, default="UTC")

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} slug={self.slug!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "email": self.email,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class TenantSettings(db.Model):
    """
    Persisted tenant policy: one row per tenant, four JSON sections.

    The raw JSON is never read directly by booking code. policy_service parses
    it into a typed TenantPolicy with per-field defaults and validates patches
    before they are written back.
    """
    __tablename__ = "tenant_settings"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", name="uq_tenant_settings_tenant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    working_hours = db.Column(db.JSON, nullable=True)
    booking_rules = db.Column(db.JSON, nullable=True)
    cancellation_rules = db.Column(db.JSON, nullable=True)
    payment_rules = db.Column(db.JSON, nullable=True)

    # Stripe Connect destination account for online payments
    payment_account_id = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("settings", uselist=False, cascade="all, delete-orphan"))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "working_hours": self.working_hours,
            "booking_rules": self.booking_rules,
            "cancellation_rules": self.cancellation_rules,
            "payment_rules": self.payment_rules,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }

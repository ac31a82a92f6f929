from __future__ import annotations

from ..extensions import db
from schedula.time_utils import to_utc_z


class Service(db.Model):
    """
    A bookable service offered by a tenant.

    duration_minutes drives the default end time of a booking; price_cents is
    copied onto the appointment as the amount due.
    """
    __tablename__ = "services"
    __table_args__ = (
        db.Index("ix_services_tenant_active", "tenant_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Default provider used when a request does not name one
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    image_url = db.Column(db.String(1024), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("services", lazy=True, cascade="all, delete-orphan"))
    provider = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "duration_minutes": self.duration_minutes,
            "price_cents": self.price_cents,
            "provider_id": self.provider_id,
            "image_url": self.image_url,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }

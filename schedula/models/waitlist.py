from __future__ import annotations

from ..extensions import db
from schedula.time_utils import to_utc_z


WAITLIST_ACTIVE = "ACTIVE"
WAITLIST_NOTIFIED = "NOTIFIED"
WAITLIST_BOOKED = "BOOKED"
WAITLIST_CANCELLED = "CANCELLED"
WAITLIST_EXPIRED = "EXPIRED"
WAITLIST_STATUSES = {WAITLIST_ACTIVE, WAITLIST_NOTIFIED, WAITLIST_BOOKED, WAITLIST_CANCELLED, WAITLIST_EXPIRED}


class WaitlistEntry(db.Model):
    """
    A client's standing request for a slot that is currently unavailable.

    Status changes are manual or externally triggered; nothing in the booking
    core matches freed slots to entries automatically.
    """
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        db.Index("ix_waitlist_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False)

    preferred_date = db.Column(db.DateTime, nullable=True)
    # "morning", "afternoon", "evening" or "HH:MM-HH:MM"
    preferred_time_slot = db.Column(db.String(32), nullable=True)
    flexible_dates = db.Column(db.Boolean, nullable=False, default=False)
    flexible_times = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=WAITLIST_ACTIVE)
    priority = db.Column(db.Integer, nullable=False, default=1)
    notification_sent = db.Column(db.Boolean, nullable=False, default=False)
    expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    client = db.relationship("User", foreign_keys=[client_id])
    provider = db.relationship("User", foreign_keys=[provider_id])
    service = db.relationship("Service")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "provider_id": self.provider_id,
            "service_id": self.service_id,
            "preferred_date": to_utc_z(self.preferred_date),
            "preferred_time_slot": self.preferred_time_slot,
            "flexible_dates": self.flexible_dates,
            "flexible_times": self.flexible_times,
            "notes": self.notes,
            "status": self.status,
            "priority": self.priority,
            "notification_sent": self.notification_sent,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }

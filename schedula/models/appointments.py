from __future__ import annotations

from ..extensions import db
from schedula.time_utils import to_utc_z


STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
VALID_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED, STATUS_COMPLETED, STATUS_CANCELLED}

# Only these block a provider's time
BLOCKING_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED)

PAYMENT_METHOD_CASH = "CASH"
PAYMENT_METHOD_ONLINE = "ONLINE"
VALID_PAYMENT_METHODS = {PAYMENT_METHOD_CASH, PAYMENT_METHOD_ONLINE}

PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"

REFUND_STATUS_FAILED = "FAILED"

FREQUENCIES = ("DAILY", "WEEKLY", "BIWEEKLY", "MONTHLY", "QUARTERLY", "YEARLY")


class Appointment(db.Model):
    """
    A concrete booking of a provider's time for a service.

    STATE MACHINE:
        PENDING -> CONFIRMED -> COMPLETED
        PENDING | CONFIRMED -> CANCELLED

    PAYMENT SUB-STATE (independent):
        PENDING -> PAID | FAILED
        PAID -> REFUNDED (only via cancellation)

    INVARIANTS:
    - start_time < end_time, interval is half-open [start_time, end_time)
    - no two PENDING/CONFIRMED appointments of one provider overlap
      (enforced by appointment_service under a per-provider write lock)
    - status CANCELLED implies cancelled_at is set
    - refund_amount_cents / refund_reason only set when a refund was issued
    """
    __tablename__ = "appointments"
    __table_args__ = (
        db.CheckConstraint("start_time < end_time", name="ck_appointments_interval"),
        db.Index("ix_appointments_provider_window", "tenant_id", "provider_id", "start_time", "end_time"),
        db.Index("ix_appointments_client", "tenant_id", "client_id"),
        db.Index("ix_appointments_recurring", "recurring_appointment_id", "start_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False)

    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)
    notes = db.Column(db.Text, nullable=True)

    payment_method = db.Column(db.String(16), nullable=False, default=PAYMENT_METHOD_CASH)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)
    payment_amount_cents = db.Column(db.Integer, nullable=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    charge_id = db.Column(db.String(255), nullable=True)

    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    refund_amount_cents = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.Text, nullable=True)
    refund_status = db.Column(db.String(16), nullable=True)

    recurring_appointment_id = db.Column(
        db.Integer,
        db.ForeignKey("recurring_appointments.id", ondelete="SET NULL"),
        nullable=True,
    )
    calendar_event_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("appointments", lazy=True, cascade="all, delete-orphan"))
    client = db.relationship("User", foreign_keys=[client_id])
    provider = db.relationship("User", foreign_keys=[provider_id])
    service = db.relationship("Service")

    def __repr__(self) -> str:
        return f"<Appointment id={self.id} provider_id={self.provider_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "provider_id": self.provider_id,
            "service_id": self.service_id,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "status": self.status,
            "notes": self.notes,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_amount_cents": self.payment_amount_cents,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "refund_amount_cents": self.refund_amount_cents,
            "refund_reason": self.refund_reason,
            "refund_status": self.refund_status,
            "recurring_appointment_id": self.recurring_appointment_id,
            "calendar_event_id": self.calendar_event_id,
            "service": {"id": self.service.id, "name": self.service.name} if self.service else None,
            "provider": {"id": self.provider.id, "name": self.provider.name} if self.provider else None,
            "client": {"id": self.client.id, "name": self.client.name, "email": self.client.email} if self.client else None,
        }


class RecurringAppointment(db.Model):
    """
    Recurrence rule that generates a series of concrete appointments.

    The rule never holds pointers to its instances; they are found by
    Appointment.recurring_appointment_id.
    """
    __tablename__ = "recurring_appointments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False)

    frequency = db.Column(db.String(16), nullable=False)
    interval = db.Column(db.Integer, nullable=False, default=1)
    # 0 = Sunday ... 6 = Saturday
    days_of_week = db.Column(db.JSON, nullable=True)
    day_of_month = db.Column(db.Integer, nullable=True)

    start_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.String(5), nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    max_occurrences = db.Column(db.Integer, nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    payment_method = db.Column(db.String(16), nullable=False, default="CASH")
    payment_amount_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    client = db.relationship("User", foreign_keys=[client_id])
    provider = db.relationship("User", foreign_keys=[provider_id])
    service = db.relationship("Service")

    def to_dict(self, include_instances: bool = False) -> dict:
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "provider_id": self.provider_id,
            "service_id": self.service_id,
            "frequency": self.frequency,
            "interval": self.interval,
            "days_of_week": self.days_of_week,
            "day_of_month": self.day_of_month,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "start_time": self.start_time,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "max_occurrences": self.max_occurrences,
            "duration_minutes": self.duration_minutes,
            "notes": self.notes,
            "payment_method": self.payment_method,
            "payment_amount_cents": self.payment_amount_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
        if include_instances:
            instances = (
                db.session.query(Appointment)
                .filter_by(recurring_appointment_id=self.id)
                .order_by(Appointment.start_time.asc())
                .all()
            )
            data["appointments"] = [a.to_dict() for a in instances]
        return data


class PaymentEvent(db.Model):
    """
    Ledger of processed payment-gateway webhook events.

    WHY: Gateways deliver at-least-once. A unique event_id makes a replayed
    delivery a no-op instead of a second state transition.
    """
    __tablename__ = "payment_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    appointment_id = db.Column(db.Integer, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=False)

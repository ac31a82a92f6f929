# Overview: Flask API routes for appointment booking, availability and lifecycle transitions.

# schedula/routes/appointments.py
"""
Appointment API routes

Public (tenant from X-Tenant-Id header):
- POST /api/appointments/public
- GET  /api/appointments/availability?providerId=&date=
- GET  /api/appointments/check-availability?providerId=&startTime=&endTime=
- GET  /api/appointments/<id>/payment-status

Authenticated (tenant from session):
- POST /api/appointments
- GET  /api/appointments
- GET  /api/appointments/<id>
- POST /api/appointments/<id>/cancel | confirm | complete | reschedule

Every lifecycle rejection carries its own HTTP status (AppointmentError.status_code).
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..models.auth import ROLE_ADMIN, ROLE_CLIENT, ROLE_PROVIDER
from ..services import appointment_service
from ..services.appointment_service import AppointmentError, parse_booking_request
from ..services.availability_service import get_available_slots
from ..services.conflict_service import has_conflict
from ..services.policy_service import get_policy
from ..services.tenant_service import require_user_in_tenant, TenantAccessError
from schedula.time_utils import parse_date, parse_iso_datetime
from ..decorators import require_auth, require_role, public_tenant


appointments_bp = Blueprint("appointments", __name__, url_prefix="/api/appointments")


def _arg(*names):
    """First non-empty query arg among camelCase / snake_case spellings."""
    for name in names:
        value = request.args.get(name)
        if value:
            return value
    return None


def _error(e: AppointmentError):
    return jsonify({"error": e.message}), e.status_code


def _booking_response(appointment, status_code=201):
    return jsonify({
        "appointment": appointment.to_dict(),
        "message": appointment_service.booking_message(appointment),
        "requires_payment": appointment.payment_method == "ONLINE",
    }), status_code


# =============================================================================
# PUBLIC
# =============================================================================

@appointments_bp.post("/public")
@public_tenant
def create_public_appointment_route():
    """
    Book without an account (booking widget).

    Request body:
    {
        "service_id": 3,
        "provider_id": 2,            // optional, defaults to the service's provider
        "start_time": "2026-05-04T14:00:00Z",
        "end_time": "2026-05-04T15:00:00Z",   // optional, service duration
        "client_name": "Jane Doe",
        "client_email": "jane@example.com",
        "client_phone": "+1 555 0100",
        "notes": "First visit",
        "payment_method": "CASH"     // or ONLINE
    }

    Returns:
        201: appointment, message, requires_payment
        400: Invalid input or tenant policy rejection
        403: Online booking disabled
        404: Service or provider not found
        409: Time slot taken
    """
    try:
        booking = parse_booking_request(request.get_json(silent=True))
        appointment = appointment_service.create_appointment(g.tenant_id, booking, public=True)
        return _booking_response(appointment)

    except AppointmentError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create public appointment")
        return jsonify({"error": "Internal server error"}), 500


@appointments_bp.get("/availability")
@public_tenant
def availability_route():
    """
    Full-day slot report for one provider.

    Returns a chronological list of {"time", "available", "datetime"}; an
    empty list when the provider does not work that day.
    """
    provider_id = _arg("providerId", "provider_id")
    raw_date = _arg("date")
    if not provider_id or not raw_date:
        return jsonify({"error": "Provider ID and date are required"}), 400

    try:
        day = parse_date(raw_date)
    except ValueError:
        return jsonify({"error": "Invalid date format"}), 400

    try:
        provider = require_user_in_tenant(
            provider_id, g.tenant_id, roles={ROLE_PROVIDER, ROLE_ADMIN}, active_only=True
        )
    except TenantAccessError:
        return jsonify({"error": "Provider not found"}), 404

    try:
        policy = get_policy(g.tenant_id)
        slots = get_available_slots(
            policy,
            provider.id,
            day,
            slot_minutes=current_app.config.get("SLOT_MINUTES", 30),
        )
        return jsonify([s.to_dict() for s in slots]), 200
    except Exception:
        current_app.logger.exception("Failed to compute availability")
        return jsonify({"error": "Internal server error"}), 500


@appointments_bp.get("/check-availability")
@public_tenant
def check_availability_route():
    provider_id = _arg("providerId", "provider_id")
    raw_start = _arg("startTime", "start_time")
    raw_end = _arg("endTime", "end_time")
    if not provider_id or not raw_start or not raw_end:
        return jsonify({"error": "Missing required parameters: providerId, startTime, endTime"}), 400

    try:
        start = parse_iso_datetime(raw_start)
        end = parse_iso_datetime(raw_end)
    except ValueError:
        return jsonify({"error": "Invalid datetime format"}), 400
    if end <= start:
        return jsonify({"error": "endTime must be after startTime"}), 400

    try:
        provider = require_user_in_tenant(
            provider_id, g.tenant_id, roles={ROLE_PROVIDER, ROLE_ADMIN}, active_only=True
        )
    except TenantAccessError:
        return jsonify({"error": "Provider not found"}), 404

    if has_conflict(provider.id, g.tenant_id, start, end):
        return jsonify({"error": "Time slot is not available"}), 409
    return jsonify({"available": True}), 200


@appointments_bp.get("/<int:appointment_id>/payment-status")
@public_tenant
def payment_status_route(appointment_id: int):
    try:
        return jsonify({"appointment": appointment_service.get_payment_status(appointment_id, g.tenant_id)}), 200
    except AppointmentError as e:
        return _error(e)


# =============================================================================
# AUTHENTICATED
# =============================================================================

@appointments_bp.post("")
@require_auth
def create_appointment_route():
    """
    Book as a signed-in user.

    Clients book for themselves (client_* fields come from the account).
    Providers and admins book on behalf of a client and must pass
    client_name / client_email.
    """
    try:
        client = g.current_user if g.current_user.role == ROLE_CLIENT else None
        booking = parse_booking_request(request.get_json(silent=True), client=client)
        appointment = appointment_service.create_appointment(g.tenant_id, booking)
        return _booking_response(appointment)

    except AppointmentError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create appointment")
        return jsonify({"error": "Internal server error"}), 500


@appointments_bp.get("")
@require_auth
def list_appointments_route():
    try:
        date_from = parse_iso_datetime(_arg("from", "date_from"))
        date_to = parse_iso_datetime(_arg("to", "date_to"))
    except ValueError:
        return jsonify({"error": "Invalid date filter"}), 400

    try:
        items, total = appointment_service.list_appointments(
            g.tenant_id,
            g.current_user,
            status=(_arg("status") or "").upper() or None,
            date_from=date_from,
            date_to=date_to,
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
    except AppointmentError as e:
        return _error(e)

    return jsonify({
        "items": [a.to_dict() for a in items],
        "count": len(items),
        "total": total,
    }), 200


@appointments_bp.get("/<int:appointment_id>")
@require_auth
def get_appointment_route(appointment_id: int):
    try:
        appointment = appointment_service.get_appointment(appointment_id, g.tenant_id, g.current_user)
        return jsonify({"appointment": appointment.to_dict()}), 200
    except AppointmentError as e:
        return _error(e)


@appointments_bp.post("/<int:appointment_id>/cancel")
@require_auth
def cancel_appointment_route(appointment_id: int):
    """
    Cancel an appointment and refund per the tenant's cancellation policy.

    Request body: {"reason": "Schedule conflict"}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = appointment_service.cancel_appointment(
            appointment_id,
            g.tenant_id,
            g.current_user,
            data.get("reason"),
        )
        appointment = result.appointment
        return jsonify({
            "success": True,
            "message": "Appointment cancelled successfully",
            "appointment": {
                "id": appointment.id,
                "status": appointment.status,
                "cancelled_at": appointment.to_dict()["cancelled_at"],
                "refund_amount_cents": result.refund_amount_cents,
                "refund_status": result.refund_status,
            },
        }), 200

    except AppointmentError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to cancel appointment")
        return jsonify({"error": "Internal server error"}), 500


@appointments_bp.post("/<int:appointment_id>/confirm")
@require_auth
@require_role(ROLE_PROVIDER, ROLE_ADMIN)
def confirm_appointment_route(appointment_id: int):
    try:
        appointment = appointment_service.confirm_appointment(appointment_id, g.tenant_id, g.current_user)
        return jsonify({"appointment": appointment.to_dict()}), 200
    except AppointmentError as e:
        return _error(e)


@appointments_bp.post("/<int:appointment_id>/complete")
@require_auth
@require_role(ROLE_PROVIDER, ROLE_ADMIN)
def complete_appointment_route(appointment_id: int):
    try:
        appointment = appointment_service.complete_appointment(appointment_id, g.tenant_id, g.current_user)
        return jsonify({"appointment": appointment.to_dict()}), 200
    except AppointmentError as e:
        return _error(e)


@appointments_bp.post("/<int:appointment_id>/reschedule")
@require_auth
def reschedule_appointment_route(appointment_id: int):
    """Request body: {"start_time": "...", "end_time": "..."} (end_time optional)."""
    data = request.get_json(silent=True) or {}
    try:
        start = parse_iso_datetime(data.get("start_time"))
        end = parse_iso_datetime(data.get("end_time"))
    except (ValueError, AttributeError):
        return jsonify({"error": "Invalid datetime format"}), 400
    if start is None:
        return jsonify({"error": "start_time is required"}), 400

    try:
        appointment = appointment_service.reschedule_appointment(
            appointment_id, g.tenant_id, g.current_user, start, end
        )
        return jsonify({"appointment": appointment.to_dict()}), 200

    except AppointmentError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to reschedule appointment")
        return jsonify({"error": "Internal server error"}), 500

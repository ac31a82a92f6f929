# Overview: Flask API routes for the waitlist; clients join, staff manage entry status.

# schedula/routes/waitlist.py
"""
Waitlist routes (role-scoped: clients see their entries, providers theirs, admins all)

- POST   /api/waitlist         CLIENT joins a service's waitlist
- GET    /api/waitlist         ?status=&service_id=&provider_id=&page=&per_page=
- GET    /api/waitlist/<id>
- PUT    /api/waitlist/<id>    status / priority / preferences
- DELETE /api/waitlist/<id>
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import waitlist_service
from ..services.appointment_service import AppointmentError
from ..decorators import require_auth


waitlist_bp = Blueprint("waitlist", __name__, url_prefix="/api/waitlist")


@waitlist_bp.post("")
@require_auth
def join_waitlist_route():
    """
    Request body:
    {
        "service_id": 3,
        "provider_id": 2,                  // optional
        "preferred_date": "2026-05-04T00:00:00Z",
        "preferred_time_slot": "morning",  // or "09:00-12:00"
        "flexible_dates": true,
        "flexible_times": false,
        "priority": 1,                     // 1-10
        "notes": "..."
    }
    """
    try:
        entry = waitlist_service.join_waitlist(g.tenant_id, g.current_user, request.get_json(silent=True))
        return jsonify({"entry": entry.to_dict(), "message": "Successfully joined waitlist"}), 201

    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to join waitlist")
        return jsonify({"error": "Internal server error"}), 500


@waitlist_bp.get("")
@require_auth
def list_waitlist_route():
    try:
        items, total = waitlist_service.list_entries(
            g.tenant_id,
            g.current_user,
            status=request.args.get("status"),
            service_id=request.args.get("service_id", type=int),
            provider_id=request.args.get("provider_id", type=int),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 10, type=int),
        )
    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code

    return jsonify({
        "items": [entry.to_dict() for entry in items],
        "count": len(items),
        "total": total,
    }), 200


@waitlist_bp.get("/<int:entry_id>")
@require_auth
def get_waitlist_entry_route(entry_id: int):
    try:
        entry = waitlist_service.get_entry(entry_id, g.tenant_id, g.current_user)
        return jsonify({"entry": entry.to_dict()}), 200
    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code


@waitlist_bp.put("/<int:entry_id>")
@require_auth
def update_waitlist_entry_route(entry_id: int):
    try:
        entry = waitlist_service.update_entry(
            entry_id, g.tenant_id, g.current_user, request.get_json(silent=True)
        )
        return jsonify({"entry": entry.to_dict()}), 200

    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update waitlist entry")
        return jsonify({"error": "Internal server error"}), 500


@waitlist_bp.delete("/<int:entry_id>")
@require_auth
def delete_waitlist_entry_route(entry_id: int):
    try:
        waitlist_service.remove_entry(entry_id, g.tenant_id, g.current_user)
        return jsonify({"message": "Waitlist entry removed"}), 200
    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code

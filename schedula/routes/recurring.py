# Overview: Flask API routes for recurring appointment series; create, inspect, update and delete.

# schedula/routes/recurring.py
"""
Recurring appointment routes

- POST   /api/recurring-appointments        client creates a series; instances are booked now
- GET    /api/recurring-appointments        role-scoped list (?is_active=true|false)
- GET    /api/recurring-appointments/<id>
- PUT    /api/recurring-appointments/<id>   notes / is_active / end_date / max_occurrences
- DELETE /api/recurring-appointments/<id>   cancels future instances, then deletes the rule
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import recurring_service
from ..services.appointment_service import AppointmentError
from ..decorators import require_auth


recurring_bp = Blueprint("recurring", __name__, url_prefix="/api/recurring-appointments")


@recurring_bp.post("")
@require_auth
def create_recurring_route():
    """
    Request body:
    {
        "service_id": 3,
        "provider_id": 2,                 // optional
        "frequency": "WEEKLY",            // DAILY | WEEKLY | BIWEEKLY | MONTHLY | QUARTERLY | YEARLY
        "interval": 1,
        "days_of_week": [1, 3],           // 0 = Sunday
        "day_of_month": null,
        "start_date": "2026-05-04",
        "end_date": "2026-07-31",         // optional
        "max_occurrences": 10,            // optional
        "start_time": "14:00",            // tenant-local wall clock
        "duration_minutes": 60,           // optional, service duration
        "notes": "..."
    }

    Returns:
        201: {"recurring_appointment", "created", "skipped"}
    """
    try:
        result = recurring_service.create_recurring(
            g.tenant_id,
            g.current_user,
            request.get_json(silent=True),
        )
        body = result.to_dict()
        body["message"] = f"Created recurring appointment with {len(result.created)} instances"
        return jsonify(body), 201

    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create recurring appointment")
        return jsonify({"error": "Internal server error"}), 500


@recurring_bp.get("")
@require_auth
def list_recurring_route():
    raw_active = request.args.get("is_active")
    is_active = None
    if raw_active is not None:
        if raw_active not in ("true", "false"):
            return jsonify({"error": "is_active must be true or false"}), 400
        is_active = raw_active == "true"

    items, total = recurring_service.list_recurring(
        g.tenant_id,
        g.current_user,
        is_active=is_active,
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 10, type=int),
    )
    return jsonify({
        "items": [r.to_dict() for r in items],
        "count": len(items),
        "total": total,
    }), 200


@recurring_bp.get("/<int:rule_id>")
@require_auth
def get_recurring_route(rule_id: int):
    try:
        rule = recurring_service.get_recurring(rule_id, g.tenant_id, g.current_user)
        return jsonify({"recurring_appointment": rule.to_dict(include_instances=True)}), 200
    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code


@recurring_bp.put("/<int:rule_id>")
@require_auth
def update_recurring_route(rule_id: int):
    try:
        rule, cancelled = recurring_service.update_recurring(
            rule_id,
            g.tenant_id,
            g.current_user,
            request.get_json(silent=True),
        )
        return jsonify({
            "recurring_appointment": rule.to_dict(),
            "cancelled_instances": cancelled,
        }), 200

    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update recurring appointment")
        return jsonify({"error": "Internal server error"}), 500


@recurring_bp.delete("/<int:rule_id>")
@require_auth
def delete_recurring_route(rule_id: int):
    try:
        cancelled = recurring_service.delete_recurring(rule_id, g.tenant_id, g.current_user)
        return jsonify({
            "message": "Recurring appointment deleted",
            "cancelled_instances": cancelled,
        }), 200

    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete recurring appointment")
        return jsonify({"error": "Internal server error"}), 500

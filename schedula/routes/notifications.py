# schedula/routes/notifications.py
"""
In-app notification feed for the signed-in user.
"""

from flask import Blueprint, request, jsonify, g

from ..services import notification_service
from ..decorators import require_auth


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_auth
def list_notifications_route():
    unread_only = request.args.get("unread_only") == "true"
    limit = min(max(request.args.get("limit", 50, type=int), 1), 200)
    items = notification_service.list_notifications(
        g.tenant_id, g.current_user.id, unread_only=unread_only, limit=limit
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "count": len(items),
        "unread": notification_service.unread_count(g.tenant_id, g.current_user.id),
    }), 200


@notifications_bp.post("/<int:notification_id>/read")
@require_auth
def mark_read_route(notification_id: int):
    notification = notification_service.mark_read(g.tenant_id, g.current_user.id, notification_id)
    if notification is None:
        return jsonify({"error": "Notification not found"}), 404
    return jsonify({"notification": notification.to_dict()}), 200


@notifications_bp.post("/mark-all-read")
@require_auth
def mark_all_read_route():
    updated = notification_service.mark_all_read(g.tenant_id, g.current_user.id)
    return jsonify({"updated": updated}), 200

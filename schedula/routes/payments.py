# Overview: Flask API routes for online payments; payment intents and the gateway webhook.

# schedula/routes/payments.py
"""
Payment API routes

- POST /api/payments/create-intent   authenticated party of the appointment
- POST /api/payments/webhook         gateway callback, signature verified

The webhook always answers 200 once the signature checks out, even for
events it ignores, so the gateway does not retry them.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import appointment_service
from ..services.appointment_service import AppointmentError
from ..services.collaborators import get_collaborators
from ..services.payment_gateway import WebhookVerificationError
from ..decorators import require_auth


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/create-intent")
@require_auth
def create_intent_route():
    """
    Request body: {"appointment_id": 12}

    Returns:
        200: {"client_secret", "payment_intent_id"}
        400: Not payable / payments not configured
        403: Not a party of the appointment
        404: Appointment not found
    """
    data = request.get_json(silent=True) or {}
    appointment_id = data.get("appointment_id")
    if not isinstance(appointment_id, int) or isinstance(appointment_id, bool):
        return jsonify({"error": "appointment_id is required"}), 400

    try:
        result = appointment_service.start_online_payment(appointment_id, g.tenant_id, g.current_user)
        return jsonify(result), 200

    except AppointmentError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment intent")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/webhook")
def webhook_route():
    collaborators = get_collaborators()
    if collaborators.payments is None:
        current_app.logger.warning("Payment webhook received but no gateway is configured")
        return jsonify({"received": True}), 200

    try:
        event = collaborators.payments.parse_webhook(
            request.get_data(),
            request.headers.get("Stripe-Signature", ""),
        )
    except WebhookVerificationError as e:
        current_app.logger.warning("Rejected payment webhook: %s", e)
        return jsonify({"error": "Invalid signature"}), 400

    try:
        appointment_service.handle_gateway_event(event, collaborators=collaborators)
        return jsonify({"received": True}), 200
    except Exception:
        current_app.logger.exception("Failed to process payment event %s", event.id)
        return jsonify({"error": "Webhook handler failed"}), 500

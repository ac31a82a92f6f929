# Overview: Flask API routes for tenant registration and policy settings.

# schedula/routes/tenants.py
"""
Tenant API routes

- POST /api/tenants/register       public; creates tenant, admin and default policy
- GET  /api/tenants/settings       any authenticated user of the tenant
- PATCH /api/tenants/settings      ADMIN; partial update of policy sections
- PUT  /api/tenants/payment-account ADMIN; connected payment account id
- GET  /api/tenants/providers      public (X-Tenant-Id) provider directory
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..models.auth import ROLE_ADMIN
from ..services import policy_service, tenant_service
from ..services.auth_service import PasswordValidationError, UserValidationError
from ..services.policy_service import PolicyValidationError
from ..services.session_service import create_session
from ..validation import ValidationError, ConflictError
from ..decorators import require_auth, require_role, public_tenant


tenants_bp = Blueprint("tenants", __name__, url_prefix="/api/tenants")


@tenants_bp.post("/register")
def register_tenant_route():
    """
    Register a business.

    Request body:
    {
        "name": "Acme Salon",
        "slug": "acme-salon",
        "timezone": "America/New_York",
        "email": "hello@acme.example.com",
        "admin": {"name": "Ada", "email": "ada@acme.example.com", "password": "Password123"}
    }

    Returns:
        201: tenant, admin user, policy and a session token for the admin
        400: Invalid input
        409: Slug taken
    """
    try:
        data = request.get_json(silent=True) or {}
        admin = data.get("admin") or {}
        tenant, user = tenant_service.register_tenant(
            name=data.get("name"),
            slug=data.get("slug"),
            timezone=data.get("timezone") or "UTC",
            email=data.get("email"),
            admin_email=admin.get("email") or "",
            admin_name=admin.get("name") or "",
            admin_password=admin.get("password") or "",
        )
        _, token = create_session(user.id, request.headers.get("User-Agent"), request.remote_addr)
        return jsonify({
            "tenant": tenant.to_dict(),
            "user": user.to_dict(),
            "token": token,
            "settings": policy_service.policy_to_dict(policy_service.get_policy(tenant.id)),
        }), 201

    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except (ValidationError, UserValidationError, PasswordValidationError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to register tenant")
        return jsonify({"error": "Internal server error"}), 500


@tenants_bp.get("/settings")
@require_auth
def get_settings_route():
    try:
        policy = policy_service.get_policy(g.tenant_id)
        return jsonify({"settings": policy_service.policy_to_dict(policy)}), 200
    except PolicyValidationError as e:
        current_app.logger.error("Stored policy for tenant %s is invalid: %s", g.tenant_id, e)
        return jsonify({"error": str(e)}), 500


@tenants_bp.patch("/settings")
@require_auth
@require_role(ROLE_ADMIN)
def update_settings_route():
    """
    Patch any subset of working_hours, booking_rules, cancellation_rules,
    payment_rules. Each section is merged onto the stored one.
    """
    try:
        patch = request.get_json(silent=True) or {}
        policy = policy_service.update_policy(g.tenant_id, patch)
        return jsonify({"settings": policy_service.policy_to_dict(policy)}), 200
    except PolicyValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update tenant settings")
        return jsonify({"error": "Internal server error"}), 500


@tenants_bp.put("/payment-account")
@require_auth
@require_role(ROLE_ADMIN)
def set_payment_account_route():
    data = request.get_json(silent=True) or {}
    account_id = data.get("payment_account_id")
    if account_id is not None and not isinstance(account_id, str):
        return jsonify({"error": "payment_account_id must be a string"}), 400
    settings = tenant_service.set_payment_account(g.tenant_id, account_id)
    return jsonify({"payment_account_id": settings.payment_account_id}), 200


@tenants_bp.get("/providers")
@public_tenant
def list_providers_route():
    providers = tenant_service.list_providers(g.tenant_id)
    return jsonify({
        "items": [{"id": p.id, "name": p.name, "role": p.role} for p in providers],
        "count": len(providers),
    }), 200

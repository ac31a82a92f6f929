# Overview: Flask API routes for the service catalog and staff accounts; parses input and returns JSON responses.

# schedula/routes/services.py
"""
Service catalog routes with multi-tenant support.

MULTI-TENANT: All operations are scoped to the caller's tenant (g.tenant_id,
set by @require_auth). The public listing resolves the tenant from the
X-Tenant-Id header instead.

SECURITY:
- Public listing shows active services only
- Writes require the ADMIN role
"""
from flask import Blueprint, request, jsonify, g

from ..models import Service
from ..models.auth import ROLE_ADMIN, ROLE_PROVIDER, VALID_ROLES
from ..services import catalog_service
from ..services.auth_service import create_user, PasswordValidationError, UserValidationError
from ..services.tenant_service import TenantAccessError
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_service,
    ValidationError,
)
from ..decorators import require_auth, require_role, public_tenant

SERVICE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "description", "duration_minutes", "price_cents", "provider_id", "image_url", "is_active"}),
    required_on_create=frozenset({"name", "duration_minutes"}),
    rules=(enforce_rules_service,),
)

services_bp = Blueprint("services", __name__, url_prefix="/api/services")


@services_bp.get("/public")
@public_tenant
def list_public_services():
    return catalog_service.list_services(g.tenant_id, provider_id=request.args.get("provider_id", type=int))


@services_bp.get("")
@require_auth
def list_services():
    include_inactive = request.args.get("include_inactive") == "true" and g.current_user.role == ROLE_ADMIN
    return catalog_service.list_services(
        g.tenant_id,
        include_inactive=include_inactive,
        provider_id=request.args.get("provider_id", type=int),
    )


@services_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_service_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Service, payload=payload, policy=SERVICE_POLICY, partial=False)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        created = catalog_service.create_service(patch, g.tenant_id)
    except TenantAccessError:
        return {"error": "Provider not found"}, 404

    return created, 201


@services_bp.put("/<int:service_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_service_route(service_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Service, payload=payload, policy=SERVICE_POLICY, partial=True)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        updated = catalog_service.update_service(service_id, patch, g.tenant_id)
    except TenantAccessError:
        return {"error": "Provider not found"}, 404

    if updated is None:
        return {"error": "Service not found"}, 404
    return updated, 200


@services_bp.delete("/<int:service_id>")
@require_auth
@require_role(ROLE_ADMIN)
def delete_service_route(service_id: int):
    if not catalog_service.deactivate_service(service_id, g.tenant_id):
        return {"error": "Service not found"}, 404
    return {"ok": True}, 200


@services_bp.post("/staff")
@require_auth
@require_role(ROLE_ADMIN)
def create_staff_route():
    """
    Add a provider (or another admin) to the tenant.

    Request body: {"name", "email", "password", "role": "PROVIDER", "phone"}
    """
    data = request.get_json(silent=True) or {}
    role = (data.get("role") or ROLE_PROVIDER).upper()
    if role not in VALID_ROLES:
        return jsonify({"error": f"Invalid role '{role}'"}), 400
    try:
        user = create_user(
            g.tenant_id,
            data.get("email") or "",
            data.get("name") or "",
            data.get("password") or "",
            role,
            phone=data.get("phone"),
        )
    except (UserValidationError, PasswordValidationError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"user": user.to_dict()}), 201

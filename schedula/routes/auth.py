# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# schedula/routes/auth.py
"""
Authentication API routes

Login is tenant-scoped: the same e-mail can exist in several tenants, so
the caller names the tenant (slug) alongside the credentials.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Request body:
    {
        "tenant": "acme-salon",
        "email": "owner@acme.example.com",
        "password": "Password123"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        tenant = data.get("tenant") or request.headers.get("X-Tenant-Id")
        email = data.get("email")
        password = data.get("password")

        if not all([tenant, email, password]):
            return jsonify({"error": "tenant, email and password required"}), 400

        user = auth_service.authenticate(tenant, email, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "tenant_id": session.tenant_id,
            "expires_at": session.expires_at.isoformat(),
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """Revoke the bearer token."""
    try:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authorization header required"}), 401

        token = auth_header.split(" ", 1)[1]
        if not session_service.revoke_session(token, reason="User logout"):
            return jsonify({"error": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({
        "user": g.current_user.to_dict(),
        "tenant_id": g.tenant_id,
    }), 200

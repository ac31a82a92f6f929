# Overview: Request decorators for API routes; bearer authentication, role checks and public tenant context.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service
from .services.tenant_service import TENANT_HEADER, resolve_tenant


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'tenant_id')


def require_auth(f):
    """
    Require authentication and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.tenant_id: The tenant ID captured by the session
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account or tenant deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.tenant_id = context.tenant_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Allow only the given roles; must be applied after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401
            if g.current_user.role not in roles:
                return jsonify({"error": "Permission denied"}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def public_tenant(f):
    """
    Resolve the tenant of an unauthenticated request from the X-Tenant-Id header.

    Returns 400 when the header is missing and 404 when it names no active
    tenant. Sets g.tenant_id and g.tenant.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        handle = request.headers.get(TENANT_HEADER)
        if not handle:
            return jsonify({"error": "Tenant context is required"}), 400
        tenant = resolve_tenant(handle)
        if tenant is None:
            return jsonify({"error": "Business not found"}), 404
        g.tenant_id = tenant.id
        g.tenant = tenant
        return f(*args, **kwargs)

    return decorated_function

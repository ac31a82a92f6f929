# schedula/routes/uploads.py
"""
Service image uploads.

The browser PUTs the file straight to object storage with a presigned URL;
the returned file_url is then saved as the service's image_url.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..models.auth import ROLE_ADMIN, ROLE_PROVIDER
from ..services.collaborators import get_collaborators
from ..services.storage_service import StorageError
from ..decorators import require_auth, require_role


uploads_bp = Blueprint("uploads", __name__, url_prefix="/api/uploads")


@uploads_bp.post("/presigned-url")
@require_auth
@require_role(ROLE_ADMIN, ROLE_PROVIDER)
def presigned_url_route():
    """
    Request body: {"content_type": "image/png"}

    Returns:
        200: {"upload_url", "key", "file_url", "expires_in"}
        400: Unsupported content type
        503: Storage not configured
    """
    storage = get_collaborators().storage
    if storage is None:
        return jsonify({"error": "File uploads are not configured"}), 503

    data = request.get_json(silent=True) or {}
    content_type = data.get("content_type") or data.get("contentType")
    if not content_type:
        return jsonify({"error": "content_type is required"}), 400

    try:
        return jsonify(storage.presigned_upload(g.tenant_id, content_type)), 200
    except StorageError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to generate presigned upload URL")
        return jsonify({"error": "Internal server error"}), 500

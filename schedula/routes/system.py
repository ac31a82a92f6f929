# schedula/routes/system.py
"""
System health endpoint.
"""

import time

import sqlalchemy as sa
from flask import Blueprint, current_app

from ..extensions import db
from ..services.collaborators import get_collaborators
from schedula.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(sa.text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def collaborator_status() -> dict:
    collaborators = get_collaborators()
    return {
        "payments": type(collaborators.payments).__name__ if collaborators.payments else None,
        "notifier": type(collaborators.notifier).__name__,
        "calendar": type(collaborators.calendar).__name__,
        "storage": type(collaborators.storage).__name__ if collaborators.storage else None,
    }


@system_bp.get("/health")
def health():
    database = check_database_health()
    status_code = 200 if database["status"] == "healthy" else 503
    return {
        "status": "ok" if status_code == 200 else "degraded",
        "time": to_utc_z(utcnow()),
        "database": database,
        "integrations": collaborator_status(),
    }, status_code

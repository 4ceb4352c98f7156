# backend/cuehall/routes/system.py
"""
System health endpoint.

Checks the database and reports the state the billing core depends on:
active sessions, registered devices and the nonce cache size.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db, nonce_store
from ..models import BillingSession, IotDevice
from ..models.billing import SESSION_ACTIVE
from cuehall.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        active_sessions = db.session.query(BillingSession).filter_by(status=SESSION_ACTIVE).count()
        devices = db.session.query(IotDevice).filter_by(is_active=True).all()
        liveness = current_app.config["IOT_DEVICE_LIVENESS_SECONDS"]

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "active_sessions": active_sessions,
                "devices": len(devices),
                "devices_online": sum(1 for d in devices if d.online_at(liveness_seconds=liveness)),
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy
    - 503: database unreachable
    """
    database_health = check_database_health()
    http_status = 503 if database_health["status"] == "unhealthy" else 200

    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
            "nonce_cache": {"entries": len(nonce_store)},
        }
    }

    return response, http_status

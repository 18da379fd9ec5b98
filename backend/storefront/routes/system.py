# backend/storefront/routes/system.py
"""
System health endpoint.

Reports database reachability and whether the in-memory core state
(dictionary cache, currency rates, payment sessions) is loaded.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db, dictionary_cache, pi_sessions, rates_provider
from ..models import Order
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"orders": order_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_core_state_health() -> dict:
    try:
        if not dictionary_cache.loaded:
            dictionary_cache.load()
        rates = rates_provider.latest_rates()
        return {
            "status": "healthy" if rates else "degraded",
            "details": {
                "base_currency": dictionary_cache.base_currency(),
                "site_available": dictionary_cache.site_available(),
                "currency_rates": len(rates),
                "payment_sessions": len(pi_sessions),
                "session_sweeper": pi_sessions.sweeping,
            },
        }
    except Exception:
        current_app.logger.exception("Core state health check failed")
        return {"status": "unhealthy", "error": "Reference data not loaded"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (no currency rates yet)
    - 503: database or reference data unavailable
    """
    start_time = time.time()
    database_health = check_database_health()
    core_health = check_core_state_health()

    checks = [database_health, core_health]
    if any(c["status"] == "unhealthy" for c in checks):
        overall_status, http_status = "unhealthy", 503
    elif any(c["status"] == "degraded" for c in checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "core_state": core_health,
        },
    }, http_status

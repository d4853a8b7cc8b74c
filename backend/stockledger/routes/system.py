# backend/stockledger/routes/system.py
"""
System health endpoints.

Health covers the two things the engine depends on: the database and the
configured payment gateway.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Product, Warehouse
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity with a couple of cheap counts.
    """
    start_time = time.time()
    try:
        warehouse_count = db.session.query(Warehouse).count()
        product_count = db.session.query(Product).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "warehouses": warehouse_count,
                "products": product_count,
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


def check_payment_gateway_health() -> dict:
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        return {"status": "unhealthy", "error": "Payment gateway not configured"}
    if gateway.name == "stub":
        return {"status": "degraded", "warning": "Stub payment gateway in use", "details": {"provider": gateway.name}}
    return {"status": "healthy", "details": {"provider": gateway.name}}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    gateway_health = check_payment_gateway_health()

    all_checks = [database_health, gateway_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "payment_gateway": gateway_health,
        }
    }
    return response, http_status


@system_bp.get("/health/live")
def liveness():
    return {"status": "ok"}, 200

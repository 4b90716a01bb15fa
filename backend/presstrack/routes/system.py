# backend/presstrack/routes/system.py
"""
System health endpoint.

Unauthenticated; exposes counts only, never configuration or credentials.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import OrderItem, PaperStockItem, InventoryTransaction
from presstrack.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        item_count = db.session.query(OrderItem).count()
        paper_count = db.session.query(PaperStockItem).count()
        ledger_count = db.session.query(InventoryTransaction).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "order_items": item_count,
                "papers": paper_count,
                "ledger_entries": ledger_count,
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


def check_services_health() -> dict:
    """Services are wired at startup; a missing one means create_app was bypassed."""
    expected = ("presstrack.workflow", "presstrack.inventory", "presstrack.reservations")
    missing = [name for name in expected if name not in current_app.extensions]
    if missing:
        return {"status": "unhealthy", "error": f"Missing services: {', '.join(missing)}"}
    return {"status": "healthy"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: All systems healthy
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    services_health = check_services_health()

    unhealthy = any(c["status"] == "unhealthy" for c in (database_health, services_health))
    overall_status = "unhealthy" if unhealthy else "healthy"
    http_status = 503 if unhealthy else 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "services": services_health,
        }
    }

    return response, http_status

# backend/stockflow/routes/system.py
"""
System health endpoint.

Checks database reachability and reports lot-sum drift, which nothing
repairs automatically.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Operator, Product
from ..services.reconciliation_service import find_lot_drift
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        operator_count = db.session.query(Operator).count()
        product_count = db.session.query(Product).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "operators": operator_count,
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


def check_stock_consistency() -> dict:
    """Degraded when any lot-managed product has lots adding up to more than its stock."""
    start_time = time.time()
    try:
        drift = find_lot_drift()
        elapsed_ms = (time.time() - start_time) * 1000
        if any(row.over_allocated for row in drift):
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": "Lots exceed product stock",
                "details": {"products": [row.to_dict() for row in drift if row.over_allocated]},
            }
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"unallocated_products": len(drift)},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Stock consistency check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Stock consistency error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    stock_health = check_stock_consistency()

    all_checks = [database_health, stock_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "stock": stock_health,
        }
    }, http_status

# backend/tableside/routes/system.py
"""
System health and version endpoints.

Health covers the database and the two things the floor depends on at
service time: tables exist, and PIX payments can be issued.
"""

import sys
import time

from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import MenuItem, Payment, Table
from ..services.payment_service import OPEN_PAYMENT_STATUSES
from tableside.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        table_count = db.session.query(func.count(Table.id)).scalar()
        menu_item_count = db.session.query(func.count(MenuItem.id)).scalar()
        open_payments = (
            db.session.query(func.count(Payment.id))
            .filter(Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .scalar()
        )

        elapsed_ms = (time.time() - start_time) * 1000

        status = "healthy" if table_count else "degraded"
        result = {
            "status": status,
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "tables": table_count,
                "menu_items": menu_item_count,
                "open_payments": open_payments,
            }
        }
        if not table_count:
            result["warning"] = "No tables configured"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_payment_provider_health() -> dict:
    """PIX needs a configured key; cash and card work regardless."""
    if current_app.extensions.get("pix_provider") is not None or current_app.config.get("PIX_KEY"):
        return {"status": "healthy"}
    return {"status": "degraded", "warning": "PIX_KEY not configured; PIX payments will fail"}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Healthy or degraded (still operational)
    - 503: Database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    provider_health = check_payment_provider_health()

    all_checks = [database_health, provider_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
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
            "payment_provider": provider_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }

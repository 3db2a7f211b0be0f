# backend/shopfront/routes/system.py
"""
System health endpoint.

Checks the datastore and reports which external services are configured.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import GiftCard, Order, Product
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        product_count = db.session.query(Product).count()
        order_count = db.session.query(Order).count()
        gift_card_count = db.session.query(GiftCard).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "orders": order_count,
                "gift_cards": gift_card_count,
            }
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_configuration() -> dict:
    """Which integrations have credentials. Missing ones degrade, never fail."""
    config = current_app.config
    details = {
        "stripe": bool(config.get("STRIPE_SECRET_KEY") and config.get("STRIPE_WEBHOOK_SECRET")),
        "paypal": bool(config.get("PAYPAL_CLIENT_ID") and config.get("PAYPAL_CLIENT_SECRET")),
        "email": bool(config.get("RESEND_API_KEY")),
        "encryption": bool(config.get("ENCRYPTION_KEY")),
        "jwt": bool(config.get("JWT_SECRET")),
    }
    missing = [name for name in ("stripe", "jwt") if not details[name]]
    if missing:
        return {"status": "degraded", "warning": f"Missing configuration: {', '.join(missing)}", "details": details}
    return {"status": "healthy", "details": details}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: datastore unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    config_health = check_configuration()

    all_checks = [database_health, config_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "configuration": config_health,
        }
    }

    return response, http_status

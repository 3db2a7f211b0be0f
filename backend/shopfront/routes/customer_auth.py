# Overview: Customer magic-link sign-in and the signed-in customer's order history.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import BadInputError, RateLimitedError, ShopError
from ..extensions import db
from ..decorators import require_auth, require_permission
from ..services import auth_service, order_service
from ..services.permission_service import VIEW_OWN_ORDERS


customer_auth_bp = Blueprint("customer_auth", __name__, url_prefix="/api")


@customer_auth_bp.post("/customer-auth")
def request_magic_link_route():
    """
    Request body: {"email": "a@example.com"}

    Answers identically whether or not the email has orders.
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise BadInputError("Invalid JSON in request body")

        message = auth_service.request_magic_link(data.get("email"), ip=request.remote_addr)
        return jsonify({"success": True, "message": message})

    except RateLimitedError as e:
        response = jsonify({"error": e.message})
        response.headers["Retry-After"] = str(e.retry_after)
        return response, e.status
    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Customer auth error")
        return jsonify({"error": "Internal server error"}), 500


@customer_auth_bp.get("/customer-auth")
def verify_magic_link_route():
    """GET /api/customer-auth?token=... -> session JWT (24h)."""
    try:
        session_token, email = auth_service.verify_magic_link(request.args.get("token"))
        return jsonify({"success": True, "token": session_token, "email": email})

    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Customer auth error")
        return jsonify({"error": "Internal server error"}), 500


@customer_auth_bp.get("/customer-orders")
@require_auth
@require_permission(VIEW_OWN_ORDERS)
def customer_orders_route():
    email = g.current_principal.email
    try:
        order_id = request.args.get("id")
        if order_id:
            return jsonify(order_service.customer_order(order_id, email))

        orders = order_service.customer_orders(email)
        return jsonify({"orders": orders, "total": len(orders), "email": email})

    except ShopError as e:
        return jsonify({"error": e.message}), e.status
    except Exception:
        current_app.logger.exception("Customer orders error")
        return jsonify({"error": "Internal server error"}), 500

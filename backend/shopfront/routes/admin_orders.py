# Overview: Admin order listing and status/tracking updates.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import BadInputError, ShopError
from ..extensions import db
from ..decorators import require_auth, require_permission
from ..services import order_service
from ..services.permission_service import UPDATE_ORDER_STATUS, VIEW_ALL_ORDERS


admin_orders_bp = Blueprint("admin_orders", __name__, url_prefix="/api")


@admin_orders_bp.get("/admin-orders")
@require_auth
@require_permission(VIEW_ALL_ORDERS)
def list_orders_route():
    """
    List orders, newest first, with PII decrypted.

    Query: ?status=paid&limit=50
    """
    try:
        orders = order_service.list_orders(
            status=request.args.get("status"),
            limit=request.args.get("limit"),
        )
        return jsonify(orders)

    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@admin_orders_bp.put("/admin-orders")
@require_auth
@require_permission(UPDATE_ORDER_STATUS)
def update_order_route():
    """
    Update status, notes or tracking.

    Request body:
    {
        "id": 12,
        "status": "shipped",
        "notes": "Left with neighbour",        (optional)
        "tracking_number": "RM123456789GB",   (optional)
        "tracking_url": "https://...",        (optional)
        "carrier": "Royal Mail",              (optional)
        "send_notification": true             (optional, default true)
    }

    Moving an order into "shipped" sends one shipping email unless
    send_notification is false.
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise BadInputError("Invalid JSON in request body")

        order, shipped_now = order_service.update_order(data.get("id"), data, principal=g.current_principal)

        notified = False
        if shipped_now and data.get("send_notification", True) is not False:
            order_service.notify_shipped(order)
            notified = True

        return jsonify({**order_service.serialize(order), "notification_sent": notified})

    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500

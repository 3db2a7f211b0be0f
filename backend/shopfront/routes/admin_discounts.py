# Overview: Admin discount code management.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import BadInputError, ShopError
from ..extensions import db
from ..decorators import require_auth, require_permission
from ..services import discount_service
from ..services.permission_service import MANAGE_DISCOUNTS


admin_discounts_bp = Blueprint("admin_discounts", __name__, url_prefix="/api")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadInputError("Invalid JSON in request body")
    return data


@admin_discounts_bp.get("/admin-discounts")
@require_auth
@require_permission(MANAGE_DISCOUNTS)
def list_discounts_route():
    discount_id = request.args.get("id")
    try:
        if discount_id:
            return jsonify(discount_service.get_discount(discount_id).to_dict())
        return jsonify([d.to_dict() for d in discount_service.list_discounts()])
    except ShopError as e:
        return jsonify({"error": e.message}), e.status


@admin_discounts_bp.post("/admin-discounts")
@require_auth
@require_permission(MANAGE_DISCOUNTS)
def create_discount_route():
    """
    Request body:
    {
        "code": "SUMMER10",
        "name": "Summer sale",
        "discount_type": "percentage" | "fixed" | "free_delivery",
        "discount_value": 10,               (pounds for fixed)
        "min_order_amount": 20.00,          (optional)
        "max_uses": 100,                    (optional)
        "max_uses_per_customer": 1,         (optional)
        "starts_at": "...", "expires_at": "..."  (optional, ISO-8601)
    }
    """
    try:
        discount = discount_service.create_discount(_json_body(), principal=g.current_principal)
        return jsonify(discount.to_dict()), 201

    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create discount")
        return jsonify({"error": "Internal server error"}), 500


@admin_discounts_bp.put("/admin-discounts")
@require_auth
@require_permission(MANAGE_DISCOUNTS)
def update_discount_route():
    try:
        data = _json_body()
        fields = {k: v for k, v in data.items() if k != "id"}
        discount = discount_service.update_discount(data.get("id"), fields, principal=g.current_principal)
        return jsonify(discount.to_dict())

    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update discount")
        return jsonify({"error": "Internal server error"}), 500


@admin_discounts_bp.delete("/admin-discounts")
@require_auth
@require_permission(MANAGE_DISCOUNTS)
def deactivate_discount_route():
    try:
        discount = discount_service.deactivate_discount(request.args.get("id"), principal=g.current_principal)
        return jsonify({"success": True, "discount": discount.to_dict()})

    except ShopError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to deactivate discount")
        return jsonify({"error": "Internal server error"}), 500

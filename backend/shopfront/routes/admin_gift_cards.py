# Overview: Admin gift card listing, promotional issuance, adjustments and cancellation.

"""
Admin Gift Cards API

- GET    /api/admin-gift-cards            list (?status, ?unsent, ?search) + stats
- GET    /api/admin-gift-cards?id=X       one card with its ledger
- POST   /api/admin-gift-cards            issue a promotional card (active)
- PUT    /api/admin-gift-cards            {id, action: mark_sent | adjust_balance, ...}
                                          or recipient/expiry edits
- DELETE /api/admin-gift-cards?id=X       cancel (irreversible)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import BadInputError, ShopError
from ..extensions import db
from .. import money
from ..decorators import require_auth, require_permission
from ..services import gift_card_service
from ..services.permission_service import MANAGE_GIFT_CARDS, VIEW_GIFT_CARDS


admin_gift_cards_bp = Blueprint("admin_gift_cards", __name__, url_prefix="/api")


def _card_with_transactions(card) -> dict:
    return {
        **card.to_dict(),
        "transactions": [tx.to_dict() for tx in gift_card_service.transactions_for(card)],
    }


def _pounds(data: dict, field: str, message: str) -> int:
    try:
        return money.parse_major(data.get(field), field)
    except ValueError:
        raise BadInputError(message)


def _fail(e: ShopError):
    db.session.rollback()
    return jsonify({"error": e.message}), e.status


@admin_gift_cards_bp.get("/admin-gift-cards")
@require_auth
@require_permission(VIEW_GIFT_CARDS)
def list_gift_cards_route():
    try:
        card_id = request.args.get("id")
        if card_id:
            return jsonify(_card_with_transactions(gift_card_service.get_card(card_id)))

        cards = gift_card_service.list_cards(
            status=request.args.get("status"),
            unsent=request.args.get("unsent", "false").lower() == "true",
            search=request.args.get("search"),
        )
        return jsonify({
            "giftCards": [card.to_dict() for card in cards],
            "stats": gift_card_service.stats_for(cards),
        })

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Admin gift cards error")
        return jsonify({"error": "Internal server error"}), 500


@admin_gift_cards_bp.post("/admin-gift-cards")
@require_auth
@require_permission(MANAGE_GIFT_CARDS)
def create_gift_card_route():
    """
    Request body:
    {
        "amount": 25.00,
        "recipient_email": "...", "recipient_name": "...",   (optional)
        "personal_message": "...", "expires_at": "...",      (optional)
        "notes": "Competition prize"                          (optional)
    }
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise BadInputError("Invalid JSON in request body")

        card = gift_card_service.issue_promotional(
            amount_minor=_pounds(data, "amount", "Amount must be between £1 and £500"),
            principal=g.current_principal,
            recipient_name=data.get("recipient_name"),
            recipient_email=data.get("recipient_email"),
            personal_message=data.get("personal_message"),
            expires_at=data.get("expires_at") or None,
            notes=data.get("notes"),
            brand_name=current_app.config["BRAND_NAME"],
        )
        return jsonify({"success": True, "giftCard": card.to_dict()}), 201

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Admin gift cards error")
        return jsonify({"error": "Internal server error"}), 500


@admin_gift_cards_bp.put("/admin-gift-cards")
@require_auth
@require_permission(MANAGE_GIFT_CARDS)
def update_gift_card_route():
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise BadInputError("Invalid JSON in request body")

        card_id = data.get("id")
        if not card_id:
            raise BadInputError("Gift card ID required")
        action = data.get("action")

        if action == "mark_sent":
            gift_card_service.mark_sent(card_id, principal=g.current_principal)
            return jsonify({"success": True, "message": "Gift card marked as sent"})

        if action == "adjust_balance":
            card = gift_card_service.adjust_balance(
                card_id,
                _pounds(data, "new_balance", "Invalid balance amount"),
                notes=data.get("notes"),
                principal=g.current_principal,
            )
            return jsonify({"success": True, "giftCard": card.to_dict()})

        if action:
            raise BadInputError(f"Unknown action: {action}")

        fields = {k: v for k, v in data.items() if k not in ("id", "action")}
        card = gift_card_service.update_details(card_id, fields, principal=g.current_principal)
        return jsonify({"success": True, "giftCard": card.to_dict()})

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Admin gift cards error")
        return jsonify({"error": "Internal server error"}), 500


@admin_gift_cards_bp.delete("/admin-gift-cards")
@require_auth
@require_permission(MANAGE_GIFT_CARDS)
def cancel_gift_card_route():
    try:
        card = gift_card_service.cancel(request.args.get("id"), principal=g.current_principal)
        return jsonify({"success": True, "giftCard": card.to_dict()})

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Admin gift cards error")
        return jsonify({"error": "Internal server error"}), 500

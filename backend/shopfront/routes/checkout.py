# Overview: Public checkout API; quote validation, payment initiation, gift-card-only checkout.

"""
Checkout API Routes

All amounts in request and response bodies are pounds; services work in
pence. Prices always come from the products table, never from the body.

ENDPOINTS:
- POST /api/validate-discount         discount preview for a subtotal
- POST /api/validate-gift-card        gift card preview for an order total
- POST /api/check-gift-card           public balance + ledger lookup
- POST /api/stripe-checkout           card checkout session
- POST /api/paypal-checkout           wallet order
- POST /api/paypal-capture            wallet capture + order
- POST /api/gift-card-only-checkout   order paid entirely by gift card
- POST /api/gift-card-checkout        buy a gift card by card
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import BadInputError, ShopError
from ..extensions import db
from .. import money
from ..services import (
    card_payment_service,
    discount_service,
    gift_card_checkout_service,
    gift_card_service,
    wallet_payment_service,
)


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadInputError("Invalid JSON in request body")
    return data


def _amount(data: dict, field: str) -> int:
    """Optional pounds amount -> pence; missing or unparsable counts as 0."""
    raw = data.get(field)
    if raw in (None, ""):
        return 0
    try:
        return max(0, money.parse_major(raw, field))
    except ValueError:
        raise BadInputError(f"{field} must be a number")


def _fail(e: ShopError):
    db.session.rollback()
    return jsonify({"error": e.message}), e.status


@checkout_bp.post("/validate-discount")
def validate_discount_route():
    """
    Request body:
    {
        "code": "SAVE10",
        "subtotal": 25.00,
        "customer_email": "a@example.com"  (optional)
    }
    """
    try:
        data = _json_body()
        if not data.get("code"):
            return jsonify({"error": "Discount code is required"}), 400

        applied = discount_service.evaluate_or_raise(
            data.get("code"),
            _amount(data, "subtotal"),
            customer_email=(data.get("customer_email") or "").strip().lower() or None,
        )
        return jsonify(applied.to_dict())

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Validate discount error")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/validate-gift-card")
def validate_gift_card_route():
    try:
        data = _json_body()
        if not data.get("code"):
            return jsonify({"error": "Gift card code is required"}), 400

        result = gift_card_service.validate_or_raise(data.get("code"), _amount(data, "subtotal"))
        return jsonify(result.to_dict())

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Validate gift card error")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/check-gift-card")
def check_gift_card_route():
    """Balance lookup for customers holding a code. Read-only."""
    try:
        data = _json_body()
        card, transactions = gift_card_service.check_balance(data.get("code"))
        return jsonify({
            "giftCard": gift_card_service.public_summary(card),
            "transactions": [
                {k: tx.to_dict()[k] for k in ("id", "transaction_type", "amount", "balance_after", "order_reference", "notes", "created_at")}
                for tx in transactions
            ],
        })

    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Check gift card error")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/stripe-checkout")
def stripe_checkout_route():
    """
    Create a hosted card checkout session.

    Request body:
    {
        "items": [{"id": 1, "quantity": 2, "variation": "Blue"}],
        "customer_email": "a@example.com",   (optional)
        "discount_code": "SAVE10",            (optional)
        "gift_card_code": "GC-XXXX-XXXX-XXXX" (optional)
    }

    Returns:
        200: {"sessionId", "url", "quote"}
        400: Invalid cart, discount or gift card
        500: Processor failure
    """
    try:
        return jsonify(card_payment_service.initiate(_json_body()))
    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Stripe checkout error")
        return jsonify({"error": "Checkout failed"}), 500


@checkout_bp.post("/paypal-checkout")
def paypal_checkout_route():
    try:
        return jsonify(wallet_payment_service.initiate(_json_body()))
    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("PayPal checkout error")
        return jsonify({"error": "Checkout failed"}), 500


@checkout_bp.post("/paypal-capture")
def paypal_capture_route():
    """
    Capture an approved wallet order and materialize it.

    Request body:
    {
        "orderID": "5O190127TN364715T",
        "items": [...],
        "customer": {"email": "...", "name": "...", "phone": "..."},  (optional)
        "discount_code": "...", "gift_card_code": "..."              (optional)
    }
    """
    try:
        return jsonify(wallet_payment_service.capture(_json_body()))
    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("PayPal capture error")
        return jsonify({"error": "Payment capture failed"}), 500


@checkout_bp.post("/gift-card-only-checkout")
def gift_card_only_checkout_route():
    try:
        return jsonify(gift_card_checkout_service.checkout(_json_body()))
    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Gift card only checkout error")
        return jsonify({"error": "Checkout failed"}), 500


@checkout_bp.post("/gift-card-checkout")
def gift_card_checkout_route():
    try:
        return jsonify(card_payment_service.initiate_gift_card_purchase(_json_body()))
    except ShopError as e:
        return _fail(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Gift card checkout error")
        return jsonify({"error": "Checkout failed"}), 500

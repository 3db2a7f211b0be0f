# Overview: Checkout path for orders fully covered by a gift card (no processor involved).

"""
Gift-Card-Only Checkout

The card must cover the whole recomputed Quote. Redemption debits the
full pre-gift total, the order is written as PAID with payment_method
gift_card and an FS- number, and any failure after the debit is
compensated by order_service (REFUND ledger row, card reopened).
"""

from __future__ import annotations

from flask import current_app

from ..errors import BadInputError
from ..models.orders import PAYMENT_GIFT_CARD
from .. import money
from . import gift_card_service, order_service, quote_service
from .auth_service import normalize_email
from .order_service import CustomerDetails


REQUIRED_ADDRESS_FIELDS = ("line1", "city", "postal_code")


def _shipping_address(raw) -> dict:
    if not isinstance(raw, dict) or not all(str(raw.get(k) or "").strip() for k in REQUIRED_ADDRESS_FIELDS):
        raise BadInputError("Complete shipping address is required")
    allowed = current_app.config["SHIPPING_ALLOWED_COUNTRIES"]
    country = str(raw.get("country") or allowed[0]).strip().upper()
    if country not in allowed:
        raise BadInputError("We only ship to the UK")
    return {
        "line1": str(raw["line1"]).strip(),
        "line2": str(raw.get("line2") or "").strip(),
        "city": str(raw["city"]).strip(),
        "postal_code": str(raw["postal_code"]).strip().upper(),
        "country": country,
    }


def checkout(data: dict) -> dict:
    gift_card_code = quote_service.body_field(data, "giftCardCode", "gift_card_code")
    discount_code = quote_service.body_field(data, "discountCode", "discount_code")

    if not gift_card_code:
        raise BadInputError("Gift card code is required")
    if not data.get("customer_email"):
        raise BadInputError("Email address is required")
    if not str(data.get("customer_name") or "").strip():
        raise BadInputError("Customer name is required")
    address = _shipping_address(data.get("shipping_address"))
    email = normalize_email(data.get("customer_email"))

    lines = quote_service.verify_cart(data.get("items"))
    quote = quote_service.compose(
        lines,
        discount_code=discount_code,
        gift_card_code=gift_card_code,
        customer_email=email,
    )
    if not quote.covers_full_order:
        raise BadInputError(
            f"Gift card balance ({money.format_major(quote.gift_card.balance_minor)}) is insufficient "
            f"for this order ({money.format_major(quote.pre_gift_minor)}). Please use a different payment method."
        )

    code = gift_card_service.normalize_code(gift_card_code)
    order, _ = order_service.materialize_order(
        quote=quote,
        customer=CustomerDetails(
            email=email,
            name=str(data["customer_name"]).strip(),
            phone=data.get("customer_phone") or None,
            shipping_address=address,
        ),
        payment_method=PAYMENT_GIFT_CARD,
        payment_reference=code,
        idempotency_key=None,
        require_full_gift_card=True,
    )
    order_service.notify_order_confirmation(order)

    card = gift_card_service.get_by_code(code)
    remaining = card.current_balance_minor if card is not None else 0
    current_app.logger.info(
        "Gift card order created",
        extra={"order_number": order.order_number, "gift_card_amount_minor": order.gift_card_amount_minor},
    )
    return {
        "success": True,
        "order_number": order.order_number,
        "total": money.to_major(order.gift_card_amount_minor),
        "gift_card_used": money.to_major(order.gift_card_amount_minor),
        "remaining_balance": money.to_major(remaining),
        "gift_card_remaining": money.to_major(remaining),
        "message": f"Order confirmed! Your gift card has been charged {money.format_major(order.gift_card_amount_minor)}.",
    }

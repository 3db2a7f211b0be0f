# Overview: Wallet (PayPal) payment adapter; order creation and capture settlement.

"""
Wallet Payment Adapter

Initiate recomputes the Quote and creates a PayPal order whose amount
breakdown (item_total - discount + shipping) equals quote.total.

Capture is keyed by the PayPal order id: an existing order with that
idempotency key is returned before the processor is called again, so a
replayed capture never double charges or double materializes.
"""

from __future__ import annotations

from flask import current_app

from ..errors import BadInputError
from ..models.orders import PAYMENT_WALLET
from .. import money
from . import order_service, paypal_client, quote_service
from .auth_service import normalize_email
from .card_payment_service import quote_from_request
from .order_service import CustomerDetails


PAYPAL_NAME_LIMIT = 127


def _amount(minor: int) -> dict:
    return {"currency_code": money.CURRENCY, "value": f"{money.to_decimal(minor)}"}


def build_order_payload(quote: quote_service.Quote) -> dict:
    base_url = current_app.config["SITE_URL"].rstrip("/")
    reduction = quote.discount_amount_minor + quote.gift_card_amount_minor

    breakdown = {
        "item_total": _amount(quote.subtotal_minor),
        "shipping": _amount(quote.shipping_minor),
    }
    if reduction > 0:
        breakdown["discount"] = _amount(reduction)

    return {
        "intent": "CAPTURE",
        "purchase_units": [{
            "amount": {**_amount(quote.total_minor), "breakdown": breakdown},
            "items": [
                {
                    "name": line.title[:PAYPAL_NAME_LIMIT],
                    "quantity": str(line.quantity),
                    "unit_amount": _amount(line.unit_price_minor),
                    "category": "PHYSICAL_GOODS",
                }
                for line in quote.items
            ],
            "shipping": {
                "options": [{
                    "id": "standard" if quote.shipping_minor > 0 else "free",
                    "label": "Standard Shipping" if quote.shipping_minor > 0 else "Free Shipping",
                    "type": "SHIPPING",
                    "selected": True,
                    "amount": _amount(quote.shipping_minor),
                }],
            },
        }],
        "application_context": {
            "brand_name": current_app.config["BRAND_NAME"],
            "landing_page": "BILLING",
            "shipping_preference": "GET_FROM_FILE",
            "user_action": "PAY_NOW",
            "return_url": f"{base_url}/success.html",
            "cancel_url": f"{base_url}/cart.html",
        },
    }


def initiate(data: dict) -> dict:
    quote, _ = quote_from_request(data)
    if quote.total_minor <= 0:
        raise BadInputError("Your gift card covers this order. Please use gift card checkout.")

    order = paypal_client.create_order(build_order_payload(quote))
    current_app.logger.info(
        "PayPal order created",
        extra={"paypal_order_id": order["id"], "total_minor": quote.total_minor},
    )
    return {"orderID": order["id"], "status": order.get("status"), "quote": quote.to_dict()}


def _captured_amount(capture: dict) -> tuple[str | None, int | None]:
    """(capture id, amount in minor units) of the first completed capture."""
    try:
        unit = capture["purchase_units"][0]
        payment = unit["payments"]["captures"][0]
    except (KeyError, IndexError, TypeError):
        return None, None
    try:
        amount = money.parse_major(payment["amount"]["value"])
    except (KeyError, TypeError, ValueError):
        amount = None
    return payment.get("id"), amount


def _customer_from_capture(body_customer: dict | None, capture: dict) -> CustomerDetails:
    body_customer = body_customer if isinstance(body_customer, dict) else {}
    payer = capture.get("payer") or {}
    payer_name = payer.get("name") or {}

    email = body_customer.get("email") or payer.get("email_address")
    if not email:
        raise BadInputError("Customer email is required")
    name = body_customer.get("name") or " ".join(
        part for part in (payer_name.get("given_name"), payer_name.get("surname")) if part
    ) or None

    address = None
    try:
        shipping = capture["purchase_units"][0].get("shipping") or {}
    except (KeyError, IndexError, TypeError, AttributeError):
        shipping = {}
    raw = shipping.get("address")
    if raw:
        address = {
            "line1": raw.get("address_line_1"),
            "line2": raw.get("address_line_2") or "",
            "city": raw.get("admin_area_2"),
            "postal_code": raw.get("postal_code"),
            "country": raw.get("country_code"),
        }

    return CustomerDetails(
        email=normalize_email(email),
        name=name,
        phone=body_customer.get("phone") or (payer.get("phone") or {}).get("phone_number", {}).get("national_number"),
        shipping_address=address,
    )


def capture(data: dict) -> dict:
    paypal_order_id = data.get("orderID")
    if not paypal_order_id or not isinstance(paypal_order_id, str):
        raise BadInputError("Order ID required")

    existing = order_service.get_by_idempotency_key(paypal_order_id)
    if existing is not None:
        current_app.logger.info("PayPal order already captured", extra={"order_number": existing.order_number})
        return {
            "success": True,
            "order_number": existing.order_number,
            "paypal_order_id": paypal_order_id,
            "payment_id": existing.payment_reference,
        }

    # Re-verify before capturing so a bad cart never takes money
    lines = quote_service.verify_cart(data.get("items"))
    gift_card_cap = quote_service.parse_optional_amount(
        quote_service.body_field(data, "giftCardAmount", "gift_card_amount"), "giftCardAmount",
    )

    captured = paypal_client.capture_order(paypal_order_id)
    payment_id, reported = _captured_amount(captured)
    customer = _customer_from_capture(data.get("customer"), captured)

    quote = order_service.settlement_quote(
        lines,
        discount_code=quote_service.body_field(data, "discountCode", "discount_code"),
        gift_card_code=quote_service.body_field(data, "giftCardCode", "gift_card_code"),
        gift_card_amount_minor=gift_card_cap,
        customer_email=customer.email,
        reference=paypal_order_id,
    )

    order, created = order_service.materialize_order(
        quote=quote,
        customer=customer,
        payment_method=PAYMENT_WALLET,
        payment_reference=payment_id or paypal_order_id,
        idempotency_key=paypal_order_id,
        reported_total_minor=reported,
    )
    if created:
        order_service.notify_order_confirmation(order)

    return {
        "success": True,
        "order_number": order.order_number,
        "paypal_order_id": paypal_order_id,
        "payment_id": order.payment_reference,
    }

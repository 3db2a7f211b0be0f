# Overview: Card payment adapter; checkout session creation and webhook settlement.

"""
Card Payment Adapter (Stripe Checkout)

WHY: The browser never tells us what to charge. Phase 1 recomputes the
Quote and opens a hosted checkout session; phase 2 trusts only a signed
webhook and re-derives the Quote before materializing the order.

PHASE 1 (initiate):
- verify cart against products, compose Quote (discount + gift card)
- one line item per cart entry, plus "Shipping" when shipping > 0
- discount and gift-card portions are applied as a one-off coupon
- metadata carries the compact cart snapshot and the codes

PHASE 2 (webhook):
- Stripe-Signature: t=<unix>,v1=<hex>[,v1=...] over "<t>.<raw body>"
- checkout.session.completed for a gift-card purchase activates the card
- otherwise materialize an order keyed by the session id (idempotent)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

from flask import current_app

from ..errors import BadInputError, SignatureInvalidError
from ..models.orders import PAYMENT_CARD
from .. import money
from . import (
    gift_card_service,
    notification_service,
    order_service,
    quote_service,
    stripe_client,
)
from .auth_service import normalize_email
from .order_service import CustomerDetails


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
GIFT_CARD_PURCHASE = "gift_card_purchase"
METADATA_VALUE_LIMIT = 500


# ================================
# Phase 1: initiate
# ================================

def _line_item(name: str, unit_amount_minor: int, quantity: int, description: str | None = None) -> dict:
    product_data = {"name": name[:250]}
    if description:
        product_data["description"] = description
    return {
        "price_data": {
            "currency": current_app.config["CURRENCY"],
            "product_data": product_data,
            "unit_amount": unit_amount_minor,
        },
        "quantity": quantity,
    }


def _base_url() -> str:
    return current_app.config["SITE_URL"].rstrip("/")


def quote_from_request(data: dict) -> tuple[quote_service.Quote, str | None]:
    """Shared by the card and wallet initiators: (quote, customer_email)."""
    customer_email = data.get("customer_email")
    if customer_email:
        customer_email = normalize_email(customer_email)

    lines = quote_service.verify_cart(data.get("items"))
    quote = quote_service.compose(
        lines,
        discount_code=quote_service.body_field(data, "discountCode", "discount_code"),
        gift_card_code=quote_service.body_field(data, "giftCardCode", "gift_card_code"),
        gift_card_amount_minor=quote_service.parse_optional_amount(
            quote_service.body_field(data, "giftCardAmount", "gift_card_amount"), "giftCardAmount",
        ),
        customer_email=customer_email,
    )
    return quote, customer_email


def processor_metadata(quote: quote_service.Quote) -> dict:
    snapshot = quote_service.snapshot_json(quote.items)
    if len(snapshot) > METADATA_VALUE_LIMIT:
        raise BadInputError("Too many items in cart")
    metadata = {"items": snapshot}
    if quote.discount_code:
        metadata["discount_code"] = quote.discount_code
    if quote.gift_card_code:
        metadata["gift_card_code"] = quote.gift_card_code
        metadata["gift_card_amount_minor"] = str(quote.gift_card_amount_minor)
    return metadata


def initiate(data: dict) -> dict:
    quote, customer_email = quote_from_request(data)
    if quote.total_minor <= 0:
        raise BadInputError("Your gift card covers this order. Please use gift card checkout.")

    line_items = [
        _line_item(line.title, line.unit_price_minor, line.quantity, line.variation)
        for line in quote.items
    ]
    if quote.shipping_minor > 0:
        line_items.append(_line_item("Shipping", quote.shipping_minor, 1))

    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": line_items,
        "success_url": f"{_base_url()}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{_base_url()}/cart.html",
        "customer_email": customer_email,
        "metadata": processor_metadata(quote),
        "shipping_address_collection": {"allowed_countries": current_app.config["SHIPPING_ALLOWED_COUNTRIES"]},
        "billing_address_collection": "required",
    }

    reduction = quote.discount_amount_minor + quote.gift_card_amount_minor
    if reduction > 0:
        labels = [label for label in (quote.discount_code, quote.gift_card_code) if label]
        coupon = stripe_client.create_coupon(
            reduction,
            currency=current_app.config["CURRENCY"],
            name=" + ".join(labels) or "Discount",
        )
        params["discounts"] = [{"coupon": coupon["id"]}]

    session = stripe_client.create_checkout_session(params)
    current_app.logger.info(
        "Checkout session created",
        extra={"session_id": session["id"], "total_minor": quote.total_minor},
    )
    return {"sessionId": session["id"], "url": session["url"], "quote": quote.to_dict()}


def initiate_gift_card_purchase(data: dict) -> dict:
    """Issue a PENDING card and open a session for its face value."""
    if not data.get("amount") or not data.get("purchaser_name") or not data.get("purchaser_email"):
        raise BadInputError("Amount, name, and email are required")
    try:
        amount_minor = money.parse_major(data.get("amount"), "amount")
    except ValueError:
        raise BadInputError("Amount must be between £5 and £500")
    if not (gift_card_service.PURCHASE_MIN_MINOR <= amount_minor <= gift_card_service.PURCHASE_MAX_MINOR):
        raise BadInputError("Amount must be between £5 and £500")

    purchaser_email = normalize_email(data.get("purchaser_email"))
    recipient_email = data.get("recipient_email")
    if recipient_email:
        try:
            recipient_email = normalize_email(recipient_email)
        except BadInputError:
            raise BadInputError("Invalid recipient email address")

    card = gift_card_service.issue_purchase(
        amount_minor=amount_minor,
        purchaser_name=data.get("purchaser_name"),
        purchaser_email=purchaser_email,
        recipient_name=data.get("recipient_name"),
        recipient_email=recipient_email,
        personal_message=data.get("personal_message"),
    )

    brand = current_app.config["BRAND_NAME"]
    description = f"Gift for {card.recipient_name}" if card.recipient_name else "Digital Gift Card"
    session = stripe_client.create_checkout_session({
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [_line_item(f"{brand} Gift Card - {money.format_major(amount_minor)}", amount_minor, 1, description)],
        "success_url": f"{_base_url()}/gift-card-success.html?code={card.code}",
        "cancel_url": f"{_base_url()}/gift-cards.html",
        "customer_email": purchaser_email,
        "metadata": {
            "type": GIFT_CARD_PURCHASE,
            "gift_card_id": str(card.id),
            "gift_card_code": card.code,
            "gift_card_amount_minor": str(amount_minor),
        },
    })
    current_app.logger.info(
        "Gift card checkout session created",
        extra={"session_id": session["id"], "gift_card_id": card.id},
    )
    return {"sessionId": session["id"], "url": session["url"]}


# ================================
# Phase 2: webhook
# ================================

def parse_signature_header(header: str | None) -> tuple[int, list[str]]:
    if not header:
        raise SignatureInvalidError("Invalid signature")
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureInvalidError("Invalid signature")
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise SignatureInvalidError("Invalid signature")
    return timestamp, signatures


def sign_payload(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, header: str | None, secret: str | None, *, tolerance: int = 300, now: float | None = None) -> None:
    """Raises SignatureInvalidError; touches nothing else."""
    if not secret:
        raise SignatureInvalidError("Invalid signature")
    timestamp, signatures = parse_signature_header(header)
    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance:
        raise SignatureInvalidError("Invalid signature")
    expected = sign_payload(raw_body, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalidError("Invalid signature")


def construct_event(raw_body: bytes, header: str | None) -> dict:
    try:
        verify_signature(
            raw_body,
            header,
            current_app.config.get("STRIPE_WEBHOOK_SECRET"),
            tolerance=current_app.config["WEBHOOK_TOLERANCE_SECONDS"],
        )
    except SignatureInvalidError:
        current_app.logger.warning("Webhook signature verification failed")
        raise
    try:
        event = json.loads(raw_body)
    except ValueError:
        raise BadInputError("Invalid JSON in request body")
    if not isinstance(event, dict):
        raise BadInputError("Invalid JSON in request body")
    return event


def _customer_from_session(session: dict) -> CustomerDetails:
    details = session.get("customer_details") or {}
    shipping = (
        session.get("shipping_details")
        or (session.get("collected_information") or {}).get("shipping_details")
        or {}
    )
    address = shipping.get("address")
    email = details.get("email") or session.get("customer_email")
    if not email:
        raise BadInputError("Checkout session has no customer email")
    return CustomerDetails(
        email=email,
        name=details.get("name") or shipping.get("name"),
        phone=details.get("phone"),
        shipping_address={
            "line1": address.get("line1"),
            "line2": address.get("line2") or "",
            "city": address.get("city"),
            "postal_code": address.get("postal_code"),
            "country": address.get("country"),
        } if address else None,
    )


def _settlement_quote(metadata: dict, customer_email: str, reference: str) -> quote_service.Quote:
    gift_card_amount = metadata.get("gift_card_amount_minor")
    return order_service.settlement_quote(
        quote_service.lines_from_snapshot(metadata.get("items")),
        discount_code=metadata.get("discount_code"),
        gift_card_code=metadata.get("gift_card_code"),
        gift_card_amount_minor=int(gift_card_amount) if gift_card_amount and str(gift_card_amount).isdigit() else None,
        customer_email=customer_email,
        reference=reference,
    )


def _activate_purchased_card(session: dict) -> dict:
    metadata = session.get("metadata") or {}
    try:
        card_id = int(metadata.get("gift_card_id"))
    except (TypeError, ValueError):
        raise BadInputError("Invalid gift card metadata")

    card, changed = gift_card_service.activate(card_id, order_reference=session.get("id"))
    if changed:
        current_app.logger.info("Gift card activated", extra={"gift_card_id": card.id, "session_id": session.get("id")})
        notification_service.notify(notification_service.GIFT_CARD_DELIVERY, {
            "code": card.code,
            "amount_minor": card.initial_balance_minor,
            "purchaser_name": card.purchaser_name,
            "purchaser_email": card.purchaser_email,
            "recipient_name": card.recipient_name,
            "recipient_email": card.recipient_email,
            "personal_message": card.personal_message,
        })
    return {"received": True, "gift_card_code": card.code, "activated": changed}


def settle_session(session: dict) -> dict:
    session_id = session.get("id")
    if not session_id:
        raise BadInputError("Checkout session has no id")

    existing = order_service.get_by_idempotency_key(session_id)
    if existing is not None:
        current_app.logger.info("Order already exists", extra={"order_number": existing.order_number})
        return {"received": True, "order_number": existing.order_number, "duplicate": True}

    metadata = session.get("metadata") or {}
    customer = _customer_from_session(session)
    quote = _settlement_quote(metadata, customer.email.lower(), session_id)

    amount_total = session.get("amount_total")
    reported = amount_total if isinstance(amount_total, int) and not isinstance(amount_total, bool) else None

    order, created = order_service.materialize_order(
        quote=quote,
        customer=customer,
        payment_method=PAYMENT_CARD,
        payment_reference=session.get("payment_intent") or session_id,
        idempotency_key=session_id,
        reported_total_minor=reported,
    )
    if created:
        order_service.notify_order_confirmation(order)
    return {"received": True, "order_number": order.order_number, "duplicate": not created}


def handle_event(event: dict) -> dict:
    event_type = event.get("type")
    if event_type != CHECKOUT_SESSION_COMPLETED:
        current_app.logger.info("Unhandled webhook event", extra={"event_type": event_type})
        return {"received": True}

    session = (event.get("data") or {}).get("object") or {}
    if (session.get("metadata") or {}).get("type") == GIFT_CARD_PURCHASE:
        return _activate_purchased_card(session)
    return settle_session(session)

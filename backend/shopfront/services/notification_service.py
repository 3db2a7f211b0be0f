# Overview: Best-effort transactional email through the Resend API.

"""
Notifier gateway.

notify(event, payload) never raises. Without RESEND_API_KEY the message
is only logged, which is how local development and tests run unless a
mock transport is configured.
"""

from __future__ import annotations

from html import escape

import httpx
from flask import current_app

from .. import money
from .http_client import build_client


ORDER_CONFIRMATION = "order_confirmation"
SHIPPING = "shipping"
GIFT_CARD_DELIVERY = "gift_card_delivery"
MAGIC_LINK = "magic_link"
ADMIN_PASSWORD_RESET = "admin_password_reset"
NEWSLETTER_WELCOME = "newsletter_welcome"
MARKETING = "marketing"

EVENTS = frozenset({
    ORDER_CONFIRMATION,
    SHIPPING,
    GIFT_CARD_DELIVERY,
    MAGIC_LINK,
    ADMIN_PASSWORD_RESET,
    NEWSLETTER_WELCOME,
    MARKETING,
})


def _order_lines(payload: dict) -> list[str]:
    lines = []
    for item in payload.get("items") or []:
        unit = item.get("unit_price_minor", 0)
        qty = item.get("quantity", 1)
        lines.append(f"{qty} x {item.get('title', 'Item')} - {money.format_major(unit * qty)}")
    return lines


def _render(event: str, payload: dict) -> tuple[str, str]:
    """(subject, plain text body)"""
    brand = current_app.config.get("BRAND_NAME", "")

    if event == ORDER_CONFIRMATION:
        lines = _order_lines(payload)
        lines.append(f"Total: {money.format_major(payload.get('total_minor', 0))}")
        return (
            f"Order confirmed - {payload.get('order_number')}",
            f"Thanks for your order, {payload.get('customer_name') or 'there'}!\n\n" + "\n".join(lines),
        )

    if event == SHIPPING:
        text = f"Your order {payload.get('order_number')} is on its way."
        if payload.get("tracking_number"):
            text += f"\nCarrier: {payload.get('carrier') or 'n/a'}\nTracking: {payload.get('tracking_number')}"
        if payload.get("tracking_url"):
            text += f"\n{payload.get('tracking_url')}"
        return f"Your {brand} order has shipped", text

    if event == GIFT_CARD_DELIVERY:
        amount = money.format_major(payload.get("amount_minor", 0))
        text = (
            f"{payload.get('purchaser_name') or 'Someone'} sent you a {amount} {brand} gift card.\n\n"
            f"Code: {payload.get('code')}"
        )
        if payload.get("personal_message"):
            text += f"\n\n\"{payload['personal_message']}\""
        return f"You've received a {brand} gift card!", text

    if event == MAGIC_LINK:
        return f"Your {brand} login link", f"Sign in to view your orders:\n{payload.get('url')}\n\nThis link expires in 15 minutes."

    if event == ADMIN_PASSWORD_RESET:
        return f"{brand} admin password reset", f"Reset your password:\n{payload.get('url')}"

    if event == NEWSLETTER_WELCOME:
        return f"Welcome to {brand}!", "Thanks for subscribing."

    return payload.get("subject") or brand, payload.get("text") or ""


def _recipient(event: str, payload: dict) -> str | None:
    if event == GIFT_CARD_DELIVERY:
        return payload.get("recipient_email") or payload.get("purchaser_email")
    return payload.get("to") or payload.get("customer_email") or payload.get("email")


def notify(event: str, payload: dict) -> bool:
    """
    Send one notification. Returns True when the email API accepted it.

    Failures (unknown event, missing recipient, transport or HTTP errors)
    are logged and reported as False.
    """
    logger = current_app.logger

    if event not in EVENTS:
        logger.warning("Unknown notification event", extra={"event": event})
        return False

    to = _recipient(event, payload)
    if not to:
        logger.warning("Notification has no recipient", extra={"event": event})
        return False

    subject, text = _render(event, payload)

    api_key = current_app.config.get("RESEND_API_KEY")
    if not api_key:
        logger.info("Email not sent (RESEND_API_KEY not configured)", extra={"event": event, "to": to, "subject": subject})
        return False

    try:
        with build_client() as client:
            response = client.post(
                current_app.config["RESEND_API_URL"],
                headers={"Authorization": f"Bearer {api_key}"},
                json={
                    "from": current_app.config["EMAIL_FROM"],
                    "to": [to],
                    "subject": subject,
                    "text": text,
                    "html": "<p>" + escape(text).replace("\n", "<br>") + "</p>",
                },
            )
    except httpx.HTTPError as exc:
        logger.warning("Email send error", extra={"event": event, "to": to, "error": str(exc)})
        return False

    if response.status_code >= 300:
        logger.warning(
            "Email send failed",
            extra={"event": event, "to": to, "status": response.status_code, "body": response.text[:500]},
        )
        return False

    logger.info("Email sent", extra={"event": event, "to": to})
    return True

# Overview: Card-processor (Stripe) calls made through the official SDK.

"""
Stripe client

Only the two calls the checkout needs: create a coupon (one-off amount
off, used for discount + gift card portions) and create a Checkout
Session. The secret key is passed per request so no module-level SDK
state leaks between apps.
"""

from __future__ import annotations

import stripe
from flask import current_app

from ..errors import InternalError


class StripeError(InternalError):
    """Processor call failed (connection error, API error, or bad payload)."""


def _secret_key() -> str:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise InternalError("Payment processor not configured")
    return key


def _call(label: str, create, params: dict):
    params = {k: v for k, v in params.items() if v is not None}
    try:
        return create(api_key=_secret_key(), **params)
    except stripe.APIConnectionError as exc:
        current_app.logger.exception("Stripe request failed", extra={"call": label})
        raise StripeError("Payment processor unavailable") from exc
    except stripe.StripeError as exc:
        current_app.logger.error(
            "Stripe returned an error",
            extra={"call": label, "status": exc.http_status, "stripe_message": exc.user_message},
        )
        raise StripeError(exc.user_message or "Checkout failed") from exc


def create_coupon(amount_off_minor: int, *, currency: str, name: str):
    return _call("coupon", stripe.Coupon.create, {
        "amount_off": amount_off_minor,
        "currency": currency,
        "duration": "once",
        "name": name[:40],
    })


def create_checkout_session(params: dict):
    session = _call("checkout_session", stripe.checkout.Session.create, params)
    if not session.get("id") or not session.get("url"):
        raise StripeError("Checkout failed")
    return session

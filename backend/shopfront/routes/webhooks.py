# Overview: Card processor webhook endpoint.

"""
Stripe Webhooks

- 200: processed (or duplicate / ignored event); Stripe stops retrying
- 400: bad signature or permanently bad payload; Stripe stops retrying
- 409/500: transient failure; Stripe retries with backoff
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import ShopError
from ..extensions import db
from ..services import card_payment_service


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api")


@webhooks_bp.post("/stripe-webhook")
def stripe_webhook_route():
    content_type = request.headers.get("Content-Type", "")
    if "application/json" not in content_type:
        current_app.logger.warning("Webhook received with invalid Content-Type", extra={"content_type": content_type})
        return jsonify({"error": "Invalid Content-Type. Expected application/json"}), 400

    try:
        event = card_payment_service.construct_event(
            request.get_data(cache=False),
            request.headers.get("Stripe-Signature"),
        )
    except ShopError as e:
        # Nothing has touched the datastore yet
        return jsonify({"error": e.message}), e.status

    try:
        return jsonify(card_payment_service.handle_event(event))
    except ShopError as e:
        db.session.rollback()
        current_app.logger.warning(
            "Webhook processing failed",
            extra={"event_id": event.get("id"), "kind": e.kind, "error": e.message},
        )
        return jsonify({"error": e.message}), e.status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Webhook processing error", extra={"event_id": event.get("id")})
        return jsonify({"error": "Webhook processing failed temporarily"}), 500

# Overview: Wallet processor (PayPal Orders v2) client over httpx.

from __future__ import annotations

import httpx
from flask import current_app

from ..errors import InternalError
from .http_client import build_client


class PayPalError(InternalError):
    """Processor call failed."""


def _credentials() -> tuple[str, str]:
    client_id = current_app.config.get("PAYPAL_CLIENT_ID")
    client_secret = current_app.config.get("PAYPAL_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise InternalError("Payment processor not configured")
    return client_id, client_secret


def _json(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def get_access_token(client: httpx.Client) -> str:
    """Fresh OAuth client-credentials token (never cached)."""
    response = client.post(
        "/v1/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=_credentials(),
    )
    token = _json(response).get("access_token")
    if response.status_code >= 400 or not token:
        current_app.logger.error("PayPal token request failed", extra={"status": response.status_code})
        raise PayPalError("Payment processor unavailable")
    return token


def _call(path: str, body: dict | None, failure_message: str) -> dict:
    try:
        with build_client(current_app.config["PAYPAL_API_BASE"]) as client:
            token = get_access_token(client)
            response = client.post(
                path,
                json=body if body is not None else {},
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.HTTPError as exc:
        current_app.logger.exception("PayPal request failed", extra={"path": path})
        raise PayPalError("Payment processor unavailable") from exc

    payload = _json(response)
    if response.status_code >= 400:
        current_app.logger.error(
            "PayPal returned an error",
            extra={"path": path, "status": response.status_code, "paypal_message": payload.get("message")},
        )
        raise PayPalError(payload.get("message") or failure_message)
    return payload


def create_order(payload: dict) -> dict:
    order = _call("/v2/checkout/orders", payload, "PayPal order creation failed")
    if not order.get("id"):
        raise PayPalError("PayPal order creation failed")
    return order


def capture_order(order_id: str) -> dict:
    capture = _call(f"/v2/checkout/orders/{order_id}/capture", None, "Payment capture failed")
    if capture.get("status") != "COMPLETED":
        current_app.logger.error(
            "PayPal capture not completed",
            extra={"paypal_order_id": order_id, "paypal_status": capture.get("status")},
        )
        raise PayPalError("Payment capture failed")
    return capture

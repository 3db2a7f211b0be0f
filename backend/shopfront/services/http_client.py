# Overview: Factory for outbound httpx clients (processors, email API).

from __future__ import annotations

import httpx
from flask import current_app


def build_client(base_url: str = "", **kwargs) -> httpx.Client:
    """
    httpx.Client configured from the app.

    HTTPX_TRANSPORT lets tests swap in an httpx.MockTransport; in normal
    operation it is None and httpx uses its default transport.
    """
    transport = current_app.config.get("HTTPX_TRANSPORT")
    if transport is not None:
        kwargs.setdefault("transport", transport)
    return httpx.Client(
        base_url=base_url,
        timeout=current_app.config.get("HTTP_TIMEOUT_SECONDS", 10.0),
        **kwargs,
    )

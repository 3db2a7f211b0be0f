# backend/shopfront/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Hosted relational datastore; SQLite file for local development
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///shopfront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # "production" makes the PII encryption key mandatory
    ENVIRONMENT = os.environ.get("ENVIRONMENT", os.environ.get("FLASK_ENV", "development"))

    # Signs admin principals and customer sessions. No default on purpose.
    JWT_SECRET = os.environ.get("JWT_SECRET")
    CUSTOMER_SESSION_HOURS = 24
    MAGIC_LINK_EXPIRY_MINUTES = 15

    # Card processor
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    WEBHOOK_TOLERANCE_SECONDS = 300

    # Wallet processor
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_API_BASE = (
        "https://api-m.sandbox.paypal.com"
        if _env_bool("PAYPAL_SANDBOX", True)
        else "https://api-m.paypal.com"
    )

    # Notifier (Resend email API). Without a key, emails are only logged.
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_API_URL = "https://api.resend.com/emails"
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "Fidget Street <orders@fidgetstreet.co.uk>")
    BRAND_NAME = os.environ.get("BRAND_NAME", "Fidget Street")

    # 64 hex chars (32 bytes) AES-256-GCM key for customer_phone / shipping_address
    ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY")

    SITE_URL = os.environ.get("SITE_URL", "http://localhost:8888")
    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            f"{SITE_URL},http://localhost:8888,http://localhost:3000",
        ).split(",")
        if origin.strip()
    ]

    ADMIN_RESET_SECRET = os.environ.get("ADMIN_RESET_SECRET")

    # Single currency, minor unit = 1/100
    CURRENCY = "gbp"
    SHIPPING_FREE_THRESHOLD_MINOR = _env_int("SHIPPING_FREE_THRESHOLD_MINOR", 2000)
    SHIPPING_FLAT_RATE_MINOR = _env_int("SHIPPING_FLAT_RATE_MINOR", 299)
    SHIPPING_ALLOWED_COUNTRIES = ["GB"]

    MAGIC_LINK_MAX_REQUESTS = 3
    MAGIC_LINK_MAX_REQUESTS_PER_IP = _env_int("MAGIC_LINK_MAX_REQUESTS_PER_IP", 10)
    MAGIC_LINK_WINDOW_SECONDS = 60 * 60

    # Outbound HTTP (processors, notifier)
    HTTP_TIMEOUT_SECONDS = 10.0
    # Tests inject an httpx.MockTransport here
    HTTPX_TRANSPORT = None

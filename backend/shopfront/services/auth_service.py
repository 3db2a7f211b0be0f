# Overview: Bearer-token verification (admin + customer) and the customer magic-link flow.

"""
Principals and Customer Sessions

WHY: Admin principals arrive as JWTs minted by the admin identity provider;
customers sign in with a single-use emailed link and receive a short-lived
session JWT. Both are verified here so routes only ever see a Principal.

SECURITY FEATURES:
- HS256 tokens signed with JWT_SECRET (no default; missing secret is a 500)
- Magic-link tokens: 32 random bytes, only the SHA-256 is stored
- Magic links expire after MAGIC_LINK_EXPIRY_MINUTES and are single use
- Identical response for known and unknown emails (no enumeration)
"""

import hashlib
import re
import secrets
from datetime import datetime, timedelta, timezone

from flask import current_app
from jose import JWTError, jwt

from ..errors import BadInputError, InternalError, UnauthorizedError
from ..extensions import db
from ..models import Customer, Order
from ..time_utils import as_utc_naive, utcnow
from . import notification_service, rate_limit_service
from .permission_service import ADMIN_ROLES, ROLE_CUSTOMER, Principal


JWT_ALGORITHM = "HS256"
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAGIC_LINK_SENT_MESSAGE = "If you have orders with us, you will receive an email shortly."


def _secret() -> str:
    secret = current_app.config.get("JWT_SECRET")
    if not secret:
        current_app.logger.error("JWT_SECRET not configured")
        raise InternalError("Server configuration error")
    return secret


def generate_token() -> str:
    """64-character hex token (32 bytes of entropy)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email) -> str:
    if not isinstance(email, str) or not email.strip():
        raise BadInputError("Email is required")
    normalized = email.strip().lower()
    if not EMAIL_RE.match(normalized):
        raise BadInputError("Invalid email format")
    return normalized


# ================================
# Bearer tokens
# ================================

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")


def principal_from_token(token: str) -> Principal:
    """
    Map verified claims to a Principal.

    Customer sessions carry type=customer. Anything else must be a fully
    signed-in admin token (role in ADMIN_ROLES, no pending MFA step).
    """
    claims = decode_token(token)

    if claims.get("type") == ROLE_CUSTOMER:
        email = claims.get("email")
        if not email:
            raise UnauthorizedError("Invalid or expired token")
        return Principal(
            role=ROLE_CUSTOMER,
            email=email,
            id=str(claims["customerId"]) if claims.get("customerId") is not None else None,
            claims=claims,
        )

    if claims.get("preMfa") or claims.get("mfaSetupRequired"):
        raise UnauthorizedError("Invalid or expired token")

    role = claims.get("role")
    if role not in ADMIN_ROLES:
        raise UnauthorizedError("Invalid or expired token")

    user_id = claims.get("userId")
    return Principal(
        role=role,
        email=claims.get("email"),
        id=str(user_id) if user_id is not None else None,
        name=claims.get("name"),
        claims=claims,
    )


def issue_customer_token(customer: Customer) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "customerId": customer.id,
        "email": customer.email,
        "type": ROLE_CUSTOMER,
        "iat": now,
        "exp": now + timedelta(hours=current_app.config["CUSTOMER_SESSION_HOURS"]),
    }
    return jwt.encode(claims, _secret(), algorithm=JWT_ALGORITHM)


# ================================
# Magic link
# ================================

def request_magic_link(email, ip: str | None = None) -> str:
    """
    Issue a sign-in link for an email that has orders.

    Always returns the same message. Raises RateLimitedError after
    MAGIC_LINK_MAX_REQUESTS requests for one address, or
    MAGIC_LINK_MAX_REQUESTS_PER_IP requests from one client `ip`, within
    the window.
    """
    _secret()
    normalized = normalize_email(email)
    rate_limit_service.check_magic_link_ip(ip)
    rate_limit_service.check_magic_link(normalized)

    has_orders = db.session.query(Order.id).filter(Order.customer_email == normalized).first() is not None
    if not has_orders:
        current_app.logger.info("Magic link requested for email with no orders")
        return MAGIC_LINK_SENT_MESSAGE

    token = generate_token()
    expires = utcnow() + timedelta(minutes=current_app.config["MAGIC_LINK_EXPIRY_MINUTES"])

    customer = db.session.query(Customer).filter_by(email=normalized).first()
    if customer is None:
        customer = Customer(email=normalized)
        db.session.add(customer)
    customer.magic_link_token_hash = hash_token(token)
    customer.magic_link_expires = expires
    db.session.commit()

    url = f"{current_app.config['SITE_URL']}/account/verify.html?token={token}"
    notification_service.notify(notification_service.MAGIC_LINK, {"to": normalized, "url": url})

    return MAGIC_LINK_SENT_MESSAGE


def verify_magic_link(token) -> tuple[str, str]:
    """Consume a magic-link token. Returns (session_jwt, email)."""
    _secret()
    if not token or not isinstance(token, str):
        raise BadInputError("Token is required")

    customer = db.session.query(Customer).filter_by(magic_link_token_hash=hash_token(token)).first()
    if customer is None:
        raise BadInputError("Invalid or expired link")

    expires = as_utc_naive(customer.magic_link_expires)
    if expires is None or expires < utcnow():
        raise BadInputError("This link has expired. Please request a new one.")

    customer.magic_link_token_hash = None
    customer.magic_link_expires = None
    customer.is_verified = True
    customer.last_login = utcnow()
    db.session.commit()

    return issue_customer_token(customer), customer.email

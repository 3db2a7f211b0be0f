"""
Pytest fixtures for shopfront backend tests.

Provides the in-memory database, a fake upstream for the payment
processors and email API, catalogue/discount/gift card fixtures, and
bearer-token helpers.
"""

import json
import time
from decimal import Decimal
from itertools import count
from urllib.parse import parse_qsl

import httpx
import stripe
import pytest
from jose import jwt

from shopfront import create_app
from shopfront.extensions import db
from shopfront.models import DiscountCode, Product
from shopfront.models.orders import PAYMENT_CARD
from shopfront.services import gift_card_service, order_service, quote_service, rate_limit_service
from shopfront.services.card_payment_service import sign_payload
from shopfront.services.order_service import CustomerDetails


JWT_SECRET = "test-jwt-secret"
WEBHOOK_SECRET = "whsec_test_secret"
ENCRYPTION_KEY = "0123456789abcdef" * 4


class FakeUpstream:
    """
    httpx.MockTransport handler standing in for PayPal and Resend.

    Tests register canned responses per (method, path) and inspect the
    recorded requests afterwards.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def reset(self):
        self.routes.clear()
        self.requests.clear()

    def on(self, method: str, path: str, body=None, status: int = 200):
        self.routes[(method.upper(), path)] = (status, body if body is not None else {})

    def handle(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": {"message": f"No mock for {request.url.path}"}})
        status, body = route
        if callable(body):
            body = body(request)
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> list:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def form(request: httpx.Request) -> dict:
        return dict(parse_qsl(request.content.decode("utf-8")))

    @staticmethod
    def json(request: httpx.Request) -> dict:
        return json.loads(request.content)


UPSTREAM = FakeUpstream()


class FakeStripe:
    """Replaces the SDK create() calls; records their keyword arguments."""

    def __init__(self):
        self.coupons = []
        self.sessions = []
        self.session_response = {"id": "cs_test_1", "url": "https://checkout.stripe.test/c/pay/cs_test_1"}
        self.error = None

    def create_coupon(self, **params):
        self.coupons.append(params)
        return {"id": f"co_test_{len(self.coupons)}", "object": "coupon"}

    def create_session(self, **params):
        if self.error is not None:
            raise self.error
        self.sessions.append(params)
        return dict(self.session_response)

    @property
    def calls(self) -> int:
        return len(self.coupons) + len(self.sessions)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ENVIRONMENT': 'test',
        'JWT_SECRET': JWT_SECRET,
        'STRIPE_SECRET_KEY': 'sk_test_123',
        'STRIPE_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'PAYPAL_CLIENT_ID': 'paypal-client',
        'PAYPAL_CLIENT_SECRET': 'paypal-secret',
        'PAYPAL_API_BASE': 'https://paypal.test',
        'RESEND_API_KEY': None,
        'ENCRYPTION_KEY': ENCRYPTION_KEY,
        'SITE_URL': 'https://shop.test',
        'CORS_ALLOWED_ORIGINS': ['https://shop.test'],
        'SHIPPING_FREE_THRESHOLD_MINOR': 2000,
        'SHIPPING_FLAT_RATE_MINOR': 299,
        'HTTPX_TRANSPORT': httpx.MockTransport(UPSTREAM.handle),
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function', autouse=True)
def db_session(app):
    """Fresh tables, rate limiters and upstream mocks for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        rate_limit_service.reset_all()
        UPSTREAM.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def upstream():
    return UPSTREAM


@pytest.fixture(scope='function')
def stripe_api(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.Coupon, "create", fake.create_coupon)
    monkeypatch.setattr(stripe.checkout.Session, "create", fake.create_session)
    return fake


# =============================================================================
# CATALOGUE / DISCOUNTS / GIFT CARDS
# =============================================================================


@pytest.fixture(scope='function')
def products(db_session):
    """Two active products: 10.00 and 5.50, ten of each in stock."""
    cube = Product(title="Infinity Cube", price_minor=1000, stock=10, is_active=True)
    popit = Product(title="Pop It Rainbow", price_minor=550, stock=10, is_active=True)
    db_session.add_all([cube, popit])
    db_session.commit()
    return cube, popit


@pytest.fixture(scope='function')
def make_discount(db_session):
    def _make(code="TEN", discount_type="percentage", value="10", **fields):
        discount = DiscountCode(
            code=code,
            name=fields.pop("name", code.title()),
            discount_type=discount_type,
            discount_value=Decimal(value),
            use_count=fields.pop("use_count", 0),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        db_session.add(discount)
        db_session.commit()
        return discount
    return _make


@pytest.fixture(scope='function')
def make_gift_card(db_session):
    """Active promotional card with the given balance (pence)."""
    def _make(amount_minor=5000, **fields):
        return gift_card_service.issue_promotional(amount_minor=amount_minor, **fields)
    return _make


_order_keys = count(1)


@pytest.fixture(scope='function')
def make_paid_order(db_session, products):
    """Materialize a card-paid order for `email` buying two Infinity Cubes."""
    def _make(email="buyer@example.com", phone="07700 900123", quantity=2):
        cube, _ = products
        quote = quote_service.compose(quote_service.verify_cart([{"id": cube.id, "quantity": quantity}]))
        key = f"cs_fixture_{next(_order_keys)}"
        order, _ = order_service.materialize_order(
            quote=quote,
            customer=CustomerDetails(
                email=email,
                name="Test Buyer",
                phone=phone,
                shipping_address={"line1": "1 High Street", "city": "Leeds", "postal_code": "LS1 1AA", "country": "GB"},
            ),
            payment_method=PAYMENT_CARD,
            payment_reference=f"pi_{key}",
            idempotency_key=key,
        )
        return order
    return _make


# =============================================================================
# AUTH HELPERS
# =============================================================================


def admin_token(role: str = "super_admin", user_id: int = 1, email: str = "admin@example.com", **claims) -> str:
    payload = {"role": role, "userId": user_id, "email": email, **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def customer_token(email: str = "buyer@example.com", customer_id: int = 1) -> str:
    payload = {"type": "customer", "email": email, "customerId": customer_id}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers():
    return auth_headers(admin_token())


@pytest.fixture(scope='function')
def processing_headers():
    return auth_headers(admin_token(role="business_processing", user_id=2, email="packer@example.com"))


@pytest.fixture(scope='function')
def customer_headers():
    return auth_headers(customer_token())


# =============================================================================
# WEBHOOK HELPERS
# =============================================================================


def signed_headers(raw: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> dict:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {
        "Stripe-Signature": f"t={timestamp},v1={sign_payload(raw, secret, timestamp)}",
        "Content-Type": "application/json",
    }


def post_webhook(client, event: dict, **kwargs):
    raw = json.dumps(event).encode("utf-8")
    return client.post("/api/stripe-webhook", data=raw, headers=signed_headers(raw, **kwargs))


def checkout_completed(session: dict, event_id: str = "evt_test_1") -> dict:
    return {"id": event_id, "type": "checkout.session.completed", "data": {"object": session}}

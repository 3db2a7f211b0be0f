"""Magic-link sign in and the customer order history."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from shopfront.extensions import db
from shopfront.models import Customer
from shopfront.services import auth_service, notification_service
from shopfront.services.rate_limit_service import FixedWindowLimiter
from shopfront.time_utils import utcnow

from conftest import auth_headers, customer_token


SENT_MESSAGE = "If you have orders with us, you will receive an email shortly."


@pytest.fixture
def outbox(monkeypatch):
    sent = []
    monkeypatch.setattr(notification_service, "notify", lambda event, payload: sent.append((event, payload)) or True)
    return sent


def _token_from(outbox) -> str:
    event, payload = outbox[-1]
    assert event == notification_service.MAGIC_LINK
    url = urlparse(payload["url"])
    assert url.path == "/account/verify.html"
    return parse_qs(url.query)["token"][0]


def test_same_answer_for_unknown_email(client, outbox):
    resp = client.post("/api/customer-auth", json={"email": "nobody@example.com"})

    assert resp.status_code == 200
    assert resp.json == {"success": True, "message": SENT_MESSAGE}
    assert outbox == []
    assert db.session.query(Customer).count() == 0


def test_magic_link_round_trip(client, outbox, make_paid_order):
    make_paid_order(email="buyer@example.com")

    resp = client.post("/api/customer-auth", json={"email": "  Buyer@Example.com "})
    assert resp.status_code == 200
    assert resp.json["message"] == SENT_MESSAGE
    assert outbox[0][1]["to"] == "buyer@example.com"
    assert outbox[0][1]["url"].startswith("https://shop.test/account/verify.html?token=")

    token = _token_from(outbox)
    assert len(token) == 64

    customer = db.session.query(Customer).filter_by(email="buyer@example.com").one()
    assert customer.magic_link_token_hash == auth_service.hash_token(token)
    assert customer.magic_link_token_hash != token

    verified = client.get(f"/api/customer-auth?token={token}")
    assert verified.status_code == 200, verified.json
    assert verified.json["email"] == "buyer@example.com"

    principal = auth_service.principal_from_token(verified.json["token"])
    assert principal.is_customer
    assert principal.email == "buyer@example.com"

    reused = client.get(f"/api/customer-auth?token={token}")
    assert reused.status_code == 400
    assert reused.json["error"] == "Invalid or expired link"


def test_expired_link(client, outbox, make_paid_order):
    make_paid_order(email="buyer@example.com")
    client.post("/api/customer-auth", json={"email": "buyer@example.com"})
    token = _token_from(outbox)

    customer = db.session.query(Customer).filter_by(email="buyer@example.com").one()
    customer.magic_link_expires = utcnow() - timedelta(minutes=1)
    db.session.commit()

    resp = client.get(f"/api/customer-auth?token={token}")
    assert resp.status_code == 400
    assert resp.json["error"] == "This link has expired. Please request a new one."


def test_verify_requires_token(client):
    resp = client.get("/api/customer-auth")
    assert resp.status_code == 400
    assert resp.json["error"] == "Token is required"


@pytest.mark.parametrize("body, message", [
    ({}, "Email is required"),
    ({"email": "not-an-email"}, "Invalid email format"),
])
def test_request_rejects_bad_email(client, outbox, body, message):
    resp = client.post("/api/customer-auth", json=body)
    assert resp.status_code == 400
    assert resp.json["error"] == message


def test_rate_limited_after_three_requests(client, outbox):
    for _ in range(3):
        assert client.post("/api/customer-auth", json={"email": "spam@example.com"}).status_code == 200

    resp = client.post("/api/customer-auth", json={"email": "SPAM@example.com"})

    assert resp.status_code == 429
    assert resp.json["error"] == "Too many requests. Please try again later."
    assert resp.headers["Retry-After"] == "3600"

    other = client.post("/api/customer-auth", json={"email": "other@example.com"})
    assert other.status_code == 200


def test_rate_limited_per_client_ip_across_emails(client, outbox, app):
    limit = app.config["MAGIC_LINK_MAX_REQUESTS_PER_IP"]
    same_client = {"REMOTE_ADDR": "203.0.113.7"}
    for n in range(limit):
        resp = client.post("/api/customer-auth", json={"email": f"user{n}@example.com"}, environ_base=same_client)
        assert resp.status_code == 200

    resp = client.post("/api/customer-auth", json={"email": "fresh@example.com"}, environ_base=same_client)
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "3600"

    elsewhere = client.post(
        "/api/customer-auth", json={"email": "fresh@example.com"}, environ_base={"REMOTE_ADDR": "198.51.100.9"}
    )
    assert elsewhere.status_code == 200


class TestFixedWindowLimiter:

    def test_window_reopens_after_expiry(self):
        now = [0.0]
        limiter = FixedWindowLimiter(max_requests=2, window_seconds=60, clock=lambda: now[0])
        assert limiter.hit("a")
        assert limiter.hit("a")
        assert not limiter.hit("a")

        now[0] = 61.0
        assert limiter.hit("a")

    def test_expired_windows_are_evicted(self):
        now = [0.0]
        limiter = FixedWindowLimiter(max_requests=2, window_seconds=60, clock=lambda: now[0])
        for key in ("a", "b", "c"):
            limiter.hit(key)
        assert len(limiter) == 3

        now[0] = 30.0
        limiter.hit("d")
        assert len(limiter) == 4

        now[0] = 75.0
        limiter.hit("e")
        # a, b and c opened at 0 and are gone; d (30) is still inside its window
        assert len(limiter) == 2


def test_customer_orders_only_own(client, make_paid_order):
    mine = make_paid_order(email="buyer@example.com", phone="07700 900111")
    theirs = make_paid_order(email="someone@example.com")
    headers = auth_headers(customer_token(email="buyer@example.com"))

    resp = client.get("/api/customer-orders", headers=headers)

    assert resp.status_code == 200
    assert resp.json["email"] == "buyer@example.com"
    assert resp.json["total"] == 1
    order = resp.json["orders"][0]
    assert order["order_number"] == mine.order_number
    assert order["customer_phone"] == "07700 900111"
    assert order["item_count"] == 1

    detail = client.get(f"/api/customer-orders?id={mine.id}", headers=headers)
    assert detail.status_code == 200
    assert detail.json["order_number"] == mine.order_number

    hidden = client.get(f"/api/customer-orders?id={theirs.id}", headers=headers)
    assert hidden.status_code == 404


def test_customer_orders_requires_customer_session(client, admin_headers):
    assert client.get("/api/customer-orders").status_code == 401
    assert client.get("/api/customer-orders", headers=admin_headers).status_code == 403

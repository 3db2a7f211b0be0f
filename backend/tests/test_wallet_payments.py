"""
Wallet checkout (PayPal) order creation and capture.

Verifies the amount breakdown sent to PayPal, and that capture is
idempotent by PayPal order id: a second capture returns the existing
order without calling the processor again.
"""

import pytest

from shopfront.extensions import db
from shopfront.models import DiscountCode, GiftCard, Order, Product


PAYPAL_ORDER_ID = "5O190127TN364715T"
CAPTURE_PATH = f"/v2/checkout/orders/{PAYPAL_ORDER_ID}/capture"


def capture_response(value="20.00", status="COMPLETED"):
    return {
        "id": PAYPAL_ORDER_ID,
        "status": status,
        "payer": {
            "email_address": "payer@example.com",
            "name": {"given_name": "Pat", "surname": "Payer"},
        },
        "purchase_units": [{
            "shipping": {
                "address": {
                    "address_line_1": "2 Low Road",
                    "admin_area_2": "York",
                    "postal_code": "YO1 7HH",
                    "country_code": "GB",
                },
            },
            "payments": {
                "captures": [{"id": "CAPTURE-1", "status": "COMPLETED", "amount": {"currency_code": "GBP", "value": value}}],
            },
        }],
    }


@pytest.fixture
def paypal(upstream):
    upstream.on("POST", "/v1/oauth2/token", {"access_token": "A21AA-token", "token_type": "Bearer"})
    upstream.on("POST", "/v2/checkout/orders", {"id": PAYPAL_ORDER_ID, "status": "CREATED"})
    upstream.on("POST", CAPTURE_PATH, capture_response())
    return upstream


class TestInitiate:

    def test_breakdown_matches_quote(self, client, products, make_discount, paypal):
        cube, popit = products
        make_discount("FIVE", "fixed", "5")

        resp = client.post("/api/paypal-checkout", json={
            "items": [{"id": cube.id, "quantity": 1}, {"id": popit.id, "quantity": 1}],
            "discount_code": "FIVE",
        })

        assert resp.status_code == 200, resp.json
        assert resp.json["orderID"] == PAYPAL_ORDER_ID
        assert resp.json["status"] == "CREATED"

        payload = paypal.json(paypal.calls("/v2/checkout/orders")[0])
        unit = payload["purchase_units"][0]
        # 15.50 - 5.00 + 2.99 shipping
        assert unit["amount"]["value"] == "13.49"
        assert unit["amount"]["breakdown"]["item_total"]["value"] == "15.50"
        assert unit["amount"]["breakdown"]["discount"]["value"] == "5.00"
        assert unit["amount"]["breakdown"]["shipping"]["value"] == "2.99"
        assert [item["unit_amount"]["value"] for item in unit["items"]] == ["10.00", "5.50"]
        assert payload["intent"] == "CAPTURE"

    def test_client_keys_apply_discount_and_gift_card(self, client, products, make_discount, make_gift_card, paypal):
        cube, _ = products
        make_discount("TEN", "percentage", "10")
        card = make_gift_card(5000)

        resp = client.post("/api/paypal-checkout", json={
            "items": [{"id": cube.id, "quantity": 2}],
            "discountCode": "TEN",
            "giftCardCode": card.code,
            "giftCardAmount": 3,
        })

        assert resp.status_code == 200, resp.json
        # 20.00 - 2.00 + 2.99 shipping - 3.00 gift card
        assert resp.json["quote"]["discount_amount"] == 2.0
        assert resp.json["quote"]["gift_card_amount"] == 3.0
        unit = paypal.json(paypal.calls("/v2/checkout/orders")[0])["purchase_units"][0]
        assert unit["amount"]["value"] == "17.99"
        assert unit["amount"]["breakdown"]["discount"]["value"] == "5.00"

    def test_fresh_token_per_call(self, client, products, paypal):
        cube, _ = products
        client.post("/api/paypal-checkout", json={"items": [{"id": cube.id, "quantity": 1}]})
        client.post("/api/paypal-checkout", json={"items": [{"id": cube.id, "quantity": 1}]})
        assert len(paypal.calls("/v1/oauth2/token")) == 2

    def test_token_failure(self, client, products, upstream):
        cube, _ = products
        upstream.on("POST", "/v1/oauth2/token", {"error": "invalid_client"}, status=401)
        resp = client.post("/api/paypal-checkout", json={"items": [{"id": cube.id, "quantity": 1}]})
        assert resp.status_code == 500
        assert resp.json["error"] == "Payment processor unavailable"


class TestCapture:

    def body(self, cube, **extra):
        return {
            "orderID": PAYPAL_ORDER_ID,
            "items": [{"id": cube.id, "quantity": 2}],
            "customer": {"email": "Wallet@Example.com", "name": "Wally Wallet"},
            **extra,
        }

    def test_capture_materializes_order(self, client, products, paypal):
        cube, _ = products

        resp = client.post("/api/paypal-capture", json=self.body(cube))

        assert resp.status_code == 200, resp.json
        assert resp.json["success"] is True
        assert resp.json["paypal_order_id"] == PAYPAL_ORDER_ID
        assert resp.json["payment_id"] == "CAPTURE-1"

        order = db.session.query(Order).one()
        assert order.order_number == resp.json["order_number"]
        assert order.idempotency_key == PAYPAL_ORDER_ID
        assert order.payment_method == "wallet"
        assert order.customer_email == "wallet@example.com"
        assert order.customer_name == "Wally Wallet"
        assert order.total_minor == 2000
        assert order.reconciliation_minor == 0

        db.session.expire_all()
        assert db.session.get(Product, cube.id).stock == 8

    def test_second_capture_is_idempotent(self, client, products, paypal):
        cube, _ = products

        first = client.post("/api/paypal-capture", json=self.body(cube))
        second = client.post("/api/paypal-capture", json=self.body(cube))

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json["order_number"] == first.json["order_number"]
        assert len(paypal.calls(CAPTURE_PATH)) == 1
        assert db.session.query(Order).count() == 1

    def test_payer_details_fill_in_missing_customer(self, client, products, paypal):
        cube, _ = products
        body = self.body(cube)
        del body["customer"]

        resp = client.post("/api/paypal-capture", json=body)

        assert resp.status_code == 200, resp.json
        order = db.session.query(Order).one()
        assert order.customer_email == "payer@example.com"
        assert order.customer_name == "Pat Payer"

    def test_capture_not_completed(self, client, products, upstream, paypal):
        cube, _ = products
        upstream.on("POST", CAPTURE_PATH, capture_response(status="PENDING"))

        resp = client.post("/api/paypal-capture", json=self.body(cube))

        assert resp.status_code == 500
        assert resp.json["error"] == "Payment capture failed"
        assert db.session.query(Order).count() == 0

    def test_invalid_cart_is_rejected_before_capture(self, client, products, paypal):
        cube, _ = products
        body = self.body(cube)
        body["items"] = [{"id": cube.id, "quantity": 50}]

        resp = client.post("/api/paypal-capture", json=body)

        assert resp.status_code == 400
        assert paypal.calls(CAPTURE_PATH) == []

    def test_order_id_required(self, client, paypal):
        resp = client.post("/api/paypal-capture", json={"items": []})
        assert resp.status_code == 400
        assert resp.json["error"] == "Order ID required"

    def test_gift_card_portion_is_redeemed(self, client, products, make_gift_card, upstream, paypal):
        cube, _ = products
        card = make_gift_card(500)
        upstream.on("POST", CAPTURE_PATH, capture_response(value="15.00"))

        resp = client.post("/api/paypal-capture", json=self.body(cube, gift_card_code=card.code))

        assert resp.status_code == 200, resp.json
        order = db.session.query(Order).one()
        assert order.gift_card_code == card.code
        assert order.gift_card_amount_minor == 500
        assert order.total_minor == 1500
        assert order.reconciliation_minor == 0
        db.session.expire_all()
        assert db.session.get(GiftCard, card.id).current_balance_minor == 0

    def test_client_keys_settle_discount_and_gift_card(self, client, products, make_discount, make_gift_card, upstream, paypal):
        cube, _ = products
        make_discount("TEN", "percentage", "10")
        card = make_gift_card(5000)
        upstream.on("POST", CAPTURE_PATH, capture_response(value="17.99"))

        resp = client.post("/api/paypal-capture", json=self.body(
            cube, discountCode="TEN", giftCardCode=card.code, giftCardAmount="3.00",
        ))

        assert resp.status_code == 200, resp.json
        order = db.session.query(Order).one()
        assert order.discount_code == "TEN"
        assert order.discount_amount_minor == 200
        assert order.gift_card_amount_minor == 300
        assert order.total_minor == 1799
        assert order.reconciliation_minor == 0
        db.session.expire_all()
        assert db.session.query(DiscountCode).filter_by(code="TEN").one().use_count == 1
        assert db.session.get(GiftCard, card.id).current_balance_minor == 4700

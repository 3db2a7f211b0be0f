"""
Card checkout (Stripe) initiation and webhook settlement.

Verifies:
- Session parameters are built from server-side prices
- Webhook signatures are checked before anything is processed
- A replayed delivery materializes exactly one order
- Processor-reported totals win and the gap is recorded as reconciliation
- Discounts or gift cards gone at settlement are dropped and audited
- Gift card purchases are activated by the webhook
"""

import json
import re
import time

import pytest
import stripe
from sqlalchemy.exc import IntegrityError

from conftest import checkout_completed, post_webhook, signed_headers
from shopfront.errors import SignatureInvalidError
from shopfront.extensions import db
from shopfront.models import AuditLog, DiscountCode, GiftCard, GiftCardTransaction, Order, Product
from shopfront.models.gift_cards import GIFT_CARD_ACTIVE, GIFT_CARD_CANCELLED, GIFT_CARD_PENDING
from shopfront.services import audit_service, card_payment_service, discount_service


SESSION_URL = "https://checkout.stripe.test/c/pay/cs_test_1"
CARD_ORDER_NUMBER = re.compile(r"^PP-\d{8}-\d{4}$")


def completed_session(cube, popit, **overrides):
    session = {
        "id": "cs_test_abc",
        "object": "checkout.session",
        "amount_total": 2295,
        "payment_intent": "pi_test_abc",
        "customer_details": {"email": "Buyer@Example.com", "name": "Jo Buyer", "phone": "07700900123"},
        "shipping_details": {
            "name": "Jo Buyer",
            "address": {"line1": "1 High Street", "line2": None, "city": "Leeds", "postal_code": "LS1 1AA", "country": "GB"},
        },
        "metadata": {
            "items": json.dumps([{"id": cube.id, "q": 2, "p": 1000}, {"id": popit.id, "q": 1, "p": 550}]),
        },
    }
    session.update(overrides)
    return session


# =============================================================================
# INITIATE
# =============================================================================


class TestInitiate:

    def test_session_uses_server_prices(self, client, products, make_discount, stripe_api):
        cube, _ = products
        make_discount("TEN", "percentage", "10")

        resp = client.post("/api/stripe-checkout", json={
            "items": [{"id": cube.id, "quantity": 2, "price": 0.01}],
            "discountCode": "ten",
            "customer_email": "Buyer@Example.com",
        })

        assert resp.status_code == 200, resp.json
        assert resp.json["sessionId"] == "cs_test_1"
        assert resp.json["url"] == SESSION_URL
        assert resp.json["quote"]["subtotal"] == 20.0
        assert resp.json["quote"]["discount_amount"] == 2.0
        assert resp.json["quote"]["shipping"] == 2.99
        assert resp.json["quote"]["total"] == 20.99

        assert stripe_api.coupons == [{"amount_off": 200, "currency": "gbp", "duration": "once", "name": "TEN"}]

        params = stripe_api.sessions[0]
        assert params["line_items"][0]["price_data"]["unit_amount"] == 1000
        assert params["line_items"][0]["quantity"] == 2
        assert params["line_items"][1]["price_data"]["product_data"]["name"] == "Shipping"
        assert params["line_items"][1]["price_data"]["unit_amount"] == 299
        assert params["discounts"] == [{"coupon": "co_test_1"}]
        assert params["metadata"]["discount_code"] == "TEN"
        assert params["customer_email"] == "buyer@example.com"
        assert json.loads(params["metadata"]["items"]) == [{"id": cube.id, "q": 2, "p": 1000}]

    def test_client_gift_card_keys(self, client, products, make_gift_card, stripe_api):
        cube, _ = products
        card = make_gift_card(5000)

        resp = client.post("/api/stripe-checkout", json={
            "items": [{"id": cube.id, "quantity": 2}],
            "giftCardCode": card.code.lower(),
            "giftCardAmount": "5.00",
        })

        assert resp.status_code == 200, resp.json
        assert resp.json["quote"]["gift_card_amount"] == 5.0
        assert resp.json["quote"]["total"] == 15.0
        assert stripe_api.coupons[0]["amount_off"] == 500
        metadata = stripe_api.sessions[0]["metadata"]
        assert metadata["gift_card_code"] == card.code
        assert metadata["gift_card_amount_minor"] == "500"

    def test_snake_case_keys_still_accepted(self, client, products, make_discount, stripe_api):
        cube, _ = products
        make_discount("TEN", "percentage", "10")

        resp = client.post("/api/stripe-checkout", json={
            "items": [{"id": cube.id, "quantity": 2}],
            "discount_code": "TEN",
        })

        assert resp.status_code == 200, resp.json
        assert resp.json["quote"]["discount_amount"] == 2.0

    def test_no_coupon_without_reduction(self, client, products, stripe_api):
        cube, _ = products
        resp = client.post("/api/stripe-checkout", json={"items": [{"id": cube.id, "quantity": 3}]})
        assert resp.status_code == 200
        assert stripe_api.coupons == []
        params = stripe_api.sessions[0]
        assert "discounts" not in params
        assert "customer_email" not in params
        assert len(params["line_items"]) == 1

    def test_full_gift_card_coverage_redirects(self, client, products, make_gift_card, stripe_api):
        cube, _ = products
        card = make_gift_card(5000)
        resp = client.post("/api/stripe-checkout", json={
            "items": [{"id": cube.id, "quantity": 2}],
            "giftCardCode": card.code,
        })
        assert resp.status_code == 400
        assert resp.json["error"] == "Your gift card covers this order. Please use gift card checkout."
        assert stripe_api.calls == 0

    def test_invalid_discount(self, client, products, stripe_api):
        cube, _ = products
        resp = client.post("/api/stripe-checkout", json={
            "items": [{"id": cube.id, "quantity": 1}],
            "discountCode": "NOPE",
        })
        assert resp.status_code == 400
        assert resp.json["error"] == "Invalid discount code"

    def test_processor_error(self, client, products, stripe_api):
        cube, _ = products
        stripe_api.error = stripe.AuthenticationError("Invalid API Key")
        resp = client.post("/api/stripe-checkout", json={"items": [{"id": cube.id, "quantity": 1}]})
        assert resp.status_code == 500
        assert resp.json["error"] == "Invalid API Key"

    def test_processor_unreachable(self, client, products, stripe_api):
        cube, _ = products
        stripe_api.error = stripe.APIConnectionError("Connection refused")
        resp = client.post("/api/stripe-checkout", json={"items": [{"id": cube.id, "quantity": 1}]})
        assert resp.status_code == 500
        assert resp.json["error"] == "Payment processor unavailable"

    def test_invalid_json(self, client):
        resp = client.post("/api/stripe-checkout", data="nope", content_type="application/json")
        assert resp.status_code == 400
        assert resp.json["error"] == "Invalid JSON in request body"


# =============================================================================
# SIGNATURES
# =============================================================================


class TestSignature:

    RAW = b'{"id": "evt_1"}'

    def test_valid(self):
        ts = 1_700_000_000
        header = f"t={ts},v1={card_payment_service.sign_payload(self.RAW, 'secret', ts)}"
        card_payment_service.verify_signature(self.RAW, header, "secret", now=ts + 10)

    def test_any_v1_may_match(self):
        ts = 1_700_000_000
        good = card_payment_service.sign_payload(self.RAW, "secret", ts)
        card_payment_service.verify_signature(self.RAW, f"t={ts},v1=deadbeef,v1={good}", "secret", now=ts)

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "t=1700000000", "v1=00"])
    def test_malformed_header(self, header):
        with pytest.raises(SignatureInvalidError):
            card_payment_service.verify_signature(self.RAW, header, "secret", now=1_700_000_000)

    def test_outside_tolerance(self):
        ts = 1_700_000_000
        header = f"t={ts},v1={card_payment_service.sign_payload(self.RAW, 'secret', ts)}"
        with pytest.raises(SignatureInvalidError):
            card_payment_service.verify_signature(self.RAW, header, "secret", tolerance=300, now=ts + 301)

    def test_tampered_body(self):
        ts = 1_700_000_000
        header = f"t={ts},v1={card_payment_service.sign_payload(self.RAW, 'secret', ts)}"
        with pytest.raises(SignatureInvalidError):
            card_payment_service.verify_signature(b'{"id": "evt_2"}', header, "secret", now=ts)

    def test_missing_secret(self):
        with pytest.raises(SignatureInvalidError):
            card_payment_service.verify_signature(self.RAW, "t=1,v1=00", None)


# =============================================================================
# WEBHOOK
# =============================================================================


class TestWebhook:

    def test_rejects_wrong_content_type(self, client):
        resp = client.post("/api/stripe-webhook", data="{}", content_type="text/plain")
        assert resp.status_code == 400

    def test_rejects_bad_signature(self, client, products):
        cube, popit = products
        raw = json.dumps(checkout_completed(completed_session(cube, popit))).encode()
        resp = client.post("/api/stripe-webhook", data=raw, headers=signed_headers(raw, secret="whsec_wrong"))
        assert resp.status_code == 400
        assert resp.json["error"] == "Invalid signature"
        assert db.session.query(Order).count() == 0

    def test_rejects_stale_timestamp(self, client, products):
        cube, popit = products
        resp = post_webhook(client, checkout_completed(completed_session(cube, popit)), timestamp=int(time.time()) - 600)
        assert resp.status_code == 400
        assert db.session.query(Order).count() == 0

    def test_ignores_other_events(self, client):
        resp = post_webhook(client, {"id": "evt_x", "type": "payment_intent.created", "data": {"object": {}}})
        assert resp.status_code == 200
        assert resp.json == {"received": True}

    def test_materializes_order(self, client, products, make_discount):
        cube, popit = products
        make_discount("TEN", "percentage", "10")
        session = completed_session(cube, popit)
        session["metadata"]["discount_code"] = "TEN"

        resp = post_webhook(client, checkout_completed(session))

        assert resp.status_code == 200, resp.json
        assert resp.json["duplicate"] is False
        order = db.session.query(Order).filter_by(idempotency_key="cs_test_abc").one()
        assert order.order_number == resp.json["order_number"]
        assert CARD_ORDER_NUMBER.match(order.order_number)
        assert order.status == "paid"
        assert order.payment_method == "card"
        assert order.payment_reference == "pi_test_abc"
        assert order.customer_email == "buyer@example.com"
        assert order.subtotal_minor == 2550
        assert order.discount_amount_minor == 255
        assert order.shipping_minor == 0
        assert order.total_minor == 2295
        assert order.reconciliation_minor == 0
        assert [item["quantity"] for item in order.items] == [2, 1]

        # PII is encrypted at rest
        assert order.customer_phone != "07700900123"
        assert "Leeds" not in order.shipping_address

        db.session.expire_all()
        assert db.session.get(Product, cube.id).stock == 8
        assert db.session.get(Product, popit.id).stock == 9
        assert db.session.query(DiscountCode).filter_by(code="TEN").one().use_count == 1

    def test_replay_creates_one_order(self, client, products, make_discount, make_gift_card):
        cube, popit = products
        make_discount("TEN", "percentage", "10")
        card = make_gift_card(5000)
        session = completed_session(cube, popit, amount_total=1295)
        session["metadata"].update({
            "discount_code": "TEN",
            "gift_card_code": card.code,
            "gift_card_amount_minor": "1000",
        })
        event = checkout_completed(session)

        first = post_webhook(client, event)
        second = post_webhook(client, event)

        assert first.status_code == 200, first.json
        assert second.status_code == 200, second.json
        assert second.json["duplicate"] is True
        assert first.json["order_number"] == second.json["order_number"]

        db.session.expire_all()
        assert db.session.query(Order).count() == 1
        order = db.session.query(Order).one()
        assert order.gift_card_amount_minor == 1000
        assert order.total_minor == 1295
        assert order.reconciliation_minor == 0

        redemptions = (
            db.session.query(GiftCardTransaction)
            .filter_by(gift_card_id=card.id, transaction_type="redemption")
            .all()
        )
        assert len(redemptions) == 1
        assert redemptions[0].order_reference == order.order_number
        assert db.session.get(GiftCard, card.id).current_balance_minor == 4000
        assert db.session.query(DiscountCode).filter_by(code="TEN").one().use_count == 1

    def test_reported_total_wins(self, client, products):
        cube, popit = products
        session = completed_session(cube, popit, amount_total=2050)

        resp = post_webhook(client, checkout_completed(session))

        assert resp.status_code == 200
        order = db.session.query(Order).one()
        # 2550 subtotal, free shipping, nothing off; processor took 2050
        assert order.total_minor == 2050
        assert order.reconciliation_minor == -500
        assert (
            order.subtotal_minor - order.discount_amount_minor - order.gift_card_amount_minor
            + order.shipping_minor + order.reconciliation_minor
        ) == order.total_minor
        audit = db.session.query(AuditLog).filter_by(action=audit_service.PAYMENT_AMOUNT_MISMATCH).one()
        assert audit.details["reconciliation_minor"] == -500

    def test_discount_gone_at_settlement_is_dropped(self, client, products, make_discount):
        cube, popit = products
        make_discount("GONE", "percentage", "10", is_active=False)
        session = completed_session(cube, popit, amount_total=2295)
        session["metadata"]["discount_code"] = "GONE"

        resp = post_webhook(client, checkout_completed(session))

        assert resp.status_code == 200
        order = db.session.query(Order).one()
        assert order.discount_code is None
        assert order.discount_amount_minor == 0
        assert order.total_minor == 2295
        assert order.reconciliation_minor == -255
        assert db.session.query(AuditLog).filter_by(action=audit_service.DISCOUNT_REJECTED_AT_SETTLEMENT).count() == 1

    def test_gift_card_gone_at_settlement_is_audited(self, client, products, make_gift_card):
        cube, popit = products
        card = make_gift_card(5000)
        card.status = GIFT_CARD_CANCELLED
        db.session.commit()
        session = completed_session(cube, popit, amount_total=1550)
        session["metadata"].update({"gift_card_code": card.code, "gift_card_amount_minor": "1000"})

        resp = post_webhook(client, checkout_completed(session))

        assert resp.status_code == 200, resp.json
        db.session.expire_all()
        order = db.session.query(Order).one()
        assert order.gift_card_code is None
        assert order.gift_card_amount_minor == 0
        assert order.total_minor == 1550
        assert order.reconciliation_minor == -1000
        audit = db.session.query(AuditLog).filter_by(action=audit_service.GIFT_CARD_REJECTED_AT_SETTLEMENT).one()
        assert audit.details["gift_card_code"] == card.code
        assert db.session.get(GiftCard, card.id).current_balance_minor == 5000

    def test_discount_counter_failure_keeps_order(self, client, products, make_discount, monkeypatch):
        cube, popit = products
        make_discount("TEN", "percentage", "10")
        session = completed_session(cube, popit)
        session["metadata"]["discount_code"] = "TEN"

        def failing_record_use(*args, **kwargs):
            raise IntegrityError("INSERT INTO discount_usage", {}, Exception("constraint failed"))

        monkeypatch.setattr(discount_service, "record_use", failing_record_use)

        resp = post_webhook(client, checkout_completed(session))

        assert resp.status_code == 200, resp.json
        db.session.expire_all()
        order = db.session.query(Order).one()
        assert order.discount_code == "TEN"
        assert order.total_minor == 2295
        assert db.session.get(Product, cube.id).stock == 8
        assert db.session.query(DiscountCode).filter_by(code="TEN").one().use_count == 0

    def test_missing_email_is_bad_input(self, client, products):
        cube, popit = products
        session = completed_session(cube, popit, customer_details={})
        resp = post_webhook(client, checkout_completed(session))
        assert resp.status_code == 400
        assert db.session.query(Order).count() == 0


# =============================================================================
# GIFT CARD PURCHASE
# =============================================================================


class TestGiftCardPurchase:

    def test_purchase_flow(self, client, stripe_api):
        stripe_api.session_response = {"id": "cs_gift_1", "url": SESSION_URL}

        resp = client.post("/api/gift-card-checkout", json={
            "amount": 25,
            "purchaser_name": "Sam Sender",
            "purchaser_email": "sam@example.com",
            "recipient_name": "Riley",
            "recipient_email": "riley@example.com",
            "personal_message": "Happy birthday!",
        })
        assert resp.status_code == 200, resp.json
        assert resp.json["sessionId"] == "cs_gift_1"

        card = db.session.query(GiftCard).one()
        assert card.status == GIFT_CARD_PENDING
        assert card.initial_balance_minor == 2500

        params = stripe_api.sessions[0]
        assert params["metadata"]["type"] == "gift_card_purchase"
        assert params["metadata"]["gift_card_id"] == str(card.id)
        assert params["line_items"][0]["price_data"]["unit_amount"] == 2500
        assert stripe_api.coupons == []

        session = {
            "id": "cs_gift_1",
            "amount_total": 2500,
            "customer_details": {"email": "sam@example.com"},
            "metadata": {"type": "gift_card_purchase", "gift_card_id": str(card.id), "gift_card_code": card.code},
        }
        first = post_webhook(client, checkout_completed(session))
        second = post_webhook(client, checkout_completed(session))

        assert first.json == {"received": True, "gift_card_code": card.code, "activated": True}
        assert second.json["activated"] is False
        db.session.expire_all()
        card = db.session.query(GiftCard).one()
        assert card.status == GIFT_CARD_ACTIVE
        assert db.session.query(Order).count() == 0

    @pytest.mark.parametrize(
        "body,message",
        [
            ({"amount": 25, "purchaser_name": "Sam"}, "Amount, name, and email are required"),
            ({"amount": 4, "purchaser_name": "Sam", "purchaser_email": "sam@example.com"}, "Amount must be between £5 and £500"),
            ({"amount": 501, "purchaser_name": "Sam", "purchaser_email": "sam@example.com"}, "Amount must be between £5 and £500"),
            (
                {"amount": 25, "purchaser_name": "Sam", "purchaser_email": "sam@example.com", "recipient_email": "nope"},
                "Invalid recipient email address",
            ),
        ],
    )
    def test_validation(self, client, stripe_api, body, message):
        resp = client.post("/api/gift-card-checkout", json=body)
        assert resp.status_code == 400
        assert resp.json["error"] == message
        assert db.session.query(GiftCard).count() == 0

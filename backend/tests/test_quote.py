"""
Order composer.

Verifies the worked pricing examples, the quote invariant, and that carts
are priced from the products table rather than the request.
"""

import pytest

from shopfront.errors import BadInputError, DiscountRejected, GiftCardRejected
from shopfront.extensions import db
from shopfront.services import quote_service
from shopfront.services.quote_service import CartLine, ShippingConfig


SHIPPING = ShippingConfig(free_threshold_minor=2000, flat_rate_minor=299)


def line(unit, qty, product_id=1):
    return CartLine(product_id=product_id, title=f"Item {product_id}", unit_price_minor=unit, quantity=qty)


def assert_invariant(quote):
    assert quote.subtotal_minor - quote.discount_amount_minor - quote.gift_card_amount_minor + quote.shipping_minor == quote.total_minor
    assert 0 <= quote.discount_amount_minor <= quote.subtotal_minor
    assert 0 <= quote.gift_card_amount_minor <= quote.pre_gift_minor
    assert quote.total_minor >= 0


class TestWorkedExamples:

    def test_percentage_discount_reaches_free_shipping(self, make_discount):
        make_discount("TEN", "percentage", "10")
        quote = quote_service.compose(
            [line(1000, 2, 1), line(550, 1, 2)], discount_code="TEN", shipping=SHIPPING,
        )
        assert quote.subtotal_minor == 2550
        assert quote.discount_amount_minor == 255
        assert quote.post_discount_minor == 2295
        assert quote.shipping_minor == 0
        assert quote.total_minor == 2295
        assert_invariant(quote)

    def test_fixed_discount_capped_at_subtotal(self, make_discount):
        make_discount("FIVE", "fixed", "5")
        quote = quote_service.compose([line(300, 1)], discount_code="FIVE", shipping=SHIPPING)
        assert quote.discount_amount_minor == 300
        assert quote.post_discount_minor == 0
        assert quote.shipping_minor == 299
        assert quote.total_minor == 299
        assert_invariant(quote)

    def test_free_delivery_overrides_shipping(self, make_discount):
        make_discount("FREESHIP", "free_delivery", "0")
        quote = quote_service.compose([line(1500, 1)], discount_code="FREESHIP", shipping=SHIPPING)
        assert quote.shipping_minor == 0
        assert quote.discount_amount_minor == 0
        assert quote.total_minor == 1500
        assert_invariant(quote)


class TestShipping:

    @pytest.mark.parametrize("post_discount,expected", [(0, 299), (1999, 299), (2000, 0), (5000, 0)])
    def test_threshold(self, post_discount, expected):
        assert quote_service.shipping_for(post_discount, free_override=False, config=SHIPPING) == expected

    def test_override(self):
        assert quote_service.shipping_for(100, free_override=True, config=SHIPPING) == 0


class TestGiftCardInQuote:

    def test_gift_card_applies_after_shipping(self, make_gift_card):
        card = make_gift_card(1000)
        quote = quote_service.compose([line(1500, 1)], gift_card_code=card.code, shipping=SHIPPING)
        assert quote.pre_gift_minor == 1799
        assert quote.gift_card_amount_minor == 1000
        assert quote.total_minor == 799
        assert quote.gift_card_code == card.code
        assert not quote.covers_full_order
        assert_invariant(quote)

    def test_gift_card_covers_full_order(self, make_gift_card):
        card = make_gift_card(5000)
        quote = quote_service.compose([line(1000, 2)], gift_card_code=card.code, shipping=SHIPPING)
        assert quote.gift_card_amount_minor == 2000
        assert quote.total_minor == 0
        assert quote.covers_full_order
        assert_invariant(quote)

    def test_requested_amount_caps_card_use(self, make_gift_card):
        card = make_gift_card(5000)
        quote = quote_service.compose(
            [line(1000, 2)], gift_card_code=card.code, gift_card_amount_minor=500, shipping=SHIPPING,
        )
        assert quote.gift_card_amount_minor == 500
        assert quote.total_minor == 1500

    def test_rejected_gift_card_raises(self):
        with pytest.raises(GiftCardRejected):
            quote_service.compose([line(1000, 1)], gift_card_code="GC-AAAA-AAAA-AAAA", shipping=SHIPPING)


class TestDiscountRejection:

    def test_raises_by_default(self):
        with pytest.raises(DiscountRejected):
            quote_service.compose([line(1000, 1)], discount_code="NOPE", shipping=SHIPPING)

    def test_dropped_at_settlement(self):
        quote = quote_service.compose(
            [line(1000, 1)], discount_code="NOPE", drop_rejected_discount=True, shipping=SHIPPING,
        )
        assert quote.discount is None
        assert quote.discount_rejection.reason == "unknown"
        assert quote.total_minor == 1299


class TestVerifyCart:

    def test_prices_come_from_products(self, products):
        cube, popit = products
        lines = quote_service.verify_cart([
            {"id": cube.id, "quantity": 2, "price": 0.01, "title": "Free stuff"},
            {"id": str(popit.id), "quantity": "1", "color": "Blue"},
        ])
        assert [(l.product_id, l.unit_price_minor, l.quantity) for l in lines] == [(cube.id, 1000, 2), (popit.id, 550, 1)]
        assert lines[0].title == "Infinity Cube"
        assert lines[1].color == "Blue"

    @pytest.mark.parametrize("quantity", [0, 11, -1, 1.5, "two", True, None])
    def test_quantity_bounds(self, products, quantity):
        cube, _ = products
        with pytest.raises(BadInputError) as exc:
            quote_service.verify_cart([{"id": cube.id, "quantity": quantity}])
        assert exc.value.message == "Quantity must be between 1 and 10"

    def test_empty_cart(self):
        with pytest.raises(BadInputError):
            quote_service.verify_cart([])

    def test_unknown_and_inactive_products(self, products):
        cube, _ = products
        with pytest.raises(BadInputError) as exc:
            quote_service.verify_cart([{"id": 9999, "quantity": 1}])
        assert exc.value.message == "Product not found: 9999"

        cube.is_active = False
        db.session.commit()
        with pytest.raises(BadInputError):
            quote_service.verify_cart([{"id": cube.id, "quantity": 1}])

    def test_stock_is_checked_across_lines(self, products):
        cube, _ = products
        with pytest.raises(BadInputError) as exc:
            quote_service.verify_cart([
                {"id": cube.id, "quantity": 6, "variation": "Red"},
                {"id": cube.id, "quantity": 5, "variation": "Blue"},
            ])
        assert exc.value.message == "Insufficient stock for Infinity Cube"


class TestSnapshot:

    def test_snapshot_keeps_charged_prices(self, products):
        cube, _ = products
        lines = quote_service.verify_cart([{"id": cube.id, "quantity": 2, "variation": "Red"}])
        snapshot = quote_service.snapshot_json(lines)

        cube.price_minor = 1200
        db.session.commit()

        restored = quote_service.lines_from_snapshot(snapshot)
        assert restored[0].unit_price_minor == 1000
        assert restored[0].variation == "Red"
        assert restored[0].title == "Infinity Cube"

    @pytest.mark.parametrize("bad", ["", "not json", "[]", '[{"id": 1}]'])
    def test_invalid_snapshot(self, bad):
        with pytest.raises(BadInputError):
            quote_service.lines_from_snapshot(bad)

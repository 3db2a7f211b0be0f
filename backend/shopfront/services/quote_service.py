# Overview: Server-side cart verification and the deterministic price breakdown (Quote).

"""
Order Composer

WHY: Client totals are never trusted. Every checkout path (card, wallet,
gift-card-only) and every settlement re-derives the same Quote from
product prices in the database, the discount evaluator and the gift-card
validator.

INVARIANT (every Quote):
subtotal - discount - gift_card + shipping == total,
discount <= subtotal, gift_card <= pre_gift, total >= 0

compose() reads only; nothing is mutated here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from flask import current_app

from ..errors import BadInputError
from ..extensions import db
from ..models import Product
from .. import money
from . import discount_service, gift_card_service
from .discount_service import DiscountApplied, DiscountRejection, SHIPPING_OVERRIDE_FREE
from .gift_card_service import GiftCardValidation


MIN_QUANTITY = 1
MAX_QUANTITY = 10
MAX_LINES = 50


@dataclass(frozen=True)
class CartLine:
    """Product snapshot embedded in orders."""

    product_id: int
    title: str
    unit_price_minor: int
    quantity: int
    variation: str | None = None
    color: str | None = None

    @property
    def line_total_minor(self) -> int:
        return self.unit_price_minor * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.product_id,
            "title": self.title,
            "unit_price_minor": self.unit_price_minor,
            "price": money.to_major(self.unit_price_minor),
            "quantity": self.quantity,
            "variation": self.variation,
            "color": self.color,
        }


@dataclass(frozen=True)
class ShippingConfig:
    free_threshold_minor: int
    flat_rate_minor: int

    @classmethod
    def from_app(cls) -> "ShippingConfig":
        return cls(
            free_threshold_minor=current_app.config["SHIPPING_FREE_THRESHOLD_MINOR"],
            flat_rate_minor=current_app.config["SHIPPING_FLAT_RATE_MINOR"],
        )


@dataclass(frozen=True)
class Quote:
    items: tuple[CartLine, ...]
    subtotal_minor: int
    discount: DiscountApplied | None
    discount_amount_minor: int
    post_discount_minor: int
    shipping_minor: int
    pre_gift_minor: int
    gift_card: GiftCardValidation | None
    gift_card_amount_minor: int
    total_minor: int
    # Set only when compose() was told to drop a failing discount
    discount_rejection: DiscountRejection | None = field(default=None, compare=False)

    @property
    def discount_code(self) -> str | None:
        return self.discount.code if self.discount else None

    @property
    def gift_card_code(self) -> str | None:
        return self.gift_card.code if self.gift_card and self.gift_card_amount_minor > 0 else None

    @property
    def covers_full_order(self) -> bool:
        return self.gift_card is not None and self.total_minor == 0

    def to_dict(self) -> dict:
        return {
            "items": [line.to_dict() for line in self.items],
            "subtotal": money.to_major(self.subtotal_minor),
            "discount_code": self.discount_code,
            "discount_amount": money.to_major(self.discount_amount_minor),
            "shipping": money.to_major(self.shipping_minor),
            "gift_card_code": self.gift_card_code,
            "gift_card_amount": money.to_major(self.gift_card_amount_minor),
            "total": money.to_major(self.total_minor),
            "currency": money.CURRENCY,
        }


# ================================
# Cart verification
# ================================

def _parse_quantity(raw) -> int:
    if isinstance(raw, bool):
        raise BadInputError("Quantity must be between 1 and 10")
    try:
        quantity = int(raw)
    except (TypeError, ValueError):
        raise BadInputError("Quantity must be between 1 and 10")
    if quantity != raw and str(quantity) != str(raw).strip():
        raise BadInputError("Quantity must be between 1 and 10")
    if not (MIN_QUANTITY <= quantity <= MAX_QUANTITY):
        raise BadInputError("Quantity must be between 1 and 10")
    return quantity


def _parse_product_id(raw) -> int:
    if isinstance(raw, bool) or raw in (None, ""):
        raise BadInputError("Invalid item IDs")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadInputError("Invalid item IDs")


def _optional_label(raw) -> str | None:
    if raw in (None, ""):
        return None
    return str(raw).strip()[:100] or None


def verify_cart(items) -> list[CartLine]:
    """
    Resolve raw cart entries against the products table.

    Entries are {id, quantity, variation?, color?}; any client-side price or
    title is ignored. Missing/inactive products and insufficient stock are
    bad input.
    """
    if not isinstance(items, list) or not items:
        raise BadInputError("No items provided")
    if len(items) > MAX_LINES:
        raise BadInputError("Too many items in cart")

    requested = []
    for raw in items:
        if not isinstance(raw, dict):
            raise BadInputError("Invalid cart item")
        requested.append((
            _parse_product_id(raw.get("id")),
            _parse_quantity(raw.get("quantity")),
            _optional_label(raw.get("variation")),
            _optional_label(raw.get("color")),
        ))

    product_ids = {pid for pid, _, _, _ in requested}
    products = {
        p.id: p
        for p in db.session.query(Product).filter(Product.id.in_(product_ids), Product.is_active.is_(True)).all()
    }

    totals_per_product: dict[int, int] = {}
    lines = []
    for pid, quantity, variation, color in requested:
        product = products.get(pid)
        if product is None:
            raise BadInputError(f"Product not found: {pid}")
        totals_per_product[pid] = totals_per_product.get(pid, 0) + quantity
        if product.stock < totals_per_product[pid]:
            raise BadInputError(f"Insufficient stock for {product.title}")
        lines.append(CartLine(
            product_id=product.id,
            title=product.title,
            unit_price_minor=product.price_minor,
            quantity=quantity,
            variation=variation,
            color=color,
        ))
    return lines


# ================================
# Snapshot (processor metadata)
# ================================

def snapshot_json(lines) -> str:
    """Compact cart snapshot carried through processor metadata (500-char values)."""
    compact = []
    for line in lines:
        entry = {"id": line.product_id, "q": line.quantity, "p": line.unit_price_minor}
        if line.variation:
            entry["v"] = line.variation
        if line.color:
            entry["c"] = line.color
        compact.append(entry)
    return json.dumps(compact, separators=(",", ":"))


def lines_from_snapshot(snapshot: str) -> list[CartLine]:
    """
    Rebuild cart lines from snapshot_json output.

    Prices come from the snapshot (what the customer was charged for);
    titles are looked up again for display.
    """
    try:
        compact = json.loads(snapshot or "[]")
    except ValueError:
        raise BadInputError("Invalid cart snapshot")
    if not isinstance(compact, list) or not compact:
        raise BadInputError("Invalid cart snapshot")

    ids = {int(e.get("id")) for e in compact if isinstance(e, dict) and e.get("id") is not None}
    titles = dict(db.session.query(Product.id, Product.title).filter(Product.id.in_(ids)).all()) if ids else {}

    lines = []
    for entry in compact:
        if not isinstance(entry, dict):
            raise BadInputError("Invalid cart snapshot")
        try:
            pid = int(entry["id"])
            quantity = int(entry["q"])
            price = int(entry["p"])
        except (KeyError, TypeError, ValueError):
            raise BadInputError("Invalid cart snapshot")
        lines.append(CartLine(
            product_id=pid,
            title=titles.get(pid, "Item"),
            unit_price_minor=price,
            quantity=quantity,
            variation=entry.get("v"),
            color=entry.get("c"),
        ))
    return lines


# ================================
# Composition
# ================================

def shipping_for(post_discount_minor: int, *, free_override: bool, config: ShippingConfig) -> int:
    if free_override or post_discount_minor >= config.free_threshold_minor:
        return 0
    return config.flat_rate_minor


def compose(
    lines,
    *,
    discount_code=None,
    gift_card_code=None,
    gift_card_amount_minor: int | None = None,
    customer_email: str | None = None,
    drop_rejected_discount: bool = False,
    shipping: ShippingConfig | None = None,
    now=None,
) -> Quote:
    """
    Price `lines`.

    Discount rejections raise DiscountRejected unless drop_rejected_discount
    is set (settlement), in which case the Quote carries the rejection and
    no discount. Gift-card rejections always raise GiftCardRejected.
    gift_card_amount_minor optionally caps how much of the card to use.
    """
    lines = tuple(lines)
    shipping = shipping or ShippingConfig.from_app()

    subtotal = money.add(*(line.line_total_minor for line in lines))

    applied = None
    rejection = None
    if discount_code and str(discount_code).strip():
        result = discount_service.evaluate(discount_code, subtotal, customer_email=customer_email, now=now)
        if isinstance(result, DiscountRejection):
            if not drop_rejected_discount:
                raise result.to_error()
            rejection = result
        else:
            applied = result

    discount_amount = applied.adjustment_minor if applied else 0
    post_discount = money.sub(subtotal, discount_amount)
    shipping_minor = shipping_for(
        post_discount,
        free_override=bool(applied and applied.shipping_override == SHIPPING_OVERRIDE_FREE),
        config=shipping,
    )
    pre_gift = money.add(post_discount, shipping_minor)

    validation = None
    gift_card_amount = 0
    if gift_card_code and str(gift_card_code).strip():
        validation = gift_card_service.validate_or_raise(gift_card_code, pre_gift, now=now)
        gift_card_amount = validation.applicable_minor
        if gift_card_amount_minor is not None and gift_card_amount_minor >= 0:
            gift_card_amount = money.min_minor(gift_card_amount, gift_card_amount_minor)

    total = money.sub(pre_gift, gift_card_amount)

    return Quote(
        items=lines,
        subtotal_minor=subtotal,
        discount=applied,
        discount_amount_minor=discount_amount,
        post_discount_minor=post_discount,
        shipping_minor=shipping_minor,
        pre_gift_minor=pre_gift,
        gift_card=validation,
        gift_card_amount_minor=gift_card_amount,
        total_minor=total,
        discount_rejection=rejection,
    )


def parse_optional_amount(raw, field: str) -> int | None:
    """Client-supplied pounds -> minor units, None when absent."""
    if raw in (None, ""):
        return None
    try:
        value = money.parse_major(raw, field)
    except ValueError as exc:
        raise BadInputError(str(exc))
    if value < 0:
        raise BadInputError(f"{field} cannot be negative")
    return value


def body_field(data: dict, name: str, alias: str):
    """Request value under `name` (camelCase), falling back to the snake_case `alias`."""
    value = data.get(name)
    return value if value not in (None, "") else data.get(alias)

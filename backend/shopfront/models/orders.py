from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .. import money
from ._types import MinorUnits


ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = [
    ORDER_PENDING,
    ORDER_PAID,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
]

PAYMENT_CARD = "card"
PAYMENT_WALLET = "wallet"
PAYMENT_GIFT_CARD = "gift_card"


class Order(db.Model):
    """
    Paid order, written once per settled payment.

    INVARIANT:
    subtotal - discount - gift_card + shipping + reconciliation == total

    reconciliation_minor is zero unless the processor settled a different
    amount than the server re-derived (see order_service.materialize_order).

    customer_phone and shipping_address hold PII codec output, never
    plaintext in production.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'paid', 'processing', 'shipped', 'delivered', 'cancelled', 'refunded')",
            name="ck_orders_status",
        ),
        db.CheckConstraint(
            "payment_method IN ('card', 'wallet', 'gift_card')",
            name="ck_orders_payment_method",
        ),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    # Processor reference (checkout session / wallet order). NULL for gift-card-only orders.
    idempotency_key = db.Column(db.String(255), nullable=True, unique=True)

    customer_email = db.Column(db.String(254), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.Text, nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)

    items = db.Column(db.JSON, nullable=False, default=list)

    subtotal_minor = db.Column("subtotal", MinorUnits(), nullable=False)
    discount_code = db.Column(db.String(64), nullable=True)
    discount_amount_minor = db.Column("discount_amount", MinorUnits(), nullable=False, default=0)
    gift_card_code = db.Column(db.String(17), nullable=True)
    gift_card_amount_minor = db.Column("gift_card_amount", MinorUnits(), nullable=False, default=0)
    shipping_minor = db.Column("shipping", MinorUnits(), nullable=False, default=0)
    reconciliation_minor = db.Column("reconciliation", MinorUnits(), nullable=False, default=0)
    total_minor = db.Column("total", MinorUnits(), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default=money.CURRENCY)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING)
    payment_method = db.Column(db.String(16), nullable=False)
    payment_reference = db.Column(db.String(255), nullable=True)

    tracking_number = db.Column(db.String(128), nullable=True)
    tracking_url = db.Column(db.String(512), nullable=True)
    carrier = db.Column(db.String(64), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        """Stored representation; PII fields are returned as persisted."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "shipping_address": self.shipping_address,
            "items": self.items or [],
            "subtotal": money.to_major(self.subtotal_minor),
            "discount_code": self.discount_code,
            "discount_amount": money.to_major(self.discount_amount_minor),
            "gift_card_code": self.gift_card_code,
            "gift_card_amount": money.to_major(self.gift_card_amount_minor),
            "shipping": money.to_major(self.shipping_minor),
            "reconciliation": money.to_major(self.reconciliation_minor),
            "total": money.to_major(self.total_minor),
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "carrier": self.carrier,
            "shipped_at": to_utc_z(self.shipped_at),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

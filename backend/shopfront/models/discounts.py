from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .. import money
from ._types import MinorUnits


DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"
DISCOUNT_FREE_DELIVERY = "free_delivery"

VALID_DISCOUNT_TYPES = [DISCOUNT_PERCENTAGE, DISCOUNT_FIXED, DISCOUNT_FREE_DELIVERY]


class DiscountCode(db.Model):
    """
    Customer-facing discount code.

    discount_value is stored as NUMERIC(10,2) and read by type:
    - percentage: percent in [0, 100]
    - fixed: pounds (converted to pence by the evaluator)
    - free_delivery: ignored

    use_count only moves up, and only when an order is materialized. The
    version_id column turns every UPDATE into a compare-and-swap.
    """
    __tablename__ = "discount_codes"
    __table_args__ = (
        db.CheckConstraint(
            "discount_type IN ('percentage', 'fixed', 'free_delivery')",
            name="ck_discount_codes_type",
        ),
        db.Index("ix_discount_codes_dates", "starts_at", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    discount_type = db.Column(db.String(16), nullable=False)
    discount_value = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    max_uses = db.Column(db.Integer, nullable=True)
    max_uses_per_customer = db.Column(db.Integer, nullable=True)
    min_order_amount_minor = db.Column("min_order_amount", MinorUnits(), nullable=True)

    use_count = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_value": float(self.discount_value) if self.discount_value is not None else None,
            "starts_at": to_utc_z(self.starts_at),
            "expires_at": to_utc_z(self.expires_at),
            "max_uses": self.max_uses,
            "max_uses_per_customer": self.max_uses_per_customer,
            "min_order_amount": money.to_major(self.min_order_amount_minor),
            "use_count": self.use_count,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DiscountUsage(db.Model):
    """
    One row per paid order that used a discount code.

    Backs the per-customer cap (max_uses_per_customer).
    """
    __tablename__ = "discount_usage"
    __table_args__ = (
        db.Index("ix_discount_usage_code_email", "discount_code_id", "customer_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    discount_code_id = db.Column(db.Integer, db.ForeignKey("discount_codes.id", ondelete="CASCADE"), nullable=False)
    customer_email = db.Column(db.String(254), nullable=False)
    order_number = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    discount_code = db.relationship("DiscountCode", backref=db.backref("usages", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "discount_code_id": self.discount_code_id,
            "customer_email": self.customer_email,
            "order_number": self.order_number,
            "created_at": to_utc_z(self.created_at),
        }

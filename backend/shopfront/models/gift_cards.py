from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .. import money
from ._types import MinorUnits


GIFT_CARD_PENDING = "pending"
GIFT_CARD_ACTIVE = "active"
GIFT_CARD_DEPLETED = "depleted"
GIFT_CARD_EXPIRED = "expired"
GIFT_CARD_CANCELLED = "cancelled"

GIFT_CARD_STATUSES = [
    GIFT_CARD_PENDING,
    GIFT_CARD_ACTIVE,
    GIFT_CARD_DEPLETED,
    GIFT_CARD_EXPIRED,
    GIFT_CARD_CANCELLED,
]

SOURCE_PURCHASE = "purchase"
SOURCE_PROMOTIONAL = "promotional"

TX_ISSUE = "issue"
TX_REDEMPTION = "redemption"
TX_REFUND = "refund"
TX_ADJUSTMENT = "adjustment"


class GiftCard(db.Model):
    """
    Stored-value card.

    INVARIANTS:
    - 0 <= current_balance_minor <= initial_balance_minor
    - Only ACTIVE cards are debited
    - Every balance change appends a GiftCardTransaction whose
      balance_after_minor equals the new balance
    - version_id makes every UPDATE a compare-and-swap
    """
    __tablename__ = "gift_cards"
    __table_args__ = (
        db.CheckConstraint("current_balance >= 0", name="ck_gift_cards_balance_nonnegative"),
        db.CheckConstraint(
            "status IN ('pending', 'active', 'depleted', 'expired', 'cancelled')",
            name="ck_gift_cards_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(17), nullable=False, unique=True, index=True)

    initial_balance_minor = db.Column("initial_balance", MinorUnits(), nullable=False)
    current_balance_minor = db.Column("current_balance", MinorUnits(), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default=money.CURRENCY)

    status = db.Column(db.String(16), nullable=False, default=GIFT_CARD_PENDING, index=True)
    source = db.Column(db.String(16), nullable=False, default=SOURCE_PURCHASE)

    purchaser_email = db.Column(db.String(254), nullable=True)
    purchaser_name = db.Column(db.String(255), nullable=True)
    recipient_email = db.Column(db.String(254), nullable=True)
    recipient_name = db.Column(db.String(255), nullable=True)
    personal_message = db.Column(db.Text, nullable=True)

    is_sent = db.Column(db.Boolean, nullable=False, default=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "initial_balance": money.to_major(self.initial_balance_minor),
            "current_balance": money.to_major(self.current_balance_minor),
            "currency": self.currency,
            "status": self.status,
            "source": self.source,
            "purchaser_email": self.purchaser_email,
            "purchaser_name": self.purchaser_name,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "personal_message": self.personal_message,
            "is_sent": self.is_sent,
            "sent_at": to_utc_z(self.sent_at),
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "activated_at": to_utc_z(self.activated_at),
            "expires_at": to_utc_z(self.expires_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class GiftCardTransaction(db.Model):
    """
    Append-only gift card ledger.

    amount_minor is signed: +initial on issue, -debit on redemption,
    +credit on refund, signed delta on adjustment.
    """
    __tablename__ = "gift_card_transactions"
    __table_args__ = (
        db.CheckConstraint(
            "transaction_type IN ('issue', 'redemption', 'refund', 'adjustment')",
            name="ck_gift_card_transactions_type",
        ),
        db.Index("ix_gift_card_transactions_card_created", "gift_card_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    gift_card_id = db.Column(db.Integer, db.ForeignKey("gift_cards.id", ondelete="CASCADE"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False)
    amount_minor = db.Column("amount", MinorUnits(), nullable=False)
    balance_after_minor = db.Column("balance_after", MinorUnits(), nullable=False)

    order_reference = db.Column(db.String(32), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    performed_by_email = db.Column(db.String(254), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    gift_card = db.relationship("GiftCard", backref=db.backref("transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "gift_card_id": self.gift_card_id,
            "transaction_type": self.transaction_type,
            "amount": money.to_major(self.amount_minor),
            "balance_after": money.to_major(self.balance_after_minor),
            "order_reference": self.order_reference,
            "notes": self.notes,
            "performed_by_email": self.performed_by_email,
            "created_at": to_utc_z(self.created_at),
        }

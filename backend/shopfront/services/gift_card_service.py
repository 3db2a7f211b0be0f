# Overview: Gift card issuance, validation, CAS redemption, compensation, and admin operations.

"""
Gift Card Engine

WHY: Gift cards are stored value. Every balance change must be exact,
atomic, and explainable from the ledger alone.

INVARIANTS (enforced here, not in routes):
- Only ACTIVE cards are debited
- debit = min(requested, balance); balance never goes negative
- balance == 0 after a redemption  =>  status DEPLETED
- Every balance change appends exactly one GiftCardTransaction in the
  same DB transaction, with balance_after == the new balance
- The ISSUE row carries +initial_balance, so the ledger sums to the
  current balance

CONCURRENCY:
- gift_cards.version_id turns every UPDATE into a compare-and-swap
- Conflicting writers retry (bounded) via run_with_retry, then 409
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..errors import BadInputError, GiftCardRejected, InternalError, NotFoundError
from ..extensions import db
from ..models import GiftCard, GiftCardTransaction
from ..models.gift_cards import (
    GIFT_CARD_ACTIVE,
    GIFT_CARD_CANCELLED,
    GIFT_CARD_DEPLETED,
    GIFT_CARD_EXPIRED,
    GIFT_CARD_PENDING,
    GIFT_CARD_STATUSES,
    SOURCE_PROMOTIONAL,
    SOURCE_PURCHASE,
    TX_ADJUSTMENT,
    TX_ISSUE,
    TX_REDEMPTION,
    TX_REFUND,
)
from ..time_utils import add_years, as_utc_naive, parse_iso_datetime, utcnow
from .. import money
from . import audit_service
from .concurrency import run_with_retry


CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_RE = re.compile(r"^GC-[ABCDEFGHJKLMNPQRSTUVWXYZ23456789]{4}-[ABCDEFGHJKLMNPQRSTUVWXYZ23456789]{4}-[ABCDEFGHJKLMNPQRSTUVWXYZ23456789]{4}$")
# Looser grammar accepted on the public balance check
CODE_INPUT_RE = re.compile(r"^GC-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")
MAX_CODE_ATTEMPTS = 10

PURCHASE_MIN_MINOR = 500
PURCHASE_MAX_MINOR = 50000
PROMOTIONAL_MIN_MINOR = 100
PROMOTIONAL_MAX_MINOR = 50000

MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 254
MAX_MESSAGE_LENGTH = 500
MAX_NOTES_LENGTH = 500

STATUS_MESSAGES = {
    GIFT_CARD_PENDING: "This gift card has not been activated yet",
    GIFT_CARD_DEPLETED: "This gift card has no remaining balance",
    GIFT_CARD_EXPIRED: "This gift card has expired",
    GIFT_CARD_CANCELLED: "This gift card has been cancelled",
}
UNKNOWN_MESSAGE = "Invalid gift card code"

REASON_UNKNOWN = "unknown"


@dataclass(frozen=True)
class GiftCardValidation:
    """Read-only answer to "how much of this order can the card cover?"."""

    valid: bool
    code: str
    reason: str | None = None
    message: str = ""
    balance_minor: int = 0
    applicable_minor: int = 0
    remaining_after_use_minor: int = 0
    covers_full_order: bool = False

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "code": self.code,
            "balance": money.to_major(self.balance_minor),
            "applicable_amount": money.to_major(self.applicable_minor),
            "remaining_after_use": money.to_major(self.remaining_after_use_minor),
            "covers_full_order": self.covers_full_order,
            "message": self.message,
        }

    def to_error(self) -> GiftCardRejected:
        return GiftCardRejected(self.reason or REASON_UNKNOWN, self.message)


@dataclass(frozen=True)
class Redemption:
    gift_card_id: int
    code: str
    applied_minor: int
    remaining_minor: int


# ================================
# Codes
# ================================

def generate_code() -> str:
    groups = ["".join(secrets.choice(CODE_ALPHABET) for _ in range(4)) for _ in range(3)]
    return "GC-" + "-".join(groups)


def normalize_code(code) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


def _unique_code() -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_code()
        if db.session.query(GiftCard.id).filter_by(code=code).first() is None:
            return code
    raise InternalError("Could not generate unique gift card code")


def get_by_code(code) -> GiftCard | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.session.query(GiftCard).filter_by(code=normalized).first()


def get_card(card_id) -> GiftCard:
    card = db.session.query(GiftCard).filter_by(id=card_id).first()
    if card is None:
        raise NotFoundError("Gift card not found")
    return card


def is_past_expiry(card: GiftCard, now: datetime | None = None) -> bool:
    expires_at = as_utc_naive(card.expires_at)
    return expires_at is not None and expires_at <= (now or utcnow())


def effective_status(card: GiftCard, now: datetime | None = None) -> str:
    """Stored status, except an ACTIVE card past expires_at counts as EXPIRED."""
    if card.status == GIFT_CARD_ACTIVE and is_past_expiry(card, now):
        return GIFT_CARD_EXPIRED
    return card.status


def _rejection_for(card: GiftCard | None, now: datetime | None = None) -> tuple[str, str] | None:
    if card is None:
        return REASON_UNKNOWN, UNKNOWN_MESSAGE
    status = effective_status(card, now)
    if status != GIFT_CARD_ACTIVE:
        return status, STATUS_MESSAGES.get(status, "This gift card is not valid")
    if card.current_balance_minor <= 0:
        return GIFT_CARD_DEPLETED, STATUS_MESSAGES[GIFT_CARD_DEPLETED]
    return None


def _append_tx(card: GiftCard, tx_type: str, amount_minor: int, *, order_reference=None, notes=None, performed_by=None):
    tx = GiftCardTransaction(
        gift_card=card,
        transaction_type=tx_type,
        amount_minor=amount_minor,
        balance_after_minor=card.current_balance_minor,
        order_reference=order_reference,
        notes=notes,
        performed_by_email=performed_by,
    )
    db.session.add(tx)
    return tx


def _validate_text(value, field: str, max_length: int, label: str | None = None) -> str | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise BadInputError(f"{label or field} must be text")
    value = value.strip()
    if len(value) > max_length:
        raise BadInputError(f"{label or field} must be {max_length} characters or less")
    return value or None


# ================================
# Issuance
# ================================

def _insert_card(*, issue_notes: str | None = None, **fields) -> GiftCard:
    """Insert with a fresh code; a unique-constraint race retries with another code."""
    for _ in range(MAX_CODE_ATTEMPTS):
        card = GiftCard(code=_unique_code(), **fields)
        db.session.add(card)
        _append_tx(card, TX_ISSUE, card.initial_balance_minor, notes=issue_notes)
        try:
            db.session.flush()
            return card
        except IntegrityError:
            db.session.rollback()
    raise InternalError("Could not generate unique gift card code")


def issue_purchase(
    *,
    amount_minor: int,
    purchaser_name: str,
    purchaser_email: str,
    recipient_name: str | None = None,
    recipient_email: str | None = None,
    personal_message: str | None = None,
) -> GiftCard:
    """
    Create a PENDING card for a customer purchase.

    The card only becomes spendable when the payment is confirmed
    (see activate()).
    """
    if not isinstance(amount_minor, int) or not (PURCHASE_MIN_MINOR <= amount_minor <= PURCHASE_MAX_MINOR):
        raise BadInputError("Gift card amount must be between £5 and £500")
    purchaser_name = _validate_text(purchaser_name, "purchaser_name", MAX_NAME_LENGTH, "Purchaser name")
    purchaser_email = _validate_text(purchaser_email, "purchaser_email", MAX_EMAIL_LENGTH, "Purchaser email")
    if not purchaser_name or not purchaser_email:
        raise BadInputError("Purchaser name and email are required")

    now = utcnow()
    card = _insert_card(
        initial_balance_minor=amount_minor,
        current_balance_minor=amount_minor,
        currency=money.CURRENCY,
        status=GIFT_CARD_PENDING,
        source=SOURCE_PURCHASE,
        purchaser_name=purchaser_name,
        purchaser_email=purchaser_email.lower(),
        recipient_name=_validate_text(recipient_name, "recipient_name", MAX_NAME_LENGTH, "Recipient name"),
        recipient_email=(_validate_text(recipient_email, "recipient_email", MAX_EMAIL_LENGTH, "Recipient email") or "").lower() or None,
        personal_message=_validate_text(personal_message, "personal_message", MAX_MESSAGE_LENGTH, "Personal message"),
        expires_at=add_years(now, 1),
        is_sent=False,
        issue_notes="Gift card purchased",
    )
    db.session.commit()
    return card


def issue_promotional(
    *,
    amount_minor: int,
    principal=None,
    recipient_name: str | None = None,
    recipient_email: str | None = None,
    personal_message: str | None = None,
    expires_at=None,
    notes: str | None = None,
    brand_name: str | None = None,
) -> GiftCard:
    """Admin-issued card, ACTIVE immediately."""
    if not isinstance(amount_minor, int) or not (PROMOTIONAL_MIN_MINOR <= amount_minor <= PROMOTIONAL_MAX_MINOR):
        raise BadInputError("Amount must be between £1 and £500")

    notes = _validate_text(notes, "notes", MAX_NOTES_LENGTH, "Notes")
    if isinstance(expires_at, str):
        try:
            expires_at = parse_iso_datetime(expires_at)
        except ValueError:
            raise BadInputError("expires_at must be an ISO-8601 date")

    now = utcnow()
    card = _insert_card(
        initial_balance_minor=amount_minor,
        current_balance_minor=amount_minor,
        currency=money.CURRENCY,
        status=GIFT_CARD_ACTIVE,
        source=SOURCE_PROMOTIONAL,
        purchaser_email=getattr(principal, "email", None),
        purchaser_name=brand_name,
        recipient_name=_validate_text(recipient_name, "recipient_name", MAX_NAME_LENGTH, "Recipient name"),
        recipient_email=(_validate_text(recipient_email, "recipient_email", MAX_EMAIL_LENGTH, "Recipient email") or "").lower() or None,
        personal_message=_validate_text(personal_message, "personal_message", MAX_MESSAGE_LENGTH, "Personal message"),
        expires_at=expires_at,
        activated_at=now,
        is_sent=False,
        notes=notes,
        created_by=getattr(principal, "id", None),
        issue_notes=notes or "Promotional gift card created",
    )
    audit_service.log_action(
        audit_service.GIFT_CARD_CREATED,
        principal=principal,
        resource_type="gift_card",
        resource_id=card.id,
        details={"code": card.code, "amount_minor": amount_minor, "source": SOURCE_PROMOTIONAL},
    )
    db.session.commit()
    return card


def activate(card_id: int, *, order_reference: str | None = None) -> tuple[GiftCard, bool]:
    """
    PENDING -> ACTIVE once the purchase payment is confirmed.

    Returns (card, changed). Re-activating an ACTIVE card is a no-op so
    replayed confirmations are harmless.
    """
    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(id=card_id).first()
        if card is None:
            raise NotFoundError("Gift card not found")
        if card.status != GIFT_CARD_PENDING:
            return card, False

        card.status = GIFT_CARD_ACTIVE
        card.activated_at = utcnow()
        audit_service.log_action(
            audit_service.GIFT_CARD_ACTIVATED,
            resource_type="gift_card",
            resource_id=card.id,
            details={"code": card.code, "order_reference": order_reference},
        )
        db.session.commit()
        return card, True

    return run_with_retry(_op, label="gift_card_activate")


# ================================
# Validation (read-only)
# ================================

def validate(code, order_total_minor: int, *, now: datetime | None = None) -> GiftCardValidation:
    """
    How much of `order_total_minor` this card can cover. Never mutates.

    order_total_minor is the pre-gift-card total (post-discount + shipping).
    """
    normalized = normalize_code(code)
    card = get_by_code(normalized)

    rejection = _rejection_for(card, now)
    if rejection is not None:
        reason, message = rejection
        return GiftCardValidation(
            valid=False,
            code=normalized,
            reason=reason,
            message=message,
            balance_minor=card.current_balance_minor if card is not None else 0,
        )

    order_total_minor = max(0, order_total_minor)
    balance = card.current_balance_minor
    applicable = money.min_minor(balance, order_total_minor)
    return GiftCardValidation(
        valid=True,
        code=card.code,
        message=f"Gift card balance: {money.format_major(balance)}",
        balance_minor=balance,
        applicable_minor=applicable,
        remaining_after_use_minor=money.sub(balance, applicable),
        covers_full_order=balance >= order_total_minor,
    )


def validate_or_raise(code, order_total_minor: int, **kwargs) -> GiftCardValidation:
    result = validate(code, order_total_minor, **kwargs)
    if not result.valid:
        raise result.to_error()
    return result


# ================================
# Redemption / compensation
# ================================

def redeem(code, amount_minor: int, *, order_reference: str | None) -> Redemption:
    """
    Debit up to `amount_minor` from an ACTIVE card.

    One DB transaction per attempt: balance UPDATE (version-checked) plus
    the REDEMPTION ledger row. Raises GiftCardRejected for unusable cards
    and TransientConflictError when CAS retries are exhausted.
    """
    normalized = normalize_code(code)
    if amount_minor <= 0:
        raise BadInputError("Redemption amount must be positive")

    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(code=normalized).first()
        rejection = _rejection_for(card)
        if rejection is not None:
            raise GiftCardRejected(*rejection)

        debit = money.min_minor(amount_minor, card.current_balance_minor)
        card.current_balance_minor = money.sub(card.current_balance_minor, debit)
        card.status = GIFT_CARD_DEPLETED if card.current_balance_minor == 0 else GIFT_CARD_ACTIVE
        _append_tx(card, TX_REDEMPTION, -debit, order_reference=order_reference)
        db.session.commit()
        return Redemption(
            gift_card_id=card.id,
            code=card.code,
            applied_minor=debit,
            remaining_minor=card.current_balance_minor,
        )

    return run_with_retry(_op, label="gift_card_redeem")


def refund(card_id: int, amount_minor: int, *, order_reference: str | None, notes: str | None = None) -> GiftCard:
    """
    Compensate a redemption whose order could not be written.

    Credits the balance back (capped at initial_balance) and reopens a
    DEPLETED card.
    """
    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(id=card_id).first()
        if card is None:
            raise NotFoundError("Gift card not found")

        credit = money.min_minor(amount_minor, card.initial_balance_minor - card.current_balance_minor)
        card.current_balance_minor = card.current_balance_minor + credit
        if card.status == GIFT_CARD_DEPLETED and card.current_balance_minor > 0:
            card.status = GIFT_CARD_ACTIVE
        _append_tx(card, TX_REFUND, credit, order_reference=order_reference, notes=notes or "Order failed - redemption reversed")
        db.session.commit()
        return card

    return run_with_retry(_op, label="gift_card_refund")


# ================================
# Admin operations
# ================================

def adjust_balance(card_id, new_balance_minor: int, *, notes, principal=None) -> GiftCard:
    """Set an absolute balance. Notes are mandatory; the ledger gets the signed delta."""
    notes = _validate_text(notes, "notes", MAX_NOTES_LENGTH, "Notes")
    if not notes:
        raise BadInputError("Notes are required for balance adjustments")
    if not isinstance(new_balance_minor, int) or new_balance_minor < 0:
        raise BadInputError("Invalid balance amount")

    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(id=card_id).first()
        if card is None:
            raise NotFoundError("Gift card not found")
        if card.status not in (GIFT_CARD_ACTIVE, GIFT_CARD_DEPLETED):
            raise BadInputError(f"Cannot adjust a {card.status} gift card")
        if new_balance_minor > card.initial_balance_minor:
            raise BadInputError("New balance cannot exceed the initial balance")

        old_balance = card.current_balance_minor
        delta = new_balance_minor - old_balance
        card.current_balance_minor = new_balance_minor
        card.status = GIFT_CARD_DEPLETED if new_balance_minor == 0 else GIFT_CARD_ACTIVE
        _append_tx(card, TX_ADJUSTMENT, delta, notes=notes, performed_by=getattr(principal, "email", None))
        audit_service.log_action(
            audit_service.GIFT_CARD_ADJUSTED,
            principal=principal,
            resource_type="gift_card",
            resource_id=card.id,
            details={
                "code": card.code,
                "old_balance_minor": old_balance,
                "new_balance_minor": new_balance_minor,
                "adjustment_minor": delta,
            },
        )
        db.session.commit()
        return card

    return run_with_retry(_op, label="gift_card_adjust")


def cancel(card_id, *, principal=None) -> GiftCard:
    """Irreversible: balance to zero with an ADJUSTMENT row of -previous_balance."""
    if not card_id:
        raise BadInputError("Gift card ID required")

    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(id=card_id).first()
        if card is None:
            raise NotFoundError("Gift card not found")
        if card.status == GIFT_CARD_CANCELLED:
            raise BadInputError("Gift card is already cancelled")

        previous = card.current_balance_minor
        card.current_balance_minor = 0
        card.status = GIFT_CARD_CANCELLED
        _append_tx(card, TX_ADJUSTMENT, -previous, notes="Gift card cancelled", performed_by=getattr(principal, "email", None))
        audit_service.log_action(
            audit_service.GIFT_CARD_CANCELLED,
            principal=principal,
            resource_type="gift_card",
            resource_id=card.id,
            details={"code": card.code, "remaining_balance_minor": previous},
        )
        db.session.commit()
        return card

    return run_with_retry(_op, label="gift_card_cancel")


def mark_sent(card_id, *, principal=None) -> GiftCard:
    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(id=card_id).first()
        if card is None:
            raise NotFoundError("Gift card not found")
        card.is_sent = True
        card.sent_at = utcnow()
        audit_service.log_action(
            audit_service.GIFT_CARD_SENT,
            principal=principal,
            resource_type="gift_card",
            resource_id=card.id,
            details={"code": card.code},
        )
        db.session.commit()
        return card

    return run_with_retry(_op, label="gift_card_mark_sent")


EDITABLE_FIELDS = ("recipient_email", "recipient_name", "personal_message", "expires_at")


def update_details(card_id, fields: dict, *, principal=None) -> GiftCard:
    """Recipient / message / expiry edits. Balance and status are not editable here."""
    updates = {k: fields[k] for k in EDITABLE_FIELDS if k in fields}
    if not updates:
        raise BadInputError("No valid update fields provided")

    cleaned = {}
    if "recipient_email" in updates:
        email = _validate_text(updates["recipient_email"], "recipient_email", MAX_EMAIL_LENGTH, "Recipient email")
        cleaned["recipient_email"] = email.lower() if email else None
    if "recipient_name" in updates:
        cleaned["recipient_name"] = _validate_text(updates["recipient_name"], "recipient_name", MAX_NAME_LENGTH, "Recipient name")
    if "personal_message" in updates:
        cleaned["personal_message"] = _validate_text(updates["personal_message"], "personal_message", MAX_MESSAGE_LENGTH, "Personal message")
    if "expires_at" in updates:
        raw = updates["expires_at"]
        try:
            cleaned["expires_at"] = parse_iso_datetime(raw) if raw else None
        except (TypeError, ValueError):
            raise BadInputError("expires_at must be an ISO-8601 date")

    def _op():
        card = db.session.query(GiftCard).populate_existing().filter_by(id=card_id).first()
        if card is None:
            raise NotFoundError("Gift card not found")
        for key, value in cleaned.items():
            setattr(card, key, value)
        audit_service.log_action(
            audit_service.GIFT_CARD_UPDATED,
            principal=principal,
            resource_type="gift_card",
            resource_id=card.id,
            details={"code": card.code, "updated_fields": sorted(cleaned)},
        )
        db.session.commit()
        return card

    return run_with_retry(_op, label="gift_card_update")


def expire_overdue(now: datetime | None = None) -> int:
    """Persist EXPIRED for ACTIVE/PENDING cards past expires_at. Balance is left as-is."""
    now = now or utcnow()
    cards = (
        db.session.query(GiftCard)
        .filter(
            GiftCard.status.in_([GIFT_CARD_ACTIVE, GIFT_CARD_PENDING]),
            GiftCard.expires_at.isnot(None),
            GiftCard.expires_at <= now,
        )
        .all()
    )
    for card in cards:
        card.status = GIFT_CARD_EXPIRED
    db.session.commit()
    return len(cards)


# ================================
# Queries
# ================================

def transactions_for(card: GiftCard) -> list[GiftCardTransaction]:
    return (
        card.transactions
        .order_by(GiftCardTransaction.created_at.desc(), GiftCardTransaction.id.desc())
        .all()
    )


def ledger_sum(card_id: int) -> int:
    """Sum of all ledger amounts; equals current_balance_minor for a consistent card."""
    return sum(
        tx.amount_minor
        for tx in db.session.query(GiftCardTransaction).filter_by(gift_card_id=card_id).all()
    )


def list_cards(*, status: str | None = None, unsent: bool = False, search: str | None = None) -> list[GiftCard]:
    query = db.session.query(GiftCard)
    if status and status != "all":
        if status not in GIFT_CARD_STATUSES:
            raise BadInputError(f"Invalid status: {status}")
        query = query.filter(GiftCard.status == status)
    if unsent:
        query = query.filter(GiftCard.is_sent.is_(False), GiftCard.status == GIFT_CARD_ACTIVE)
    if search and search.strip():
        term = f"%{search.strip().lower()}%"
        query = query.filter(or_(
            func.lower(GiftCard.code).like(term),
            func.lower(GiftCard.purchaser_email).like(term),
            func.lower(GiftCard.recipient_email).like(term),
        ))
    return query.order_by(GiftCard.created_at.desc(), GiftCard.id.desc()).all()


def stats_for(cards: list[GiftCard]) -> dict:
    active = [c for c in cards if c.status == GIFT_CARD_ACTIVE]
    return {
        "total": len(cards),
        "active": len(active),
        "pending": sum(1 for c in cards if c.status == GIFT_CARD_PENDING),
        "depleted": sum(1 for c in cards if c.status == GIFT_CARD_DEPLETED),
        "unsent": sum(1 for c in active if not c.is_sent),
        "total_issued": money.to_major(sum(c.initial_balance_minor for c in cards)),
        "total_remaining": money.to_major(sum(c.current_balance_minor for c in active)),
    }


def check_balance(code) -> tuple[GiftCard, list[GiftCardTransaction]]:
    """Public balance lookup: grammar check, 404 when unknown, 400 while pending."""
    normalized = normalize_code(code)
    if not normalized:
        raise BadInputError("Gift card code is required")
    if not CODE_INPUT_RE.match(normalized):
        raise BadInputError("Invalid gift card code format")

    card = get_by_code(normalized)
    if card is None:
        raise NotFoundError("Gift card not found. Please check the code and try again.")
    if card.status == GIFT_CARD_PENDING:
        raise BadInputError("This gift card has not been activated yet. Payment may still be processing.")
    return card, transactions_for(card)


def public_summary(card: GiftCard) -> dict:
    data = card.to_dict()
    keys = ("code", "initial_balance", "current_balance", "currency", "expires_at", "activated_at", "created_at")
    summary = {k: data[k] for k in keys}
    summary["status"] = effective_status(card)
    return summary

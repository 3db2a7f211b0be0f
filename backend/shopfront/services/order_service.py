# Overview: Order numbers, materialization of paid orders, admin status updates, and order reads.

"""
Orders

WHY: A settled payment must become exactly one order row, with the gift
card debited, the discount counted, stock reduced and the customer told,
in that order, and without double effects when a processor retries.

MATERIALIZATION ORDER (all payment paths):
(a) gift-card redemption   (own transaction: CAS + ledger row)
(b) order insert           (unique order_number, unique idempotency_key)
(c) discount use_count + usage row, stock decrement
(d) notification           (caller; best effort)

A failure in (b) compensates (a) with a REFUND ledger row. A duplicate
idempotency_key in (b) means another delivery won the race: compensate
and return that order.
"""

from __future__ import annotations

import random
import secrets
import string
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import BadInputError, GiftCardRejected, NotFoundError, TransientConflictError
from ..extensions import db
from ..models import Order, Product
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_REFUNDED,
    ORDER_SHIPPED,
    ORDER_STATUSES,
    PAYMENT_GIFT_CARD,
)
from ..time_utils import utcnow
from .. import money
from . import audit_service, discount_service, gift_card_service, notification_service, quote_service
from .pii_codec import get_codec
from .quote_service import Quote


CARD_PREFIX = "PP"
GIFT_CARD_ONLY_PREFIX = "FS"
MAX_ORDER_NUMBER_ATTEMPTS = 5
MAX_LIST_LIMIT = 500

ALLOWED_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PAID, ORDER_CANCELLED},
    ORDER_PAID: {ORDER_PROCESSING, ORDER_CANCELLED, ORDER_REFUNDED},
    ORDER_PROCESSING: {ORDER_SHIPPED, ORDER_CANCELLED, ORDER_REFUNDED},
    ORDER_SHIPPED: {ORDER_DELIVERED, ORDER_REFUNDED},
    ORDER_DELIVERED: {ORDER_REFUNDED},
    ORDER_CANCELLED: set(),
    ORDER_REFUNDED: set(),
}

_system_random = random.SystemRandom()


@dataclass(frozen=True)
class CustomerDetails:
    email: str
    name: str | None = None
    phone: str | None = None
    shipping_address: dict | None = None


# ================================
# Order numbers
# ================================

def generate_card_order_number(now=None) -> str:
    """PP-YYYYMMDD-NNNN"""
    now = now or utcnow()
    return f"{CARD_PREFIX}-{now:%Y%m%d}-{_system_random.randint(0, 9999):04d}"


def generate_gift_card_order_number() -> str:
    """FS-XXXXXX (six upper-case alphanumerics)"""
    alphabet = string.ascii_uppercase + string.digits
    return f"{GIFT_CARD_ONLY_PREFIX}-" + "".join(secrets.choice(alphabet) for _ in range(6))


def _fresh_order_number(generator) -> str:
    for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
        candidate = generator()
        if db.session.query(Order.id).filter_by(order_number=candidate).first() is None:
            return candidate
    raise TransientConflictError("Could not allocate an order number, please retry")


# ================================
# Reads
# ================================

def get_by_idempotency_key(key: str | None) -> Order | None:
    if not key:
        return None
    return db.session.query(Order).filter_by(idempotency_key=key).first()


def get_order(order_id) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def serialize(order: Order, codec=None) -> dict:
    """to_dict() with PII decrypted."""
    codec = codec or get_codec()
    data = order.to_dict()
    data["customer_phone"] = codec.decrypt(order.customer_phone)
    data["shipping_address"] = codec.decrypt_json(order.shipping_address)
    return data


def list_orders(*, status: str | None = None, limit=None, customer_email: str | None = None) -> list[dict]:
    query = db.session.query(Order)
    if status:
        if status not in ORDER_STATUSES:
            raise BadInputError(f"Invalid status: {status}")
        query = query.filter(Order.status == status)
    if customer_email:
        query = query.filter(Order.customer_email == customer_email.strip().lower())
    query = query.order_by(Order.created_at.desc(), Order.id.desc())

    if limit not in (None, ""):
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise BadInputError("limit must be a positive integer")
        if limit <= 0:
            raise BadInputError("limit must be a positive integer")
        query = query.limit(min(limit, MAX_LIST_LIMIT))

    codec = get_codec()
    return [serialize(order, codec) for order in query.all()]


# ================================
# Settlement
# ================================

def settlement_quote(
    lines,
    *,
    discount_code=None,
    gift_card_code=None,
    gift_card_amount_minor: int | None = None,
    customer_email: str | None = None,
    reference: str | None = None,
) -> Quote:
    """
    Re-derive the Quote after the processor has taken the money.

    A discount that no longer applies is dropped and audited; a gift card
    that no longer validates is dropped too. The processor-reported amount
    still wins and reconciliation absorbs the difference.
    """
    compose_args = {
        "discount_code": discount_code,
        "customer_email": customer_email,
        "drop_rejected_discount": True,
        "gift_card_amount_minor": gift_card_amount_minor,
    }
    try:
        quote = quote_service.compose(lines, gift_card_code=gift_card_code, **compose_args)
    except GiftCardRejected as exc:
        current_app.logger.warning(
            "Gift card rejected at settlement",
            extra={"reference": reference, "reason": exc.reason},
        )
        audit_service.log_action(
            audit_service.GIFT_CARD_REJECTED_AT_SETTLEMENT,
            resource_type="payment",
            resource_id=reference,
            details={"gift_card_code": gift_card_code, "reason": exc.reason},
            commit=True,
        )
        quote = quote_service.compose(lines, **compose_args)

    if quote.discount_rejection is not None:
        current_app.logger.warning(
            "Discount rejected at settlement",
            extra={"reference": reference, "reason": quote.discount_rejection.reason},
        )
        audit_service.log_action(
            audit_service.DISCOUNT_REJECTED_AT_SETTLEMENT,
            resource_type="payment",
            resource_id=reference,
            details={"discount_code": discount_code, "reason": quote.discount_rejection.reason},
            commit=True,
        )
    return quote


# ================================
# Materialization
# ================================

def _compensate(redemption, order_number: str, reason: str) -> None:
    if redemption is None or redemption.applied_minor <= 0:
        return
    current_app.logger.warning(
        "Compensating gift card redemption",
        extra={"order_number": order_number, "gift_card_id": redemption.gift_card_id, "reason": reason},
    )
    gift_card_service.refund(
        redemption.gift_card_id,
        redemption.applied_minor,
        order_reference=order_number,
        notes=f"Order {order_number} not created ({reason}) - redemption reversed",
    )


def _decrement_stock(quote: Quote, order_number: str) -> None:
    """Best effort; never blocks the order."""
    for line in quote.items:
        try:
            updated = (
                db.session.query(Product)
                .filter(Product.id == line.product_id)
                .update(
                    {Product.stock: case((Product.stock >= line.quantity, Product.stock - line.quantity), else_=0)},
                    synchronize_session=False,
                )
            )
            db.session.commit()
            if not updated:
                current_app.logger.warning(
                    "Stock decrement skipped, product missing",
                    extra={"order_number": order_number, "product_id": line.product_id},
                )
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "Stock decrement failed",
                extra={"order_number": order_number, "product_id": line.product_id},
            )


def materialize_order(
    *,
    quote: Quote,
    customer: CustomerDetails,
    payment_method: str,
    payment_reference: str | None,
    idempotency_key: str | None,
    reported_total_minor: int | None = None,
    require_full_gift_card: bool = False,
) -> tuple[Order, bool]:
    """
    Turn a settled payment into a PAID order.

    Returns (order, created). created is False when an order with the same
    idempotency_key already exists; no side effects happen in that case.

    reported_total_minor is what the processor actually charged; when it
    differs from the re-derived quote the difference is stored in
    reconciliation_minor so the stored components still add up.
    """
    existing = get_by_idempotency_key(idempotency_key)
    if existing is not None:
        return existing, False

    # Fails fast (before any money moves) when production has no PII key
    codec = get_codec()
    encrypted_phone = codec.encrypt(customer.phone)
    encrypted_address = codec.encrypt_json(customer.shipping_address)

    generator = generate_gift_card_order_number if payment_method == PAYMENT_GIFT_CARD else generate_card_order_number
    gift_card_planned = quote.gift_card_amount_minor if quote.gift_card_code else 0

    for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
        order_number = _fresh_order_number(generator)

        # (a) redemption
        redemption = None
        gift_card_applied = 0
        if gift_card_planned > 0:
            try:
                redemption = gift_card_service.redeem(
                    quote.gift_card_code, gift_card_planned, order_reference=order_number
                )
            except GiftCardRejected as exc:
                if require_full_gift_card:
                    raise
                current_app.logger.warning(
                    "Gift card rejected at settlement",
                    extra={"order_number": order_number, "reason": exc.reason},
                )
                audit_service.log_action(
                    audit_service.GIFT_CARD_REJECTED_AT_SETTLEMENT,
                    resource_type="order",
                    resource_id=order_number,
                    details={"gift_card_code": quote.gift_card_code, "reason": exc.reason, "planned_minor": gift_card_planned},
                    commit=True,
                )
            else:
                gift_card_applied = redemption.applied_minor

            if require_full_gift_card and gift_card_applied < gift_card_planned:
                _compensate(redemption, order_number, "insufficient balance")
                raise BadInputError("Gift card balance is no longer sufficient for this order")

        expected_total = money.sub(quote.pre_gift_minor, gift_card_applied)
        total = expected_total if reported_total_minor is None else reported_total_minor

        # (b) insert
        order = Order(
            order_number=order_number,
            idempotency_key=idempotency_key,
            customer_email=customer.email.strip().lower(),
            customer_name=customer.name,
            customer_phone=encrypted_phone,
            shipping_address=encrypted_address,
            items=[line.to_dict() for line in quote.items],
            subtotal_minor=quote.subtotal_minor,
            discount_code=quote.discount_code,
            discount_amount_minor=quote.discount_amount_minor,
            gift_card_code=quote.gift_card_code if gift_card_applied > 0 else None,
            gift_card_amount_minor=gift_card_applied,
            shipping_minor=quote.shipping_minor,
            reconciliation_minor=total - expected_total,
            total_minor=total,
            currency=money.CURRENCY,
            status=ORDER_PAID,
            payment_method=payment_method,
            payment_reference=payment_reference,
        )
        db.session.add(order)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            winner = get_by_idempotency_key(idempotency_key)
            if winner is not None:
                _compensate(redemption, order_number, "duplicate delivery")
                return winner, False
            _compensate(redemption, order_number, "order number collision")
            continue
        except Exception:
            db.session.rollback()
            _compensate(redemption, order_number, "order insert failed")
            raise

        current_app.logger.info(
            "Order created",
            extra={"order_number": order_number, "payment_method": payment_method, "total_minor": total},
        )
        if abs(order.reconciliation_minor) > 1:
            current_app.logger.warning(
                "Payment amount mismatch",
                extra={"order_number": order_number, "reported_minor": total, "expected_minor": expected_total},
            )
            audit_service.log_action(
                audit_service.PAYMENT_AMOUNT_MISMATCH,
                resource_type="order",
                resource_id=order.id,
                details={
                    "order_number": order_number,
                    "reported_minor": total,
                    "expected_minor": expected_total,
                    "reconciliation_minor": order.reconciliation_minor,
                },
                commit=True,
            )

        # (c) counters
        if quote.discount is not None:
            try:
                discount_service.record_use(
                    quote.discount.discount_id,
                    customer_email=order.customer_email,
                    order_number=order_number,
                )
            except TransientConflictError:
                current_app.logger.exception(
                    "Discount use_count increment failed",
                    extra={"order_number": order_number, "discount_code": quote.discount_code},
                )
            except SQLAlchemyError:
                db.session.rollback()
                current_app.logger.exception(
                    "Discount use_count increment failed",
                    extra={"order_number": order_number, "discount_code": quote.discount_code},
                )
        _decrement_stock(quote, order_number)

        return order, True

    raise TransientConflictError("Could not allocate an order number, please retry")


def notify_order_confirmation(order: Order) -> None:
    notification_service.notify(notification_service.ORDER_CONFIRMATION, {
        "order_number": order.order_number,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "items": order.items,
        "total_minor": order.total_minor,
    })


# ================================
# Admin status updates
# ================================

def update_order(order_id, data: dict, principal=None) -> tuple[Order, bool]:
    """
    Apply status / notes / tracking changes.

    Returns (order, shipped_now). shipped_now is True exactly when this
    call moved the order into SHIPPED.
    """
    if not order_id:
        raise BadInputError("Order ID required")

    order = get_order(order_id)
    old_status = order.status
    new_status = data.get("status") or old_status

    if new_status not in ORDER_STATUSES:
        raise BadInputError(f"Invalid status: {new_status}")
    if new_status != old_status and new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise BadInputError(f"Cannot change order status from {old_status} to {new_status}")

    changed = []
    if new_status != old_status:
        order.status = new_status
        changed.append("status")
    if "notes" in data:
        order.notes = data.get("notes") or None
        changed.append("notes")
    for key in ("tracking_number", "tracking_url", "carrier"):
        if key in data:
            value = data.get(key)
            setattr(order, key, str(value).strip() if value not in (None, "") else None)
            changed.append(key)

    shipped_now = new_status == ORDER_SHIPPED and old_status != ORDER_SHIPPED
    if shipped_now:
        order.shipped_at = utcnow()

    audit_service.log_action(
        audit_service.ORDER_STATUS_UPDATED,
        principal=principal,
        resource_type="order",
        resource_id=order.id,
        details={
            "order_number": order.order_number,
            "old_status": old_status,
            "new_status": new_status,
            "updated_fields": changed,
        },
    )
    db.session.commit()
    return order, shipped_now


def notify_shipped(order: Order) -> None:
    notification_service.notify(notification_service.SHIPPING, {
        "order_number": order.order_number,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "tracking_number": order.tracking_number,
        "tracking_url": order.tracking_url,
        "carrier": order.carrier,
    })


# ================================
# Customer views
# ================================

def customer_order(order_id, customer_email: str) -> dict:
    """One order, only if it belongs to `customer_email`."""
    order = (
        db.session.query(Order)
        .filter(Order.id == order_id, Order.customer_email == customer_email.strip().lower())
        .first()
    )
    if order is None:
        raise NotFoundError("Order not found")
    return serialize(order)


def customer_orders(customer_email: str) -> list[dict]:
    orders = list_orders(customer_email=customer_email)
    for order in orders:
        order["item_count"] = len(order.get("items") or [])
    return orders

# Overview: Discount code evaluation, settlement-time usage counting, and admin management.

"""
Discount Codes

WHY: Customers type a code at checkout; the server decides what it is
worth. Evaluation is pure (read-only) so it can run at price-check,
session creation, and again at settlement with identical results for the
same inputs and clock.

DESIGN PRINCIPLES:
- evaluate() never mutates; use_count only moves in record_use()
- record_use() runs once per materialized order, under CAS retry
- Codes are stored upper-case and compared after trim + upper
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import BadInputError, DiscountRejected, NotFoundError
from ..extensions import db
from ..models import DiscountCode, DiscountUsage
from ..models.discounts import (
    DISCOUNT_FIXED,
    DISCOUNT_FREE_DELIVERY,
    DISCOUNT_PERCENTAGE,
    VALID_DISCOUNT_TYPES,
)
from ..time_utils import as_utc_naive, parse_iso_datetime, utcnow
from .. import money
from . import audit_service
from .concurrency import run_with_retry


# Rejection reasons
REASON_UNKNOWN = "unknown"
REASON_INACTIVE = "inactive"
REASON_NOT_YET_STARTED = "not_yet_started"
REASON_EXPIRED = "expired"
REASON_EXHAUSTED = "exhausted"
REASON_BELOW_MINIMUM = "below_minimum"
REASON_CUSTOMER_LIMIT = "customer_limit"

SHIPPING_OVERRIDE_NONE = "none"
SHIPPING_OVERRIDE_FREE = "free"


@dataclass(frozen=True)
class DiscountApplied:
    discount_id: int
    code: str
    name: str
    discount_type: str
    value: Decimal
    adjustment_minor: int
    shipping_override: str
    message: str
    min_order_amount_minor: int | None = None

    valid = True

    def to_dict(self) -> dict:
        return {
            "valid": True,
            "code": self.code,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_value": float(self.value),
            "discount_amount": money.to_major(self.adjustment_minor),
            "min_order_amount": money.to_major(self.min_order_amount_minor),
            "message": self.message,
        }


@dataclass(frozen=True)
class DiscountRejection:
    reason: str
    message: str

    valid = False

    def to_error(self) -> DiscountRejected:
        return DiscountRejected(self.reason, self.message)


def normalize_code(code) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


def _format_percent(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def _applied_message(discount: DiscountCode) -> str:
    if discount.discount_type == DISCOUNT_PERCENTAGE:
        return f"{_format_percent(Decimal(discount.discount_value))}% off applied!"
    if discount.discount_type == DISCOUNT_FREE_DELIVERY:
        return "Free delivery applied!"
    return f"{money.format_major(money.from_decimal(discount.discount_value))} off applied!"


def customer_usage_count(discount_id: int, customer_email: str) -> int:
    return (
        db.session.query(func.count(DiscountUsage.id))
        .filter(
            DiscountUsage.discount_code_id == discount_id,
            DiscountUsage.customer_email == customer_email.strip().lower(),
        )
        .scalar()
        or 0
    )


# ================================
# Evaluation
# ================================

def evaluate(code, subtotal_minor: int, *, customer_email: str | None = None, now=None):
    """
    Evaluate `code` against a provisional subtotal.

    Returns DiscountApplied or DiscountRejection. Checks run in a fixed
    order so the first failing rule decides the reason.
    """
    now = now or utcnow()
    normalized = normalize_code(code)
    if not normalized:
        return DiscountRejection(REASON_UNKNOWN, "Invalid discount code")

    discount = db.session.query(DiscountCode).filter_by(code=normalized).first()
    if discount is None:
        return DiscountRejection(REASON_UNKNOWN, "Invalid discount code")

    if not discount.is_active:
        return DiscountRejection(REASON_INACTIVE, "This discount code is no longer active")

    starts_at = as_utc_naive(discount.starts_at)
    if starts_at is not None and starts_at > now:
        return DiscountRejection(REASON_NOT_YET_STARTED, "This discount code is not yet active")

    expires_at = as_utc_naive(discount.expires_at)
    if expires_at is not None and expires_at <= now:
        return DiscountRejection(REASON_EXPIRED, "This discount code has expired")

    if discount.max_uses is not None and discount.use_count >= discount.max_uses:
        return DiscountRejection(REASON_EXHAUSTED, "This discount code has reached its usage limit")

    if discount.min_order_amount_minor is not None and subtotal_minor < discount.min_order_amount_minor:
        return DiscountRejection(
            REASON_BELOW_MINIMUM,
            f"This discount code requires a minimum order of {money.format_major(discount.min_order_amount_minor)}",
        )

    if discount.max_uses_per_customer is not None and customer_email:
        if customer_usage_count(discount.id, customer_email) >= discount.max_uses_per_customer:
            return DiscountRejection(
                REASON_CUSTOMER_LIMIT,
                "You have already used this code the maximum number of times",
            )

    value = Decimal(discount.discount_value or 0)
    shipping_override = SHIPPING_OVERRIDE_NONE

    if discount.discount_type == DISCOUNT_PERCENTAGE:
        adjustment = money.min_minor(money.mul_pct(subtotal_minor, value), subtotal_minor)
    elif discount.discount_type == DISCOUNT_FIXED:
        adjustment = money.min_minor(money.from_decimal(value), subtotal_minor)
    else:
        adjustment = 0
        shipping_override = SHIPPING_OVERRIDE_FREE

    return DiscountApplied(
        discount_id=discount.id,
        code=discount.code,
        name=discount.name,
        discount_type=discount.discount_type,
        value=value,
        adjustment_minor=money.max_minor(adjustment, 0),
        shipping_override=shipping_override,
        message=_applied_message(discount),
        min_order_amount_minor=discount.min_order_amount_minor,
    )


def evaluate_or_raise(code, subtotal_minor: int, **kwargs) -> DiscountApplied:
    result = evaluate(code, subtotal_minor, **kwargs)
    if isinstance(result, DiscountRejection):
        raise result.to_error()
    return result


# ================================
# Settlement
# ================================

def record_use(discount_id: int, *, customer_email: str | None, order_number: str) -> bool:
    """
    Count one paid use of a discount (use_count += 1 plus a usage row).

    Runs as its own CAS unit. If a concurrent settlement consumed the last
    allowed use in the meantime the counter is left at max_uses and the
    overrun is audited instead.
    """
    def _op():
        discount = (
            db.session.query(DiscountCode)
            .populate_existing()
            .filter_by(id=discount_id)
            .first()
        )
        if discount is None:
            return False

        if discount.max_uses is not None and discount.use_count >= discount.max_uses:
            audit_service.log_action(
                audit_service.DISCOUNT_REJECTED_AT_SETTLEMENT,
                resource_type="discount",
                resource_id=discount.id,
                details={"code": discount.code, "order_number": order_number, "reason": REASON_EXHAUSTED},
            )
            db.session.commit()
            return False

        discount.use_count = (discount.use_count or 0) + 1
        db.session.add(DiscountUsage(
            discount_code_id=discount.id,
            customer_email=(customer_email or "").strip().lower(),
            order_number=order_number,
        ))
        db.session.commit()
        return True

    return run_with_retry(_op, label="discount_use_count")


# ================================
# Admin management
# ================================

def _parse_value(discount_type: str, raw) -> Decimal:
    if discount_type == DISCOUNT_FREE_DELIVERY:
        return Decimal("0")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise BadInputError("Discount value must be a positive number")
    if not value.is_finite() or value < 0:
        raise BadInputError("Discount value must be a positive number")
    if discount_type == DISCOUNT_PERCENTAGE:
        if value > 100:
            raise BadInputError("Percentage discount cannot exceed 100%")
    elif value == 0:
        raise BadInputError("Discount value must be a positive number")
    return value.quantize(Decimal("0.01"))


def _parse_optional_positive_int(raw, field: str) -> int | None:
    if raw in (None, "", 0):
        return None
    if isinstance(raw, bool):
        raise BadInputError(f"{field} must be a positive whole number")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise BadInputError(f"{field} must be a positive whole number")
    if value <= 0 or str(value) != str(raw).strip():
        raise BadInputError(f"{field} must be a positive whole number")
    return value


def _parse_optional_datetime(raw, field: str):
    if raw in (None, ""):
        return None
    try:
        return parse_iso_datetime(str(raw))
    except ValueError:
        raise BadInputError(f"{field} must be an ISO-8601 date")


def _parse_min_order(raw) -> int | None:
    if raw in (None, "", 0):
        return None
    try:
        value = money.parse_major(raw, "min_order_amount")
    except ValueError as exc:
        raise BadInputError(str(exc))
    if value < 0:
        raise BadInputError("min_order_amount cannot be negative")
    return value or None


def _check_window(starts_at, expires_at) -> None:
    if starts_at is not None and expires_at is not None and starts_at > expires_at:
        raise BadInputError("starts_at must be before expires_at")


def list_discounts() -> list[DiscountCode]:
    return db.session.query(DiscountCode).order_by(DiscountCode.created_at.desc(), DiscountCode.id.desc()).all()


def get_discount(discount_id) -> DiscountCode:
    discount = db.session.query(DiscountCode).filter_by(id=discount_id).first()
    if discount is None:
        raise NotFoundError("Discount code not found")
    return discount


def create_discount(data: dict, principal=None) -> DiscountCode:
    code = normalize_code(data.get("code"))
    name = (data.get("name") or "").strip() if isinstance(data.get("name"), str) else ""
    discount_type = data.get("discount_type")

    if not code or not name or not discount_type or (
        discount_type != DISCOUNT_FREE_DELIVERY and data.get("discount_value") is None
    ):
        raise BadInputError("Code, name, discount type, and value are required")
    if discount_type not in VALID_DISCOUNT_TYPES:
        raise BadInputError('Discount type must be "percentage", "fixed" or "free_delivery"')

    value = _parse_value(discount_type, data.get("discount_value"))
    starts_at = _parse_optional_datetime(data.get("starts_at"), "starts_at")
    expires_at = _parse_optional_datetime(data.get("expires_at"), "expires_at")
    _check_window(starts_at, expires_at)

    if db.session.query(DiscountCode.id).filter_by(code=code).first() is not None:
        raise BadInputError("Discount code already exists")

    discount = DiscountCode(
        code=code,
        name=name,
        discount_type=discount_type,
        discount_value=value,
        starts_at=starts_at,
        expires_at=expires_at,
        max_uses=_parse_optional_positive_int(data.get("max_uses"), "max_uses"),
        max_uses_per_customer=_parse_optional_positive_int(data.get("max_uses_per_customer"), "max_uses_per_customer"),
        min_order_amount_minor=_parse_min_order(data.get("min_order_amount")),
        use_count=0,
        is_active=True,
        created_by=getattr(principal, "id", None),
    )
    db.session.add(discount)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise BadInputError("Discount code already exists")

    audit_service.log_action(
        audit_service.DISCOUNT_CREATED,
        principal=principal,
        resource_type="discount",
        resource_id=discount.id,
        details={"code": code, "type": discount_type, "value": str(value)},
    )
    db.session.commit()
    return discount


def update_discount(discount_id, data: dict, principal=None) -> DiscountCode:
    if not discount_id:
        raise BadInputError("Discount code ID required")

    def _op():
        discount = (
            db.session.query(DiscountCode)
            .populate_existing()
            .filter_by(id=discount_id)
            .first()
        )
        if discount is None:
            raise NotFoundError("Discount code not found")

        updated = []

        if "code" in data:
            code = normalize_code(data.get("code"))
            if not code:
                raise BadInputError("Code cannot be empty")
            clash = db.session.query(DiscountCode.id).filter(
                DiscountCode.code == code, DiscountCode.id != discount.id
            ).first()
            if clash is not None:
                raise BadInputError("Discount code already exists")
            discount.code = code
            updated.append("code")

        if "name" in data:
            name = data.get("name")
            if not isinstance(name, str) or not name.strip():
                raise BadInputError("Name cannot be empty")
            discount.name = name.strip()
            updated.append("name")

        if "discount_type" in data:
            if data["discount_type"] not in VALID_DISCOUNT_TYPES:
                raise BadInputError('Discount type must be "percentage", "fixed" or "free_delivery"')
            discount.discount_type = data["discount_type"]
            updated.append("discount_type")

        if "discount_value" in data or "discount_type" in data:
            raw = data.get("discount_value", discount.discount_value)
            discount.discount_value = _parse_value(discount.discount_type, raw)
            if "discount_value" in data:
                updated.append("discount_value")

        if "starts_at" in data:
            discount.starts_at = _parse_optional_datetime(data.get("starts_at"), "starts_at")
            updated.append("starts_at")
        if "expires_at" in data:
            discount.expires_at = _parse_optional_datetime(data.get("expires_at"), "expires_at")
            updated.append("expires_at")
        _check_window(as_utc_naive(discount.starts_at), as_utc_naive(discount.expires_at))

        if "max_uses" in data:
            max_uses = _parse_optional_positive_int(data.get("max_uses"), "max_uses")
            if max_uses is not None and max_uses < (discount.use_count or 0):
                raise BadInputError("max_uses cannot be lower than the current use count")
            discount.max_uses = max_uses
            updated.append("max_uses")
        if "max_uses_per_customer" in data:
            discount.max_uses_per_customer = _parse_optional_positive_int(
                data.get("max_uses_per_customer"), "max_uses_per_customer"
            )
            updated.append("max_uses_per_customer")
        if "min_order_amount" in data:
            discount.min_order_amount_minor = _parse_min_order(data.get("min_order_amount"))
            updated.append("min_order_amount")
        if "is_active" in data:
            discount.is_active = bool(data.get("is_active"))
            updated.append("is_active")

        if not updated:
            raise BadInputError("No valid update fields provided")

        audit_service.log_action(
            audit_service.DISCOUNT_UPDATED,
            principal=principal,
            resource_type="discount",
            resource_id=discount.id,
            details={"updated_fields": updated},
        )
        db.session.commit()
        return discount

    return run_with_retry(_op, label="discount_update")


def deactivate_discount(discount_id, principal=None) -> DiscountCode:
    if not discount_id:
        raise BadInputError("Discount code ID required")

    def _op():
        discount = (
            db.session.query(DiscountCode)
            .populate_existing()
            .filter_by(id=discount_id)
            .first()
        )
        if discount is None:
            raise NotFoundError("Discount code not found")
        discount.is_active = False
        audit_service.log_action(
            audit_service.DISCOUNT_DEACTIVATED,
            principal=principal,
            resource_type="discount",
            resource_id=discount.id,
            details={"code": discount.code},
        )
        db.session.commit()
        return discount

    return run_with_retry(_op, label="discount_deactivate")

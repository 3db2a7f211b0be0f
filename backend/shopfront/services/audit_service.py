# Overview: Append-only audit trail writer; failures are logged, never raised.

from __future__ import annotations

from flask import current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditLog


# Actions written by this code base
ORDER_STATUS_UPDATED = "order_status_updated"
GIFT_CARD_CREATED = "gift_card_created"
GIFT_CARD_ACTIVATED = "gift_card_activated"
GIFT_CARD_ADJUSTED = "gift_card_adjusted"
GIFT_CARD_SENT = "gift_card_sent"
GIFT_CARD_CANCELLED = "gift_card_cancelled"
GIFT_CARD_UPDATED = "gift_card_updated"
DISCOUNT_CREATED = "discount_created"
DISCOUNT_UPDATED = "discount_updated"
DISCOUNT_DEACTIVATED = "discount_deactivated"
PAYMENT_AMOUNT_MISMATCH = "payment_amount_mismatch"
DISCOUNT_REJECTED_AT_SETTLEMENT = "discount_rejected_at_settlement"
GIFT_CARD_REJECTED_AT_SETTLEMENT = "gift_card_rejected_at_settlement"
PERMISSION_DENIED = "permission_denied"


def log_action(
    action: str,
    *,
    principal=None,
    resource_type: str | None = None,
    resource_id=None,
    details: dict | None = None,
    commit: bool = False,
) -> AuditLog | None:
    """
    Append one audit row.

    The row is written inside a SAVEPOINT of the caller's transaction, so it
    commits together with the money write it describes. Pass commit=True
    when there is no surrounding unit of work (e.g. permission denials).

    Never raises: an audit failure must not block the operation it records.
    """
    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = request.headers.get("X-Forwarded-For", request.remote_addr)
        user_agent = request.headers.get("User-Agent")

    entry = AuditLog(
        action=action,
        principal_id=getattr(principal, "id", None),
        principal_email=getattr(principal, "email", None),
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
    )

    try:
        with db.session.begin_nested():
            db.session.add(entry)
        if commit:
            db.session.commit()
    except SQLAlchemyError:
        current_app.logger.exception(
            "Audit log write failed",
            extra={"action": action, "resource_type": resource_type, "resource_id": resource_id},
        )
        if commit:
            db.session.rollback()
        return None

    return entry


def list_actions(*, action: str | None = None, resource_type: str | None = None, resource_id=None, limit: int = 100):
    query = db.session.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    if resource_type:
        query = query.filter(AuditLog.resource_type == resource_type)
    if resource_id is not None:
        query = query.filter(AuditLog.resource_id == str(resource_id))
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()

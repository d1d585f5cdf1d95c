"""
Order and payment status transitions.

Both machines apply a change with a compare-and-swap UPDATE guarded by the
status the caller observed, so two writers racing on the same row produce a
single transition. Nothing here commits; callers own the transaction.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import exists, update
from sqlalchemy.orm import Session, aliased

from . import crud, models
from .errors import BadRequest, Conflict
from .validators import validate_order_status_transition

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed", "expired"},
    "paid": {"refunded"},
    "failed": set(),
    "expired": set(),
    "refunded": set(),
}

TERMINAL_PAYMENT_STATUSES = {"paid", "failed", "expired", "refunded"}

# Payment status -> order payment_status
ORDER_PAYMENT_STATUS = {
    "paid": "paid",
    "failed": "failed",
    "expired": "failed",
    "refunded": "refunded",
}


def can_transition_payment(old_status: str, new_status: str) -> bool:
    return new_status in PAYMENT_TRANSITIONS.get(old_status, set())


def transition_payment(
    db: Session,
    payment: models.Payment,
    new_status: str,
    source: str,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Move a payment to ``new_status`` if it is still in the status we read.

    Args:
        db: Database session
        payment: Payment as loaded by the caller
        new_status: Target payment status
        source: Who observed the change (webhook, verify, sweeper)
        metadata: Extra gateway facts merged into the payment metadata
        now: Transition time, defaults to the current UTC time

    Returns:
        True if this call performed the transition, False if it was a
        duplicate, a disallowed move, or lost a race to another writer
    """
    old_status = payment.status
    reference = payment.payment_reference
    if old_status == new_status:
        return False
    if not can_transition_payment(old_status, new_status):
        logger.warning(
            f"Ignoring payment transition {old_status} -> {new_status} "
            f"for '{reference}' from {source}"
        )
        return False

    now = now or models.utcnow()
    values = {
        models.Payment.status: new_status,
        models.Payment.updated_at: now,
    }
    if new_status == "paid":
        values[models.Payment.paid_at] = now
    if metadata:
        merged = dict(payment.payment_metadata or {})
        merged.update(metadata)
        values[models.Payment.payment_metadata] = merged

    result = db.execute(
        update(models.Payment)
        .where(models.Payment.id == payment.id, models.Payment.status == old_status)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Payment '{reference}' already moved past {old_status}; skipping")
        return False

    _sync_order_payment_status(db, payment, new_status, now)
    crud.log_order_event(
        db,
        order_id=payment.order_id,
        event_type=f"payment_{new_status}",
        description=f"Payment {reference} {new_status} ({source})",
        old_value=old_status,
        new_value=new_status,
    )
    db.expire(payment)

    logger.info(f"Payment '{reference}' {old_status} -> {new_status} via {source}")
    return True


def _sync_order_payment_status(db: Session, payment: models.Payment, new_status: str, now: datetime) -> None:
    target = ORDER_PAYMENT_STATUS[new_status]
    query = update(models.Order).where(models.Order.id == payment.order_id)

    if new_status in ("failed", "expired"):
        # A paid order is never downgraded, and only the latest attempt speaks for the order
        newer = aliased(models.Payment)
        query = query.where(
            models.Order.payment_status != "paid",
            ~exists().where(
                newer.order_id == payment.order_id,
                newer.created_at > payment.created_at,
            ),
        )
    elif new_status == "refunded":
        query = query.where(models.Order.payment_status == "paid")

    db.execute(
        query.values(payment_status=target, updated_at=now)
        .execution_options(synchronize_session=False)
    )


def transition_order_status(
    db: Session,
    order: models.Order,
    new_status: str,
    user_id: Optional[str] = None,
) -> bool:
    """
    Apply a seller-driven fulfilment status change.

    Returns:
        True if the status changed, False if it already had ``new_status``

    Raises:
        BadRequest: if the transition is not allowed
        Conflict: if the order changed underneath the caller
    """
    old_status = order.status
    is_valid, error_msg = validate_order_status_transition(old_status, new_status)
    if not is_valid:
        raise BadRequest(error_msg, code="INVALID_STATUS_TRANSITION")
    if old_status == new_status:
        return False

    now = models.utcnow()
    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.status == old_status)
        .values(status=new_status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Order status changed concurrently, reload and retry")

    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="status_changed",
        description=f"Status changed from {old_status} to {new_status}",
        old_value=old_status,
        new_value=new_status,
        user_id=user_id,
    )
    logger.info(f"Order '{order.order_number}' status {old_status} -> {new_status}")
    db.expire(order)
    return True

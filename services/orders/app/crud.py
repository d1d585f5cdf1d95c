"""
CRUD (Create, Read, Update, Delete) operations for the Orders service.

Lookups used by placement and reconciliation, the store/product collaborator
reads, listing and statistics queries, and the order timeline. Nothing here
commits; callers own the transaction.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session
import logging
from . import models
from .errors import Forbidden, NotFound

# Set up logging
logger = logging.getLogger(__name__)


def find_store_by_username(db: Session, username: str) -> Optional[models.Store]:
    return db.query(models.Store).filter(models.Store.username == username.lower()).first()


def find_store_by_id(db: Session, store_id: str) -> Optional[models.Store]:
    return db.query(models.Store).filter(models.Store.id == store_id).first()


def find_product_by_id(db: Session, product_id: str) -> Optional[models.Product]:
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_number(db: Session, order_number: str) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.order_number == order_number).first()


def get_owned_store(db: Session, store_id: str, user_id: str) -> models.Store:
    """
    Load a store and check that ``user_id`` owns it.

    Raises:
        NotFound: if the store does not exist
        Forbidden: if it belongs to someone else
    """
    store = find_store_by_id(db, store_id)
    if store is None:
        raise NotFound("Store")
    if store.user_id != user_id:
        raise Forbidden("You do not have permission to access this store")
    return store


def get_owned_order(db: Session, order_id: str, user_id: str) -> models.Order:
    """Load an order and check that ``user_id`` owns its store."""
    order = get_order(db, order_id)
    if order is None:
        raise NotFound("Order")
    if order.store is None or order.store.user_id != user_id:
        raise Forbidden("You do not have permission to access this order")
    return order


def list_store_orders(
    db: Session,
    store_id: str,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
) -> Tuple[List[models.Order], int]:
    """
    Retrieve a store's orders, newest first, with optional filters.

    Args:
        db: Database session
        store_id: Store whose orders to list
        status: Only orders in this fulfilment status
        payment_status: Only orders in this payment status
        search: Substring of order number, customer name or phone
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        Tuple of (orders, total matching count)
    """
    query = db.query(models.Order).filter(models.Order.store_id == store_id)
    if status:
        query = query.filter(models.Order.status == status)
    if payment_status:
        query = query.filter(models.Order.payment_status == payment_status)
    if search:
        term = f"%{search}%"
        query = query.filter(or_(
            models.Order.order_number.ilike(term),
            models.Order.customer_name.ilike(term),
            models.Order.customer_phone.ilike(term),
        ))

    total = query.count()
    orders = query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()
    return orders, total


def get_order_stats(db: Session, store_id: str) -> dict:
    """Order counts per fulfilment status and revenue from paid orders."""
    row = db.query(
        func.count(models.Order.id),
        *[func.coalesce(func.sum(case((models.Order.status == s, 1), else_=0)), 0)
          for s in ("pending", "confirmed", "fulfilled", "cancelled")],
        func.coalesce(func.sum(case((models.Order.payment_status == "paid", models.Order.total), else_=0)), 0),
    ).filter(models.Order.store_id == store_id).one()

    return {
        "total": int(row[0] or 0),
        "pending": int(row[1]),
        "confirmed": int(row[2]),
        "fulfilled": int(row[3]),
        "cancelled": int(row[4]),
        "revenue": Decimal(str(row[5])),
    }


def get_payment_by_reference(db: Session, reference: str) -> Optional[models.Payment]:
    """Find a payment by local payment reference, falling back to the gateway reference."""
    payment = db.query(models.Payment).filter(models.Payment.payment_reference == reference).first()
    if payment is None:
        payment = db.query(models.Payment).filter(models.Payment.monnify_reference == reference).first()
    return payment


def get_payment_by_monnify_reference(db: Session, reference: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.monnify_reference == reference).first()


def get_latest_payment(db: Session, order_id: str) -> Optional[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.order_id == order_id)
        .order_by(models.Payment.created_at.desc())
        .first()
    )


def find_expired_payment_ids(db: Session, now: datetime, limit: int = 500) -> List[str]:
    """IDs of pending payments whose session lifetime has passed, oldest first."""
    rows = db.execute(
        select(models.Payment.id)
        .where(
            models.Payment.status == "pending",
            models.Payment.expires_at.is_not(None),
            models.Payment.expires_at < now,
        )
        .order_by(models.Payment.expires_at.asc())
        .limit(limit)
    ).scalars().all()
    return list(rows)


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: str = None,
) -> models.OrderEvent:
    """
    Append an event to the order timeline within the caller's transaction.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "payment_paid")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: Store owner who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    )
    db.add(event)
    return event


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )

"""
SQLAlchemy ORM models for the Orders service.

Stores and products are owned by the storefront collaborators; this service
only reads them and decrements ``Product.stock_quantity``. Orders, their
timeline events and their payments are owned here.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    JSON, Numeric, String, Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Store(Base):
    """
    Seller storefront. ``username`` is the public handle used in checkout URLs.
    """
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    username = Column(String(64), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Product(Base):
    """
    Inventory-backed product.

    Attributes:
        price (Decimal): Current unit price; orders snapshot it at purchase time
        variations (list): Declared variations, e.g. [{"name": "Size", "options": ["S", "M"]}]
        stock_quantity (int): Units available; never negative
    """
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    images = Column(JSONType, nullable=False, default=list)
    variations = Column(JSONType, nullable=False, default=list)
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Order(Base):
    """
    A buyer's committed purchase against one store.

    Attributes:
        order_number (str): Public identifier, ``AGM-<year>-<6 digits>``
        status (str): Seller-driven fulfilment state (pending, confirmed, fulfilled, cancelled)
        payment_status (str): Mirror of the authoritative payment (pending, paid, failed, refunded)
        items (list): Immutable purchase-time snapshot of the order lines (stored as JSON)
        subtotal, agm_fee, total (Decimal): Fixed at creation; total == subtotal
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(32), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_address = Column(JSONType, nullable=True)
    items = Column(JSONType, nullable=False, default=list)
    subtotal = Column(Numeric(12, 2), nullable=False)
    agm_fee = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    store = relationship("Store")
    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")

    @property
    def line_items(self):
        """The item snapshot, validated; raises on a corrupted blob."""
        from .schemas import ORDER_ITEMS_ADAPTER
        return ORDER_ITEMS_ADAPTER.validate_python(self.items)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): created, status_changed, payment_opened, payment_<status>
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): Store owner who triggered the event, None for buyers and the gateway
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String(40), nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String(40), nullable=True)
    new_value = Column(String(40), nullable=True)
    user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Payment(Base):
    """
    One attempt to collect funds for an order through the gateway.

    ``payment_reference`` is generated locally and doubles as the idempotency
    key; ``monnify_reference`` is the gateway's transaction reference.
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_status_expires_at", "status", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="NGN")
    status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(32), nullable=True)
    payment_reference = Column(String(64), nullable=False, unique=True, index=True)
    monnify_reference = Column(String(128), nullable=True, unique=True, index=True)
    account_number = Column(String(32), nullable=True)
    account_name = Column(String(255), nullable=True)
    bank_name = Column(String(255), nullable=True)
    checkout_url = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    payment_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="payments")

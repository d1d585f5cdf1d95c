"""
Pydantic schemas for request/response validation in the Orders service.

These schemas define the structure of data for API requests and responses,
and the tagged snapshot stored in ``orders.items``.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional
from decimal import Decimal
from pydantic import BaseModel, Field, TypeAdapter

OrderStatus = Literal["pending", "confirmed", "fulfilled", "cancelled"]
OrderPaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "expired", "refunded"]


class CustomerAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postalCode: Optional[str] = None


class CartLine(BaseModel):
    """Schema for a cart line submitted by the buyer."""
    product_id: str = Field(..., description="Product being purchased")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    selected_variations: Dict[str, str] = Field(default_factory=dict)


class OrderCreate(BaseModel):
    """
    Schema for placing an order.

    ``subtotal``, ``agm_fee`` and ``total`` are optional and only cross-checked
    against the server-side computation; they are never stored as sent.
    """
    customer_name: str = Field(..., min_length=2, max_length=255)
    customer_phone: str = Field(..., pattern=r"^\+234[0-9]{10}$")
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_address: Optional[CustomerAddress] = None
    notes: Optional[str] = Field(None, max_length=2000)
    items: List[CartLine] = Field(..., min_length=1)
    subtotal: Optional[Decimal] = None
    agm_fee: Optional[Decimal] = None
    total: Optional[Decimal] = None


class OrderItemSnapshot(BaseModel):
    """
    Purchase-time facts for one order line.

    ``kind`` tags the blob so a row written by something else fails loudly on read.
    """
    kind: Literal["product_line.v1"] = "product_line.v1"
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    price: Decimal
    quantity: int = Field(..., gt=0)
    subtotal: Decimal
    selected_variations: Dict[str, str] = Field(default_factory=dict)

    def to_storage(self) -> dict:
        """JSON-safe dict for the items column (Decimals stored as strings)."""
        return self.model_dump(mode="json")


ORDER_ITEMS_ADAPTER = TypeAdapter(List[OrderItemSnapshot])


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class PublicOrder(BaseModel):
    """
    Schema for order responses shown to buyers; identified by order number only.

    Attributes:
        order_number (str): Public order number used for tracking
        status (str): Fulfilment status
        payment_status (str): Payment status mirrored from the latest payment
        items (List[OrderItemSnapshot]): Purchase-time line snapshot
    """
    order_number: str
    status: OrderStatus
    payment_status: OrderPaymentStatus
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    customer_address: Optional[CustomerAddress] = None
    notes: Optional[str] = None
    items: List[OrderItemSnapshot]
    subtotal: Decimal
    agm_fee: Decimal
    total: Decimal
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class Order(PublicOrder):
    """Order as seen by the store owner, with its internal identifiers."""
    id: str
    store_id: str


class Payment(BaseModel):
    """Schema for payment responses; only public references are exposed."""
    payment_reference: str
    monnify_reference: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    bank_name: Optional[str] = None
    checkout_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PlaceOrderResponse(BaseModel):
    order: PublicOrder
    payment: Optional[Payment] = None
    payment_error: Optional[str] = None


class VerifyPaymentResponse(BaseModel):
    verified: bool
    status: PaymentStatus
    payment: Payment


class RetryPaymentResponse(BaseModel):
    payment: Payment
    created: bool


class OrderTracking(BaseModel):
    """Public view of an order by order number, with its latest payment."""
    order: PublicOrder
    payment: Optional[Payment] = None


class OrderList(BaseModel):
    orders: List[Order]
    total: int
    skip: int
    limit: int


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): Store owner who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderStats(BaseModel):
    total: int
    pending: int
    confirmed: int
    fulfilled: int
    cancelled: int
    revenue: Decimal


class MonnifyWebhookPayload(BaseModel):
    """Fields of a Monnify transaction notification that reconciliation reads."""
    transactionReference: Optional[str] = None
    paymentReference: Optional[str] = None
    paymentStatus: str
    amountPaid: Optional[Decimal] = None
    paidOn: Optional[str] = None
    paymentMethod: Optional[str] = None

    model_config = {"extra": "allow"}


class BankAccountVerify(BaseModel):
    account_number: str = Field(..., pattern=r"^[0-9]{10}$")
    bank_code: str = Field(..., min_length=3, max_length=10)


class PayoutCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reference: str = Field(..., min_length=6, max_length=64)
    narration: str = Field(..., min_length=1, max_length=255)
    destination_bank_code: str = Field(..., min_length=3, max_length=10)
    destination_account_number: str = Field(..., pattern=r"^[0-9]{10}$")

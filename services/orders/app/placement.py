"""
Order placement: commit an order against stock, then open a payment session.

``commit_order`` resolves the store and products, snapshots the lines,
computes the amounts and takes the stock in one database transaction; any
failure rolls all of it back. The gateway is called only after that commit,
and the payment row is written in a second short transaction, so a gateway
outage leaves a consistent order with no payment that the buyer can retry.
"""
import logging
import secrets
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, crud, models, schemas
from .clients.monnify_client import MonnifyClient
from .errors import BadRequest, Conflict, ExternalServiceError, InsufficientStock, NotFound
from .inventory import has_stock, try_decrement
from .validators import validate_cart_lines, validate_client_totals, validate_selected_variations

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ORDER_NUMBER_ATTEMPTS = 5
FALLBACK_CUSTOMER_EMAIL = "customer@email.com"


def generate_order_number(db: Session) -> str:
    """Public order number ``AGM-<year>-<6 digits>``, unique across all stores."""
    year = models.utcnow().year
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = f"AGM-{year}-{100000 + secrets.randbelow(900000)}"
        if crud.get_order_by_number(db, candidate) is None:
            return candidate
    raise Conflict("Could not allocate an order number, please retry")


def generate_payment_reference(order_number: str) -> str:
    return f"PAY-{order_number}-{secrets.token_hex(4).upper()}"


def calculate_fee(subtotal: Decimal) -> Decimal:
    """Platform commission on ``subtotal``, rounded half-up to kobo."""
    fee = subtotal * Decimal(str(config.AGM_FEE_PERCENTAGE)) / Decimal(100)
    return fee.quantize(CENT, rounding=ROUND_HALF_UP)


def _first_image(images) -> Optional[str]:
    if not images:
        return None
    first = images[0]
    if isinstance(first, dict):
        return first.get("url")
    return first


def build_line_snapshots(
    db: Session,
    store: models.Store,
    items: List[schemas.CartLine],
) -> List[schemas.OrderItemSnapshot]:
    """
    Resolve every cart line against the store's catalogue.

    The stock comparison here is advisory; ``try_decrement`` decides.

    Raises:
        NotFound: product missing or sold by another store
        BadRequest: product inactive or invalid variation choice
        InsufficientStock: requested quantity above the stock on hand
    """
    snapshots = []
    for line in items:
        product = crud.find_product_by_id(db, line.product_id)
        if product is None or product.store_id != store.id:
            raise NotFound(f"Product {line.product_id}")
        if not product.is_active:
            raise BadRequest(f"Product {product.name} is not available", code="PRODUCT_INACTIVE")

        is_valid, error_msg = validate_selected_variations(product.variations, line.selected_variations)
        if not is_valid:
            raise BadRequest(f"{product.name}: {error_msg}", code="INVALID_VARIATION")

        if not has_stock(product, line.quantity):
            raise InsufficientStock(
                f"Insufficient stock for {product.name}: "
                f"available {product.stock_quantity}, requested {line.quantity}"
            )

        price = Decimal(str(product.price)).quantize(CENT)
        snapshots.append(schemas.OrderItemSnapshot(
            product_id=product.id,
            product_name=product.name,
            product_image=_first_image(product.images),
            price=price,
            quantity=line.quantity,
            subtotal=(price * line.quantity).quantize(CENT),
            selected_variations=line.selected_variations,
        ))
    return snapshots


def commit_order(db: Session, username: str, order_in: schemas.OrderCreate) -> models.Order:
    """
    Create the order and take its stock in a single transaction.

    Args:
        db: Database session
        username: Public handle of the store being bought from
        order_in: Buyer details and cart

    Returns:
        The committed order

    Raises:
        NotFound, BadRequest, InsufficientStock, Conflict; nothing is
        persisted when any of them is raised
    """
    try:
        store = crud.find_store_by_username(db, username)
        if store is None:
            raise NotFound("Store")
        if not store.is_active:
            raise BadRequest("Store is not active", code="STORE_INACTIVE")

        is_valid, error_msg = validate_cart_lines(order_in.items)
        if not is_valid:
            raise BadRequest(error_msg, code="INVALID_ITEMS")

        snapshots = build_line_snapshots(db, store, order_in.items)
        subtotal = sum((s.subtotal for s in snapshots), Decimal("0.00"))
        agm_fee = calculate_fee(subtotal)
        total = subtotal

        is_valid, error_msg = validate_client_totals(order_in, subtotal, agm_fee, total)
        if not is_valid:
            raise BadRequest(error_msg, code="TOTAL_MISMATCH")

        order = models.Order(
            store_id=store.id,
            order_number=generate_order_number(db),
            status="pending",
            payment_status="pending",
            customer_name=order_in.customer_name,
            customer_phone=order_in.customer_phone,
            customer_email=order_in.customer_email,
            customer_address=order_in.customer_address.model_dump() if order_in.customer_address else None,
            notes=order_in.notes,
            items=[s.to_storage() for s in snapshots],
            subtotal=subtotal,
            agm_fee=agm_fee,
            total=total,
        )
        db.add(order)
        db.flush()

        for snapshot in snapshots:
            if not try_decrement(db, snapshot.product_id, snapshot.quantity):
                raise InsufficientStock(f"Insufficient stock for {snapshot.product_name}")

        crud.log_order_event(
            db,
            order_id=order.id,
            event_type="created",
            description=f"Order {order.order_number} placed with {len(snapshots)} item(s)",
            new_value="pending",
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Order placement conflict for store '{username}': {e}")
        raise Conflict("Order could not be saved, please retry")
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Order '{order.order_number}' committed for store '{username}', total {order.total}")
    return order


async def open_payment_session(db: Session, gateway: MonnifyClient, order: models.Order) -> models.Payment:
    """
    Open a gateway session for ``order`` and record it as a pending payment.

    The new payment becomes the order's authoritative one, so an unpaid
    order's ``payment_status`` returns to pending.

    Raises:
        ExternalServiceError: the gateway call failed; nothing was written
        Conflict: the payment reference collided
    """
    reference = generate_payment_reference(order.order_number)
    session = await gateway.initialize_session(
        amount=order.total,
        customer_email=order.customer_email or FALLBACK_CUSTOMER_EMAIL,
        customer_name=order.customer_name,
        description=f"Payment for order {order.order_number}",
        payment_reference=reference,
    )

    now = models.utcnow()
    payment = models.Payment(
        order_id=order.id,
        user_id=order.store.user_id,
        amount=order.total,
        currency=config.CURRENCY,
        status="pending",
        payment_reference=reference,
        monnify_reference=session.transaction_reference,
        account_number=session.account_number,
        account_name=session.account_name,
        bank_name=session.bank_name,
        checkout_url=session.checkout_url,
        expires_at=now + timedelta(minutes=config.PAYMENT_EXPIRY_MINUTES),
        payment_metadata=session.raw,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(payment)
        db.execute(
            update(models.Order)
            .where(models.Order.id == order.id, models.Order.payment_status != "paid")
            .values(payment_status="pending", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        crud.log_order_event(
            db,
            order_id=order.id,
            event_type="payment_opened",
            description=f"Payment session {reference} opened",
            new_value="pending",
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Could not record payment '{reference}': {e}")
        raise Conflict("Payment could not be recorded, please retry")

    db.refresh(payment)
    logger.info(f"Payment '{reference}' opened for order '{order.order_number}'")
    return payment


async def place_order(
    db: Session,
    gateway: MonnifyClient,
    username: str,
    order_in: schemas.OrderCreate,
) -> Tuple[models.Order, Optional[models.Payment], Optional[str]]:
    """
    Place an order and try to open its payment session.

    Returns:
        Tuple of (order, payment, payment_error). When the gateway is
        unavailable the order stands, payment is None and payment_error
        says why.
    """
    order = commit_order(db, username, order_in)

    try:
        payment = await open_payment_session(db, gateway, order)
    except ExternalServiceError as e:
        logger.warning(f"Order '{order.order_number}' placed without a payment session: {e.message}")
        db.refresh(order)
        return order, None, e.message

    db.refresh(order)
    return order, payment, None


async def retry_payment(
    db: Session,
    gateway: MonnifyClient,
    order_number: str,
) -> Tuple[models.Payment, bool]:
    """
    Give an unpaid order a payable session.

    A still-valid pending payment is returned as is; otherwise a new session
    is opened.

    Returns:
        Tuple of (payment, created)
    """
    order = crud.get_order_by_number(db, order_number)
    if order is None:
        raise NotFound("Order")
    if order.payment_status == "paid":
        raise BadRequest("Order is already paid", code="ORDER_ALREADY_PAID")
    if order.status == "cancelled":
        raise BadRequest("Order has been cancelled", code="ORDER_CANCELLED")

    latest = crud.get_latest_payment(db, order.id)
    if latest is not None and latest.status == "pending" and latest.expires_at and latest.expires_at > models.utcnow():
        return latest, False

    payment = await open_payment_session(db, gateway, order)
    return payment, True

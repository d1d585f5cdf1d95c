"""
Stock ledger for inventory-backed products.

``try_decrement`` is the only authoritative stock check: a single conditional
UPDATE whose affected-row count decides the outcome. Reads of
``stock_quantity`` elsewhere are advisory and may be stale under concurrency.

No restock path exists: cancelled, failed and expired orders keep their
stock committed.
"""
import logging
from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)


def has_stock(product: models.Product, quantity: int) -> bool:
    """Advisory pre-check used for fast failure; never authoritative."""
    return product.stock_quantity >= quantity


def try_decrement(db: Session, product_id: str, quantity: int) -> bool:
    """
    Atomically take ``quantity`` units of a product.

    Runs inside the caller's transaction; the caller commits or rolls back.

    Args:
        db: Database session
        product_id: Product to decrement
        quantity: Units to take, must be positive

    Returns:
        True if the stock was committed, False if not enough stock remained
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = db.execute(
        update(models.Product)
        .where(
            models.Product.id == product_id,
            models.Product.stock_quantity >= quantity,
        )
        .values(
            stock_quantity=models.Product.stock_quantity - quantity,
            updated_at=models.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    committed = result.rowcount == 1
    if committed:
        logger.info(f"Decremented {quantity} units of product '{product_id}'")
    else:
        logger.warning(f"Insufficient stock to take {quantity} units of product '{product_id}'")
    return committed

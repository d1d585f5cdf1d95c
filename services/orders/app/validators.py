"""
Enhanced validation utilities for the Orders service.

Provides business-rule validation beyond schema validation.
"""
from typing import Dict, List, Optional, Tuple
from decimal import Decimal
from . import schemas

MAX_ORDER_LINES = 100
MAX_LINE_QUANTITY = 10000
TOTAL_TOLERANCE = Decimal("0.01")

# Allowed fulfilment transitions; same-status updates are handled by the caller
ORDER_STATUS_TRANSITIONS = {
    "pending": ["confirmed", "fulfilled", "cancelled"],
    "confirmed": ["fulfilled", "cancelled"],
    "fulfilled": [],  # Terminal state
    "cancelled": [],  # Terminal state
}


def validate_cart_lines(items: List[schemas.CartLine]) -> Tuple[bool, str]:
    """
    Validate cart lines for business rules.

    The same product may appear more than once only with different
    variation choices.

    Args:
        items: Cart lines submitted by the buyer

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_ORDER_LINES:
        return False, f"Order cannot contain more than {MAX_ORDER_LINES} items"

    seen = set()
    for item in items:
        key = (item.product_id, tuple(sorted(item.selected_variations.items())))
        if key in seen:
            return False, f"Product {item.product_id} appears twice with the same variations"
        seen.add(key)

        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Item {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

    return True, ""


def validate_selected_variations(declared: Optional[list], selected: Dict[str, str]) -> Tuple[bool, str]:
    """
    Check selected variation choices against a product's declared variations.

    Args:
        declared: Product variations, a list of {"name", "options"} dicts
        selected: Variation name -> chosen option

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not selected:
        return True, ""

    options_by_name = {v.get("name"): v.get("options") or [] for v in (declared or [])}
    for name, option in selected.items():
        if name not in options_by_name:
            return False, f"Unknown variation '{name}'"
        if option not in options_by_name[name]:
            return False, f"Invalid option '{option}' for variation '{name}'"

    return True, ""


def validate_client_totals(
    order: schemas.OrderCreate,
    subtotal: Decimal,
    agm_fee: Decimal,
    total: Decimal,
) -> Tuple[bool, str]:
    """
    Cross-check client-submitted amounts against the server computation.

    Amounts the client did not send are not checked.

    Returns:
        Tuple of (is_valid, error_message)
    """
    claimed = (("subtotal", order.subtotal, subtotal),
               ("agm_fee", order.agm_fee, agm_fee),
               ("total", order.total, total))
    for field, claimed_value, computed in claimed:
        if claimed_value is None:
            continue
        if abs(Decimal(str(claimed_value)) - computed) > TOTAL_TOLERANCE:
            return False, f"Order {field} mismatch: calculated {computed}, claimed {claimed_value}"

    return True, ""


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in ORDER_STATUS_TRANSITIONS:
        return False, f"Unknown status: {old_status}"

    if new_status not in ORDER_STATUS_TRANSITIONS:
        return False, f"Unknown status: {new_status}"

    if old_status == new_status:
        return True, ""  # No change is valid

    if new_status not in ORDER_STATUS_TRANSITIONS[old_status]:
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""

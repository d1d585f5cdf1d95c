"""
Outbound notifications for order and payment events.

Collaborators (email and SMS senders, seller dashboards) subscribe by URL in
``NOTIFICATION_URLS``. Delivery is fire-and-forget: failures are logged and
never reach the request that triggered them.
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

import httpx

from . import config, models

logger = logging.getLogger(__name__)

# Strong references to in-flight deliveries so they are not collected mid-send
_pending_tasks = set()


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def send_notification(event_type: str, data: Dict[str, Any]) -> None:
    """
    Send a notification to all registered URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "payment.paid")
        data: Event data payload
    """
    urls = config.NOTIFICATION_URLS
    if not urls:
        return

    payload = {
        "event": event_type,
        "data": {key: _jsonable(value) for key, value in data.items()},
        "timestamp": models.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=5.0) as client:
        await asyncio.gather(
            *(send_single_notification(client, url, payload) for url in urls),
            return_exceptions=True,
        )


async def send_single_notification(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    try:
        response = await client.post(url, json=payload)
        if response.status_code >= 400:
            logger.warning(f"Notification {payload['event']} to {url} failed: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Notification {payload['event']} to {url} failed: {e}")


def _dispatch(event_type: str, data: Dict[str, Any]) -> None:
    if not config.NOTIFICATION_URLS:
        return
    task = asyncio.create_task(send_notification(event_type, data))
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)


def order_payload(order: models.Order) -> Dict[str, Any]:
    return {
        "order_number": order.order_number,
        "store_id": order.store_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "customer_email": order.customer_email,
        "total": order.total,
        "created_at": order.created_at,
    }


def notify_order_created(order: models.Order) -> None:
    """
    Notify that an order was placed.

    Args:
        order: The committed order
    """
    _dispatch("order.created", order_payload(order))


def notify_order_status_changed(order: models.Order, old_status: str, new_status: str) -> None:
    data = order_payload(order)
    data.update({"old_status": old_status, "new_status": new_status})
    _dispatch("order.status_changed", data)


def notify_payment_event(payment: models.Payment) -> None:
    """Notify subscribers of a payment that reached paid or failed/expired."""
    if payment.status == "paid":
        event_type = "payment.paid"
    elif payment.status in ("failed", "expired"):
        event_type = "payment.failed"
    else:
        return

    _dispatch(event_type, {
        "payment_reference": payment.payment_reference,
        "order_number": payment.order.order_number if payment.order else None,
        "status": payment.status,
        "amount": payment.amount,
        "paid_at": payment.paid_at,
    })

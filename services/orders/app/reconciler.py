"""
Payment reconciliation.

Gateway outcomes reach us three ways: pushed webhooks, buyer/seller verify
calls and the expiry sweep. All of them go through
``state_machine.transition_payment``, so however many times an outcome is
delivered it is applied once.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .clients.monnify_client import MonnifyClient, map_transaction_status
from .errors import ExternalServiceError, NotFound
from .state_machine import TERMINAL_PAYMENT_STATUSES, transition_payment

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    payment: Optional[models.Payment]
    status: Optional[str]
    applied: bool = False


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw request body."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check a webhook signature against the configured secret.

    An empty secret or a missing signature never verifies.
    """
    if not secret or not signature:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode("utf-8", "replace"))


def parse_webhook_payload(raw_body: bytes) -> schemas.MonnifyWebhookPayload:
    """
    Parse a notification body, unwrapping ``{"eventType", "eventData"}`` envelopes.

    Raises:
        ValueError: the body is not a usable transaction notification
    """
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Webhook body is not JSON: {e}")

    if not isinstance(payload, dict):
        raise ValueError("Webhook body is not a JSON object")
    if isinstance(payload.get("eventData"), dict):
        payload = payload["eventData"]

    try:
        parsed = schemas.MonnifyWebhookPayload.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"Webhook body is missing fields: {e.errors()}")

    if not parsed.transactionReference and not parsed.paymentReference:
        raise ValueError("Webhook body carries no reference")
    return parsed


def find_payment(
    db: Session,
    transaction_reference: Optional[str],
    payment_reference: Optional[str],
) -> Optional[models.Payment]:
    """Look a payment up by gateway reference, falling back to our own reference."""
    payment = None
    if transaction_reference:
        payment = crud.get_payment_by_monnify_reference(db, transaction_reference)
    if payment is None and payment_reference:
        payment = db.query(models.Payment).filter(
            models.Payment.payment_reference == payment_reference
        ).first()
    return payment


def handle_webhook(db: Session, payload: schemas.MonnifyWebhookPayload) -> ReconcileResult:
    """
    Apply a verified gateway notification.

    Unknown references and repeated deliveries are acknowledged without
    changing anything.
    """
    payment = find_payment(db, payload.transactionReference, payload.paymentReference)
    if payment is None:
        logger.warning(
            f"Webhook for unknown payment: transaction={payload.transactionReference} "
            f"payment={payload.paymentReference}"
        )
        return ReconcileResult(payment=None, status=None)

    new_status = map_transaction_status(payload.paymentStatus)
    if new_status == payment.status or new_status == "pending":
        logger.info(
            f"Webhook for '{payment.payment_reference}' reports {payload.paymentStatus}; "
            f"payment already {payment.status}"
        )
        return ReconcileResult(payment=payment, status=payment.status)

    metadata = {
        "gatewayStatus": payload.paymentStatus,
        "amountPaid": str(payload.amountPaid) if payload.amountPaid is not None else None,
        "paidOn": payload.paidOn,
        "paymentMethod": payload.paymentMethod,
    }
    try:
        applied = transition_payment(db, payment, new_status, source="webhook", metadata=metadata)
        if applied and payload.paymentMethod:
            payment.payment_method = payload.paymentMethod
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payment)
    return ReconcileResult(payment=payment, status=payment.status, applied=applied)


async def verify_payment(db: Session, gateway: MonnifyClient, reference: str) -> ReconcileResult:
    """
    Pull a payment's status from the gateway and apply it.

    Terminal payments are answered from the database without a gateway call.
    A gateway failure leaves the payment as it is and reports its stored status.

    Raises:
        NotFound: no payment has this reference
    """
    payment = crud.get_payment_by_reference(db, reference)
    if payment is None:
        raise NotFound("Payment")

    if payment.status in TERMINAL_PAYMENT_STATUSES:
        return ReconcileResult(payment=payment, status=payment.status)

    try:
        if payment.monnify_reference:
            transaction = await gateway.verify_status(payment.monnify_reference)
        else:
            transaction = await gateway.verify_status(payment.payment_reference, by_payment_reference=True)
    except ExternalServiceError as e:
        logger.warning(f"Verification of '{payment.payment_reference}' deferred: {e.message}")
        return ReconcileResult(payment=payment, status=payment.status)

    if transaction.status == "pending":
        return ReconcileResult(payment=payment, status=payment.status)

    metadata = {
        "gatewayStatus": transaction.gateway_status,
        "amountPaid": str(transaction.amount_paid) if transaction.amount_paid is not None else None,
        "paidOn": transaction.paid_on,
        "paymentMethod": transaction.payment_method,
    }
    try:
        applied = transition_payment(db, payment, transaction.status, source="verify", metadata=metadata)
        if applied and transaction.payment_method:
            payment.payment_method = transaction.payment_method
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payment)
    return ReconcileResult(payment=payment, status=payment.status, applied=applied)


def expire_stale_payments(db: Session, now: Optional[datetime] = None) -> int:
    """
    Expire pending payments whose session lifetime has passed.

    The status guard is applied by the UPDATE itself, so a payment that was
    paid after it was selected is left alone.

    Returns:
        Number of payments expired
    """
    now = now or models.utcnow()
    expired = 0
    for payment_id in crud.find_expired_payment_ids(db, now):
        payment = db.get(models.Payment, payment_id)
        if payment is None:
            continue
        try:
            if transition_payment(db, payment, "expired", source="sweeper", now=now):
                expired += 1
            db.commit()
        except Exception:
            db.rollback()
            raise

    if expired:
        logger.info(f"Expired {expired} stale payment(s)")
    return expired

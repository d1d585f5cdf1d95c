"""
Orders Service API

This module implements the FastAPI service at the heart of the storefront:
buyers place orders against a store's stock and pay through Monnify, sellers
manage fulfilment, and gateway outcomes are reconciled back into each order.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /stores/{username}/orders: Place an order and open its payment session
    GET /orders/track/{order_number}: Public order tracking
    POST /orders/{order_number}/payments: Open a new payment session for an unpaid order
    GET /orders/{order_id}: Get a single order (store owner)
    PATCH /orders/{order_id}/status: Change fulfilment status (store owner)
    GET /orders/{order_id}/timeline: Order event history (store owner)
    GET /stores/{store_id}/orders: List a store's orders (store owner)
    GET /stores/{store_id}/orders/stats: Order counts and revenue (store owner)
    GET /payments/verify/{reference}: Pull a payment's status from the gateway
    GET /payments/banks: Banks supported by the gateway
    POST /payments/bank-accounts/verify: Resolve an account name
    POST /payments/payouts: Send a payout (admin)
    GET /payments/payouts/{reference}: Payout status
    GET /payments/{reference}: Get a payment by reference
    POST /webhooks/monnify: Gateway transaction notifications

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import asyncio
import contextlib
import logging
from typing import List, Optional

from fastapi import FastAPI, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, config, crud, models, notifications, placement, reconciler, schemas, state_machine
from .clients.monnify_client import MonnifyClient
from .database import engine, get_db
from .errors import AppError, NotFound
from .sweeper import run_expiry_sweeper

logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

_gateway: Optional[MonnifyClient] = None


def get_gateway() -> MonnifyClient:
    """Dependency providing the process-wide Monnify client."""
    global _gateway
    if _gateway is None:
        _gateway = MonnifyClient.from_config()
    return _gateway


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    global _gateway
    sweeper_task = None
    if config.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
        sweeper_task = asyncio.create_task(run_expiry_sweeper(config.EXPIRY_SWEEP_INTERVAL_SECONDS))
    yield
    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None


app = FastAPI(title="orders-service", lifespan=lifespan)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "; ".join(messages))


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Example:
        GET /healthz
        Response: {"status": "healthy"}
    """
    return {"status": "healthy"}


# -- orders ---------------------------------------------------------------

@app.post(
    "/stores/{username}/orders",
    response_model=schemas.PlaceOrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def place_order(
    username: str,
    order_in: schemas.OrderCreate,
    db: Session = Depends(get_db),
    gateway: MonnifyClient = Depends(get_gateway),
):
    """
    Place an order with a store and open its payment session.

    The order and its stock are committed first. If the gateway cannot open a
    session the order still stands: ``payment`` is null, ``payment_error``
    explains why, and the buyer retries via ``POST /orders/{order_number}/payments``.

    Raises:
        NotFound: store or product missing
        BadRequest: inactive store/product, insufficient stock or total mismatch
    """
    order, payment, payment_error = await placement.place_order(db, gateway, username, order_in)
    notifications.notify_order_created(order)
    return schemas.PlaceOrderResponse(
        order=schemas.PublicOrder.model_validate(order),
        payment=schemas.Payment.model_validate(payment) if payment else None,
        payment_error=payment_error,
    )


@app.get("/orders/track/{order_number}", response_model=schemas.OrderTracking)
def track_order(order_number: str, db: Session = Depends(get_db)):
    """Public order tracking by order number."""
    order = crud.get_order_by_number(db, order_number)
    if order is None:
        raise NotFound("Order")
    payment = crud.get_latest_payment(db, order.id)
    return schemas.OrderTracking(
        order=schemas.PublicOrder.model_validate(order),
        payment=schemas.Payment.model_validate(payment) if payment else None,
    )


@app.post("/orders/{order_number}/payments", response_model=schemas.RetryPaymentResponse)
async def retry_order_payment(
    order_number: str,
    db: Session = Depends(get_db),
    gateway: MonnifyClient = Depends(get_gateway),
):
    """
    Give an unpaid order a payable session.

    Returns the current pending payment while it is still valid, otherwise
    opens a new one that becomes the order's authoritative payment.
    """
    payment, created = await placement.retry_payment(db, gateway, order_number)
    return schemas.RetryPaymentResponse(payment=schemas.Payment.model_validate(payment), created=created)


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return crud.get_owned_order(db, order_id, current_user.id)


@app.patch("/orders/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    status_update: schemas.OrderStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Change an order's fulfilment status (store owner only).

    Payment state is not a precondition; sellers may fulfil cash-on-delivery
    orders by hand.

    Raises:
        BadRequest: the transition is not allowed
        Forbidden: the order belongs to another seller's store
    """
    order = crud.get_owned_order(db, order_id, current_user.id)
    old_status = order.status
    try:
        changed = state_machine.transition_order_status(db, order, status_update.status, user_id=current_user.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    if changed:
        notifications.notify_order_status_changed(order, old_status, order.status)
    return order


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Get the timeline of events for an order, oldest first.

    Returns:
        List of order events
    """
    order = crud.get_owned_order(db, order_id, current_user.id)
    return crud.get_order_events(db, order.id)


@app.get("/stores/{store_id}/orders", response_model=schemas.OrderList)
def list_store_orders(
    store_id: str,
    status: Optional[schemas.OrderStatus] = None,
    payment_status: Optional[schemas.OrderPaymentStatus] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    List a store's orders with pagination and filters (store owner only).

    Args:
        status: Filter by fulfilment status
        payment_status: Filter by payment status
        search: Match order number, customer name or phone
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 20, max 100)
    """
    crud.get_owned_store(db, store_id, current_user.id)
    skip = max(0, skip)
    limit = max(1, min(limit, 100))
    orders, total = crud.list_store_orders(
        db, store_id, status=status, payment_status=payment_status,
        search=search, skip=skip, limit=limit,
    )
    return schemas.OrderList(
        orders=[schemas.Order.model_validate(o) for o in orders],
        total=total, skip=skip, limit=limit,
    )


@app.get("/stores/{store_id}/orders/stats", response_model=schemas.OrderStats)
def get_store_order_stats(
    store_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    crud.get_owned_store(db, store_id, current_user.id)
    return crud.get_order_stats(db, store_id)


# -- payments -------------------------------------------------------------

@app.get("/payments/verify/{reference}", response_model=schemas.VerifyPaymentResponse)
async def verify_payment(
    reference: str,
    db: Session = Depends(get_db),
    gateway: MonnifyClient = Depends(get_gateway),
):
    """
    Reconcile a payment with the gateway on demand.

    Already-settled payments are answered from the database. If the gateway
    is unreachable the stored status is returned and the payment stays pending.
    """
    result = await reconciler.verify_payment(db, gateway, reference)
    if result.applied:
        notifications.notify_payment_event(result.payment)
    return schemas.VerifyPaymentResponse(
        verified=result.status == "paid",
        status=result.status,
        payment=schemas.Payment.model_validate(result.payment),
    )


@app.get("/payments/banks")
async def list_banks(gateway: MonnifyClient = Depends(get_gateway)):
    return {"banks": await gateway.list_banks()}


@app.post("/payments/bank-accounts/verify")
async def verify_bank_account(
    account: schemas.BankAccountVerify,
    gateway: MonnifyClient = Depends(get_gateway),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """Resolve the account name behind a bank account number."""
    body = await gateway.verify_bank_account(account.account_number, account.bank_code)
    return {
        "account_number": body.get("accountNumber", account.account_number),
        "account_name": body.get("accountName"),
        "bank_code": body.get("bankCode", account.bank_code),
    }


@app.post("/payments/payouts", status_code=status.HTTP_201_CREATED)
async def create_payout(
    payout: schemas.PayoutCreate,
    gateway: MonnifyClient = Depends(get_gateway),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Send a single payout from the merchant wallet (admin only).

    Raises:
        ExternalServiceError: the gateway rejected or did not answer the transfer
    """
    result = await gateway.initiate_transfer(
        amount=payout.amount,
        destination_bank_code=payout.destination_bank_code,
        destination_account_number=payout.destination_account_number,
        reference=payout.reference,
        narration=payout.narration,
    )
    logger.info(f"Payout '{result.reference}' initiated by user {current_user.id}")
    return {"reference": result.reference, "status": result.status, "amount": result.amount}


@app.get("/payments/payouts/{reference}")
async def get_payout(
    reference: str,
    gateway: MonnifyClient = Depends(get_gateway),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    result = await gateway.get_transfer_status(reference)
    return {"reference": result.reference, "status": result.status, "amount": result.amount}


@app.get("/payments/{reference}", response_model=schemas.Payment)
def get_payment(reference: str, db: Session = Depends(get_db)):
    """Get a payment by its payment reference or gateway transaction reference."""
    payment = crud.get_payment_by_reference(db, reference)
    if payment is None:
        raise NotFound("Payment")
    return payment


# -- gateway callbacks ----------------------------------------------------

@app.post("/webhooks/monnify")
async def monnify_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Receive Monnify transaction notifications.

    The HMAC-SHA512 signature over the raw body must match, otherwise the
    call is rejected with 401 so the gateway retries. Verified notifications
    are always acknowledged, including unknown references and repeats.
    """
    raw_body = await request.body()
    signature = request.headers.get("monnify-signature") or request.headers.get("x-signature")
    if not reconciler.verify_webhook_signature(raw_body, signature, config.MONNIFY_WEBHOOK_SECRET):
        logger.warning("Rejected Monnify webhook with invalid signature")
        return error_response(status.HTTP_401_UNAUTHORIZED, "INVALID_SIGNATURE", "Invalid webhook signature")

    try:
        payload = reconciler.parse_webhook_payload(raw_body)
    except ValueError as e:
        logger.warning(f"Ignoring malformed Monnify webhook: {e}")
        return {"success": True, "message": "Ignored"}

    result = reconciler.handle_webhook(db, payload)
    if result.applied:
        notifications.notify_payment_event(result.payment)
    return {"success": True, "message": "Webhook processed"}

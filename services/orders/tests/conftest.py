import os
import tempfile
from datetime import timedelta
from decimal import Decimal

_tmpdir = tempfile.mkdtemp(prefix="orders-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'orders.db')}"
os.environ["MONNIFY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["EXPIRY_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["NOTIFICATION_URLS"] = ""

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app import models
from app.clients.monnify_client import GatewayTransaction, PaymentSession, TransferResult, map_transaction_status
from app.database import SessionLocal, engine
from app.errors import ExternalServiceError
from app.main import app, get_gateway
from app.reconciler import compute_signature

WEBHOOK_SECRET = "test-webhook-secret"
JWT_SECRET = "test-jwt-secret"
SELLER_ID = "seller-1"


class FakeGateway:
    """In-process stand-in for MonnifyClient with scriptable outcomes."""

    def __init__(self):
        self.fail_init = False
        self.fail_verify = False
        self.statuses = {}
        self.init_calls = 0
        self.verify_calls = 0
        self.transfers = []

    async def initialize_session(self, amount, customer_email, customer_name, description, payment_reference):
        self.init_calls += 1
        if self.fail_init:
            raise ExternalServiceError("Monnify payment initialization timed out")
        return PaymentSession(
            transaction_reference=f"MNFY-{payment_reference}",
            payment_reference=payment_reference,
            checkout_url=f"https://sandbox.monnify.test/checkout/{payment_reference}",
            account_number="9876543210",
            account_name="AGM Checkout",
            bank_name="Wema Bank",
            raw={"amount": str(amount), "customerEmail": customer_email},
        )

    async def verify_status(self, reference, by_payment_reference=False):
        self.verify_calls += 1
        if self.fail_verify:
            raise ExternalServiceError("Monnify payment verification timed out")
        gateway_status = self.statuses.get(reference, "PENDING")
        return GatewayTransaction(
            reference=reference,
            gateway_status=gateway_status,
            status=map_transaction_status(gateway_status),
            amount_paid=Decimal("2000.00") if gateway_status == "PAID" else None,
            payment_method="ACCOUNT_TRANSFER",
        )

    async def initiate_transfer(self, amount, destination_bank_code, destination_account_number, reference, narration):
        self.transfers.append(reference)
        return TransferResult(reference=reference, status="SUCCESS", amount=amount)

    async def get_transfer_status(self, reference):
        return TransferResult(reference=reference, status="SUCCESS", amount=Decimal("5000.00"))

    async def verify_bank_account(self, account_number, bank_code):
        return {"accountNumber": account_number, "accountName": "ADA OBI", "bankCode": bank_code}

    async def list_banks(self):
        return [{"name": "Wema Bank", "code": "035"}]


@pytest.fixture(autouse=True)
def reset_database():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_store(db):
    def _make_store(username="shop1", user_id=SELLER_ID, is_active=True):
        store = models.Store(username=username, user_id=user_id, display_name=username.title(), is_active=is_active)
        db.add(store)
        db.commit()
        return store
    return _make_store


@pytest.fixture
def make_product(db):
    def _make_product(store, stock=5, price="1000.00", name="Ankara Gown", variations=None, is_active=True):
        product = models.Product(
            store_id=store.id,
            name=name,
            price=Decimal(price),
            images=["https://cdn.example.com/gown.jpg"],
            variations=variations or [],
            stock_quantity=stock,
            is_active=is_active,
        )
        db.add(product)
        db.commit()
        return product
    return _make_product


@pytest.fixture
def make_order(db):
    def _make_order(store, status="pending", payment_status="pending", total="2000.00"):
        order = models.Order(
            store_id=store.id,
            order_number=f"AGM-2026-{100000 + len(db.query(models.Order).all())}",
            status=status,
            payment_status=payment_status,
            customer_name="Ada Obi",
            customer_phone="+2348012345678",
            items=[],
            subtotal=Decimal(total),
            agm_fee=Decimal("50.00"),
            total=Decimal(total),
        )
        db.add(order)
        db.commit()
        return order
    return _make_order


@pytest.fixture
def make_payment(db):
    def _make_payment(order, status="pending", created_at=None, expires_in=timedelta(minutes=30)):
        created_at = created_at or models.utcnow()
        reference = f"PAY-{order.order_number}-{len(db.query(models.Payment).all()):04d}"
        payment = models.Payment(
            order_id=order.id,
            user_id=SELLER_ID,
            amount=order.total,
            status=status,
            payment_reference=reference,
            monnify_reference=f"MNFY-{reference}",
            expires_at=created_at + expires_in,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(payment)
        db.commit()
        return payment
    return _make_payment


def auth_headers(user_id=SELLER_ID, role="seller", email="seller@example.com"):
    token = jwt.encode({"sub": user_id, "email": email, "role": role}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def signed_headers(body: bytes, header="monnify-signature"):
    return {"Content-Type": "application/json", header: compute_signature(body, WEBHOOK_SECRET)}


def order_payload(product_id, quantity=2, **overrides):
    payload = {
        "customer_name": "Ada Obi",
        "customer_phone": "+2348012345678",
        "customer_email": "ada@example.com",
        "customer_address": {"street": "12 Allen Avenue", "city": "Ikeja", "state": "Lagos"},
        "items": [{"product_id": product_id, "quantity": quantity}],
    }
    payload.update(overrides)
    return payload

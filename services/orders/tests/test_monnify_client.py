import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from app.clients.monnify_client import MonnifyClient, map_transaction_status
from app.errors import ExternalServiceError

BASE_URL = "https://sandbox.monnify.test"


def _ok(body):
    return httpx.Response(200, json={
        "requestSuccessful": True,
        "responseMessage": "success",
        "responseCode": "0",
        "responseBody": body,
    })


def _client(handler):
    return MonnifyClient(
        base_url=BASE_URL,
        api_key="MK_TEST_KEY",
        secret_key="SECRET",
        contract_code="1234567890",
        redirect_url="http://localhost:3000/payment/callback",
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    """MockTransport handler that serves login and transaction queries."""

    def __init__(self, expires_in=3600, status="PAID"):
        self.expires_in = expires_in
        self.status = status
        self.logins = 0
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/api/v1/auth/login":
            self.logins += 1
            return _ok({"accessToken": f"token-{self.logins}", "expiresIn": self.expires_in})
        return _ok({"paymentStatus": self.status, "amountPaid": 2000, "paymentMethod": "CARD"})


@pytest.mark.parametrize("gateway_status, expected", [
    ("PAID", "paid"),
    ("OVERPAID", "paid"),
    ("FAILED", "failed"),
    ("CANCELLED", "failed"),
    ("REVERSED", "failed"),
    ("EXPIRED", "expired"),
    ("PENDING", "pending"),
    ("PARTIALLY_PAID", "pending"),
    ("paid", "paid"),
    (None, "pending"),
])
def test_status_mapping(gateway_status, expected):
    assert map_transaction_status(gateway_status) == expected


def test_token_is_cached_between_calls():
    recorder = Recorder()

    async def scenario():
        client = _client(recorder)
        try:
            first = await client.verify_status("MNFY-1")
            second = await client.verify_status("MNFY-2")
        finally:
            await client.aclose()
        return first, second

    first, second = asyncio.run(scenario())

    assert recorder.logins == 1
    assert first.status == "paid"
    assert first.amount_paid == Decimal("2000")
    assert second.payment_method == "CARD"
    queries = [r for r in recorder.requests if r.url.path != "/api/v1/auth/login"]
    assert [r.url.path for r in queries] == ["/api/v2/transactions/MNFY-1", "/api/v2/transactions/MNFY-2"]
    assert all(r.headers["Authorization"] == "Bearer token-1" for r in queries)


def test_login_uses_basic_auth():
    recorder = Recorder()

    async def scenario():
        client = _client(recorder)
        try:
            return await client.authenticate()
        finally:
            await client.aclose()

    assert asyncio.run(scenario()) == "token-1"
    assert recorder.requests[0].headers["Authorization"].startswith("Basic ")


def test_token_within_expiry_margin_is_refreshed():
    recorder = Recorder(expires_in=200)

    async def scenario():
        client = _client(recorder)
        try:
            await client.verify_status("MNFY-1")
            await client.verify_status("MNFY-2")
        finally:
            await client.aclose()

    asyncio.run(scenario())
    assert recorder.logins == 2


def test_concurrent_refresh_is_single_flight():
    logins = []

    async def handler(request):
        if request.url.path == "/api/v1/auth/login":
            logins.append(request)
            await asyncio.sleep(0.05)
            return _ok({"accessToken": f"token-{len(logins)}", "expiresIn": 3600})
        return _ok({})

    async def scenario():
        client = _client(handler)
        try:
            return await asyncio.gather(*(client.get_valid_token() for _ in range(5)))
        finally:
            await client.aclose()

    tokens = asyncio.run(scenario())
    assert len(logins) == 1
    assert tokens == ["token-1"] * 5


def test_lookup_by_payment_reference():
    recorder = Recorder(status="FAILED")

    async def scenario():
        client = _client(recorder)
        try:
            return await client.verify_status("PAY-AGM-2026-123456-ABCD", by_payment_reference=True)
        finally:
            await client.aclose()

    result = asyncio.run(scenario())
    assert result.status == "failed"
    query = recorder.requests[-1]
    assert query.url.path == "/api/v1/merchant/transactions/query"
    assert query.url.params["paymentReference"] == "PAY-AGM-2026-123456-ABCD"


def test_initialize_session_sends_contract_and_reference():
    sent = {}

    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        sent.update(json.loads(request.content))
        return _ok({
            "transactionReference": "MNFY|20261017|000123",
            "paymentReference": sent["paymentReference"],
            "checkoutUrl": "https://sandbox.monnify.test/checkout/MNFY|20261017|000123",
        })

    async def scenario():
        client = _client(handler)
        try:
            return await client.initialize_session(
                amount=Decimal("2000.00"),
                customer_email="ada@example.com",
                customer_name="Ada Obi",
                description="Payment for order AGM-2026-123456",
                payment_reference="PAY-AGM-2026-123456-ABCD",
            )
        finally:
            await client.aclose()

    session = asyncio.run(scenario())
    assert session.transaction_reference == "MNFY|20261017|000123"
    assert session.checkout_url.endswith("000123")
    assert sent["contractCode"] == "1234567890"
    assert sent["currencyCode"] == "NGN"
    assert sent["amount"] == 2000.0
    assert sent["paymentMethods"] == ["ACCOUNT_TRANSFER", "CARD"]


def _run_failing(handler):
    async def scenario():
        client = _client(handler)
        try:
            await client.verify_status("MNFY-1")
        finally:
            await client.aclose()

    with pytest.raises(ExternalServiceError) as exc_info:
        asyncio.run(scenario())
    return exc_info.value


def test_http_error_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        return httpx.Response(500, text="upstream exploded")

    error = _run_failing(handler)
    assert error.status_code == 502
    assert error.code == "EXTERNAL_SERVICE_ERROR"


def test_timeout_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        raise httpx.ReadTimeout("timed out", request=request)

    assert "timed out" in _run_failing(handler).message


def test_unsuccessful_response_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        return httpx.Response(200, json={"requestSuccessful": False, "responseMessage": "Invalid reference"})

    assert "Invalid reference" in _run_failing(handler).message


def test_non_object_body_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        return _ok(["not", "an", "object"])

    assert "unexpected response" in _run_failing(handler).message


def test_non_object_envelope_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        return httpx.Response(200, content=b"null", headers={"Content-Type": "application/json"})

    assert "unexpected response" in _run_failing(handler).message


def test_invalid_amount_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        return _ok({"paymentStatus": "PAID", "amountPaid": "two thousand"})

    _run_failing(handler)


def test_unexpected_bank_list_becomes_external_service_error():
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        return _ok({"banks": "unavailable"})

    async def scenario():
        client = _client(handler)
        try:
            await client.list_banks()
        finally:
            await client.aclose()

    with pytest.raises(ExternalServiceError):
        asyncio.run(scenario())


def test_unauthorized_response_drops_cached_token():
    logins = []

    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            logins.append(request)
            return _ok({"accessToken": f"token-{len(logins)}", "expiresIn": 3600})
        if len(logins) == 1:
            return httpx.Response(401, json={"requestSuccessful": False, "responseMessage": "Expired token"})
        return _ok({"paymentStatus": "PAID"})

    async def scenario():
        client = _client(handler)
        try:
            with pytest.raises(ExternalServiceError):
                await client.verify_status("MNFY-1")
            return await client.verify_status("MNFY-1")
        finally:
            await client.aclose()

    result = asyncio.run(scenario())
    assert result.status == "paid"
    assert len(logins) == 2


def test_transfer_and_bank_lookups():
    def handler(request):
        path = request.url.path
        if path == "/api/v1/auth/login":
            return _ok({"accessToken": "token", "expiresIn": 3600})
        if path == "/api/v2/disbursements/single":
            body = json.loads(request.content)
            return _ok({"reference": body["reference"], "status": "SUCCESS", "amount": body["amount"]})
        if path == "/api/v1/disbursements/account/validate":
            return _ok({"accountNumber": request.url.params["accountNumber"], "accountName": "ADA OBI"})
        if path == "/api/v1/banks":
            return _ok([{"name": "Wema Bank", "code": "035"}])
        return httpx.Response(404)

    async def scenario():
        client = _client(handler)
        try:
            transfer = await client.initiate_transfer(
                Decimal("5000.00"), "035", "0123456789", "PAYOUT-0001", "Weekly payout",
            )
            account = await client.verify_bank_account("0123456789", "035")
            banks = await client.list_banks()
        finally:
            await client.aclose()
        return transfer, account, banks

    transfer, account, banks = asyncio.run(scenario())
    assert transfer.reference == "PAYOUT-0001"
    assert transfer.amount == Decimal("5000.0")
    assert account["accountName"] == "ADA OBI"
    assert banks[0]["code"] == "035"

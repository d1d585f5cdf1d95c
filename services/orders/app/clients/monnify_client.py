"""
HTTP client for the Monnify payment gateway.

One ``MonnifyClient`` instance owns one ``httpx.AsyncClient`` and one cached
access token. Every call carries the configured timeout and is attempted
exactly once; failures surface as ``ExternalServiceError`` and retrying is
left to the caller.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .. import config
from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_MARGIN_SECONDS = 300

# Gateway transaction vocabulary -> local payment outcome
STATUS_MAP = {
    "PAID": "paid",
    "OVERPAID": "paid",
    "FAILED": "failed",
    "CANCELLED": "failed",
    "REVERSED": "failed",
    "EXPIRED": "expired",
}


def map_transaction_status(gateway_status: Optional[str]) -> str:
    """Map a Monnify payment status to paid/failed/expired, else pending."""
    return STATUS_MAP.get(str(gateway_status or "").strip().upper(), "pending")


@dataclass
class PaymentSession:
    """Payable session opened with the gateway, plus what the buyer is shown."""
    transaction_reference: str
    payment_reference: str
    checkout_url: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    expires_on: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayTransaction:
    reference: str
    gateway_status: Optional[str]
    status: str
    amount_paid: Optional[Decimal] = None
    paid_on: Optional[str] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransferResult:
    reference: str
    status: Optional[str]
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class MonnifyClient:
    """
    Single point of contact with Monnify.

    Args:
        base_url: Gateway base URL
        api_key, secret_key: Credentials exchanged for a bearer token
        contract_code: Merchant contract used for collections
        source_account: Wallet account debited by payouts
        redirect_url: Where the checkout page sends the buyer afterwards
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        secret_key: str,
        contract_code: str,
        source_account: str = "",
        redirect_url: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.secret_key = secret_key
        self.contract_code = contract_code
        self.source_account = source_account
        self.redirect_url = redirect_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_config(cls) -> "MonnifyClient":
        return cls(
            base_url=config.MONNIFY_BASE_URL,
            api_key=config.MONNIFY_API_KEY,
            secret_key=config.MONNIFY_SECRET_KEY,
            contract_code=config.MONNIFY_CONTRACT_CODE,
            source_account=config.MONNIFY_SOURCE_ACCOUNT,
            redirect_url=config.APP_URL,
            timeout=config.MONNIFY_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- authentication ---------------------------------------------------

    def _token_is_valid(self) -> bool:
        return self._access_token is not None and time.monotonic() < self._token_expiry

    async def get_valid_token(self) -> str:
        """
        Return a cached access token, refreshing it if it has expired.

        Concurrent callers that find the token expired queue on one lock; the
        first refreshes and the rest reuse its result.
        """
        if self._token_is_valid():
            return self._access_token

        async with self._token_lock:
            if self._token_is_valid():
                return self._access_token
            return await self.authenticate()

    async def authenticate(self) -> str:
        """Exchange the API key and secret for a bearer token and cache it."""
        try:
            response = await self._client.post(
                "/api/v1/auth/login",
                auth=(self.api_key, self.secret_key),
            )
        except httpx.HTTPError as e:
            logger.error(f"Monnify authentication failed: {e}")
            raise ExternalServiceError("Monnify authentication failed")

        body = self._expect(self._parse(response, "authentication"), dict, "authentication")
        token = body.get("accessToken")
        if not token:
            raise ExternalServiceError("Monnify authentication returned no token")

        try:
            expires_in = int(body.get("expiresIn") or 0)
        except (TypeError, ValueError):
            raise ExternalServiceError("Monnify authentication returned an invalid expiry")
        self._access_token = token
        self._token_expiry = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        logger.info("Monnify access token obtained")
        return token

    # -- transport helpers ------------------------------------------------

    def _parse(self, response: httpx.Response, action: str) -> Any:
        if response.status_code >= 400:
            logger.error(f"Monnify {action} failed: HTTP {response.status_code} {response.text[:500]}")
            raise ExternalServiceError(f"Monnify {action} failed with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            raise ExternalServiceError(f"Monnify {action} returned a non-JSON response")
        if not isinstance(payload, dict):
            raise ExternalServiceError(f"Monnify {action} returned an unexpected response")
        if not payload.get("requestSuccessful"):
            message = payload.get("responseMessage") or "request unsuccessful"
            logger.error(f"Monnify {action} rejected: {message}")
            raise ExternalServiceError(f"Monnify {action} failed: {message}")
        return payload.get("responseBody")

    @staticmethod
    def _expect(body: Any, expected: type, action: str) -> Any:
        """Check the shape of a responseBody; a missing body becomes an empty one."""
        if body is None:
            return expected()
        if not isinstance(body, expected):
            logger.error(f"Monnify {action} returned a {type(body).__name__} body")
            raise ExternalServiceError(f"Monnify {action} returned an unexpected response")
        return body

    @staticmethod
    def _decimal(value: Any, action: str) -> Optional[Decimal]:
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ExternalServiceError(f"Monnify {action} returned an invalid amount")

    async def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        token = await self.get_valid_token()
        try:
            response = await self._client.request(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.TimeoutException:
            logger.error(f"Monnify {action} timed out")
            raise ExternalServiceError(f"Monnify {action} timed out")
        except httpx.HTTPError as e:
            logger.error(f"Monnify {action} error: {e}")
            raise ExternalServiceError(f"Monnify {action} failed: {e}")

        if response.status_code == 401:
            self._access_token = None
        return self._parse(response, action)

    # -- collections ------------------------------------------------------

    async def initialize_session(
        self,
        amount: Decimal,
        customer_email: str,
        customer_name: str,
        description: str,
        payment_reference: str,
    ) -> PaymentSession:
        """
        Open a payable session for ``amount``.

        ``payment_reference`` is the local reference; the gateway echoes it in
        notifications so payments can be matched either way.
        """
        payload = {
            "amount": float(amount),
            "customerName": customer_name,
            "customerEmail": customer_email,
            "paymentReference": payment_reference,
            "paymentDescription": description,
            "currencyCode": config.CURRENCY,
            "contractCode": self.contract_code,
            "redirectUrl": self.redirect_url,
            "paymentMethods": ["ACCOUNT_TRANSFER", "CARD"],
        }
        body = await self._request(
            "POST", "/api/v1/merchant/transactions/init-transaction",
            "payment initialization", json=payload,
        )
        body = self._expect(body, dict, "payment initialization")

        transaction_reference = body.get("transactionReference")
        if not transaction_reference:
            raise ExternalServiceError("Monnify payment initialization returned no transaction reference")

        logger.info(f"Payment initialized: reference={transaction_reference} amount={amount}")
        return PaymentSession(
            transaction_reference=transaction_reference,
            payment_reference=body.get("paymentReference") or payment_reference,
            checkout_url=body.get("checkoutUrl"),
            account_number=body.get("accountNumber"),
            account_name=body.get("accountName"),
            bank_name=body.get("bankName"),
            bank_code=body.get("bankCode"),
            expires_on=body.get("expiresOn"),
            raw=body,
        )

    async def verify_status(self, reference: str, by_payment_reference: bool = False) -> GatewayTransaction:
        """
        Query the gateway for a transaction's current status.

        Args:
            reference: Gateway transaction reference, or the local payment
                reference when ``by_payment_reference`` is set
        """
        if by_payment_reference:
            body = await self._request(
                "GET", "/api/v1/merchant/transactions/query",
                "payment verification", params={"paymentReference": reference},
            )
        else:
            body = await self._request(
                "GET", f"/api/v2/transactions/{quote(reference, safe='')}",
                "payment verification",
            )
        body = self._expect(body, dict, "payment verification")

        gateway_status = body.get("paymentStatus")
        amount_paid = body.get("amountPaid")
        logger.info(f"Payment verified: reference={reference} status={gateway_status}")
        return GatewayTransaction(
            reference=reference,
            gateway_status=gateway_status,
            status=map_transaction_status(gateway_status),
            amount_paid=self._decimal(amount_paid, "payment verification"),
            paid_on=body.get("paidOn"),
            payment_method=body.get("paymentMethod"),
            raw=body,
        )

    # -- disbursements and lookups ---------------------------------------

    async def initiate_transfer(
        self,
        amount: Decimal,
        destination_bank_code: str,
        destination_account_number: str,
        reference: str,
        narration: str,
    ) -> TransferResult:
        """Send a single payout from the merchant wallet."""
        payload = {
            "amount": float(amount),
            "reference": reference,
            "narration": narration,
            "destinationBankCode": destination_bank_code,
            "destinationAccountNumber": destination_account_number,
            "currency": config.CURRENCY,
            "sourceAccountNumber": self.source_account,
        }
        body = await self._request(
            "POST", "/api/v2/disbursements/single", "transfer", json=payload,
        )
        body = self._expect(body, dict, "transfer")

        logger.info(f"Transfer initiated: reference={reference} amount={amount}")
        return TransferResult(
            reference=body.get("reference") or reference,
            status=body.get("status"),
            amount=self._decimal(body.get("amount"), "transfer"),
            raw=body,
        )

    async def get_transfer_status(self, reference: str) -> TransferResult:
        body = await self._request(
            "GET", "/api/v2/disbursements/single/summary",
            "transfer status", params={"reference": reference},
        )
        body = self._expect(body, dict, "transfer status")
        return TransferResult(
            reference=body.get("reference") or reference,
            status=body.get("status"),
            amount=self._decimal(body.get("amount"), "transfer status"),
            raw=body,
        )

    async def verify_bank_account(self, account_number: str, bank_code: str) -> Dict[str, Any]:
        """Resolve the account name behind an account number."""
        body = await self._request(
            "GET", "/api/v1/disbursements/account/validate",
            "bank account verification",
            params={"accountNumber": account_number, "bankCode": bank_code},
        )
        return self._expect(body, dict, "bank account verification")

    async def list_banks(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/api/v1/banks", "bank list")
        return self._expect(body, list, "bank list")

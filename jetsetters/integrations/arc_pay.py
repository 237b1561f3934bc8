"""
ARC Pay gateway adapter
Hosted checkout sessions, order retrieval, refunds and voids against the ARC Pay REST API.
Responses are normalized so the rest of the service never reads raw gateway payloads.
"""

import os
import asyncio
import logging
import httpx
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from ..errors import ValidationError, GatewayUnavailable, GatewayRejected

load_dotenv()
logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.arcpay.travel/api/rest/version/100"
DEFAULT_CHECKOUT_URL = "https://api.arcpay.travel/checkout/pay"

# order.status values that mean money was taken at some point
CAPTURED_ORDER_STATUSES = {"CAPTURED", "PARTIALLY_CAPTURED", "PARTIALLY_REFUNDED", "REFUNDED", "AUTHORIZED"}
FAILED_ORDER_STATUSES = {"FAILED", "DECLINED", "CANCELLED", "EXPIRED", "AUTHENTICATION_UNSUCCESSFUL"}
PAYMENT_TRANSACTION_TYPES = {"PAYMENT", "CAPTURE", "AUTHORIZATION"}
VOID_TRANSACTION_PREFIX = "VOID"


class TransactionSummary(BaseModel):
    id: Optional[str] = None
    type: str
    amount: Decimal = Decimal("0.00")
    gateway_code: Optional[str] = None
    result: Optional[str] = None
    timestamp: Optional[datetime] = None


def _is_void(txn: TransactionSummary) -> bool:
    return txn.type.startswith(VOID_TRANSACTION_PREFIX) and txn.result in (None, "SUCCESS")


class NormalizedOrderStatus(BaseModel):
    """The gateway's view of an order. Local payment rows are always subordinate to this."""

    order_id: str
    result: Literal["SUCCESS", "PENDING", "FAILURE"]
    order_status: Optional[str] = None
    exists: bool = True
    currency: Optional[str] = None
    total_authorized_amount: Decimal = Decimal("0.00")
    total_captured_amount: Decimal = Decimal("0.00")
    total_refunded_amount: Decimal = Decimal("0.00")
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    transactions: List[TransactionSummary] = Field(default_factory=list)

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_captured_amount - self.total_refunded_amount

    @property
    def payment_transaction(self) -> Optional[TransactionSummary]:
        """Latest successful PAYMENT/CAPTURE transaction, the target of refunds and voids."""
        candidates = [
            t for t in self.transactions
            if t.type in PAYMENT_TRANSACTION_TYPES and (t.result in (None, "SUCCESS"))
        ]
        return candidates[-1] if candidates else None

    @property
    def voided(self) -> bool:
        return any(_is_void(t) for t in self.transactions)

    @property
    def untouched(self) -> bool:
        """Captured in full with nothing refunded or voided yet."""
        return (
            self.total_captured_amount > 0
            and self.total_refunded_amount == 0
            and not self.voided
        )


class CheckoutSession(BaseModel):
    order_id: str
    session_id: str
    checkout_url: str
    success_indicator: Optional[str] = None
    amount: Decimal
    currency: str


class RefundResult(BaseModel):
    refund_id: str
    status: str
    amount: Decimal


class VoidResult(BaseModel):
    transaction_id: str
    status: str


def _money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value))


def _format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_order(order_id: str, data: Dict[str, Any]) -> NormalizedOrderStatus:
    """Translate an ARC Pay ``GET /order/{id}`` body into a NormalizedOrderStatus."""
    transactions = []
    for entry in data.get("transaction") or []:
        txn = entry.get("transaction") or {}
        transactions.append(TransactionSummary(
            id=str(txn.get("id")) if txn.get("id") is not None else None,
            type=str(txn.get("type") or "UNKNOWN").upper(),
            amount=_money(txn.get("amount")),
            gateway_code=(entry.get("response") or {}).get("gatewayCode"),
            result=entry.get("result"),
            timestamp=_parse_time(entry.get("timeOfRecord") or entry.get("timeOfLastUpdate")),
        ))

    order_status = (data.get("status") or "").upper() or None
    captured = _money(data.get("totalCapturedAmount"))
    authorized = _money(data.get("totalAuthorizedAmount"))

    # a voided order can report CANCELLED with its captured total zeroed; it was still paid
    voided = any(_is_void(t) for t in transactions)

    if captured > 0 or order_status in CAPTURED_ORDER_STATUSES or voided:
        result = "SUCCESS"
    elif order_status in FAILED_ORDER_STATUSES or data.get("result") == "FAILURE":
        result = "FAILURE"
    else:
        result = "PENDING"

    failure_reason = None
    if result == "FAILURE":
        last = transactions[-1] if transactions else None
        failure_reason = (last.gateway_code if last else None) or order_status or "DECLINED"

    card = ((data.get("sourceOfFunds") or {}).get("provided") or {}).get("card") or {}

    return NormalizedOrderStatus(
        order_id=order_id,
        result=result,
        order_status=order_status,
        currency=data.get("currency"),
        total_authorized_amount=authorized,
        total_captured_amount=captured,
        total_refunded_amount=_money(data.get("totalRefundedAmount")),
        payment_method=card.get("brand"),
        failure_reason=failure_reason,
        transactions=transactions,
    )


class ArcPayGateway:
    """
    ARC Pay (Mastercard gateway) REST client.

    Every call authenticates with basic auth ``merchant.<MERCHANT_ID>:<API_PASSWORD>``.
    Only ``retrieve_order_status`` is retried; session creation, refunds and
    voids are sent once and callers re-invoke deliberately with the same ids.
    """

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        api_password: Optional[str] = None,
        base_url: Optional[str] = None,
        checkout_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        read_retries: Optional[int] = None,
        retry_backoff: float = 0.5,
    ):
        self.merchant_id = merchant_id or os.getenv("ARC_PAY_MERCHANT_ID")
        self.api_password = api_password or os.getenv("ARC_PAY_API_PASSWORD")
        self.base_url = (base_url or os.getenv("ARC_PAY_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.checkout_url = (checkout_url or os.getenv("ARC_PAY_CHECKOUT_URL", DEFAULT_CHECKOUT_URL)).rstrip("/")
        self.transport = transport
        self.timeout = timeout
        self.read_retries = read_retries if read_retries is not None else int(os.getenv("ARC_PAY_READ_RETRIES", 3))
        self.retry_backoff = retry_backoff

        # sessions created by this process, keyed by order id
        self._sessions: Dict[str, CheckoutSession] = {}

        if not self.merchant_id or not self.api_password:
            logger.warning("⚠️ ARC Pay credentials not configured")

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.api_password)

    def _merchant_url(self, path: str) -> str:
        return f"{self.base_url}/merchant/{self.merchant_id}/{path.lstrip('/')}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=httpx.BasicAuth(f"merchant.{self.merchant_id}", self.api_password or ""),
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json"},
        )

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise GatewayUnavailable("Payment gateway not configured")

        url = self._merchant_url(path)
        try:
            async with self._client() as client:
                response = await client.request(method, url, json=payload)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"ARC Pay timed out: {e}")
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"ARC Pay unreachable: {e}")

        if response.status_code >= 500:
            logger.error(f"ARC Pay {method} {path} failed: {response.status_code} - {response.text}")
            raise GatewayUnavailable(
                f"ARC Pay returned {response.status_code}",
                http_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if response.status_code >= 400 or data.get("result") == "ERROR":
            error = data.get("error") or {}
            explanation = error.get("explanation") or error.get("cause") or response.text
            logger.warning(f"ARC Pay rejected {method} {path}: {response.status_code} - {explanation}")
            raise GatewayRejected(
                explanation,
                details={"error": error} if error else {},
                gateway_code=error.get("cause"),
                http_status=response.status_code,
            )

        return data

    async def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        description: str,
        return_url: str,
        cancel_url: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session (``INITIATE_CHECKOUT``).

        Idempotent per order id within this adapter: the same order id returns
        the session already created, and the same order id with a different
        amount or currency is refused.
        """
        amount = Decimal(str(amount))
        if not order_id:
            raise ValidationError("order_id is required")
        if amount <= 0:
            raise ValidationError("Checkout amount must be positive", {"amount": str(amount)})
        if not return_url:
            raise ValidationError("return_url is required")
        currency = (currency or "USD").upper()

        existing = self._sessions.get(order_id)
        if existing:
            if existing.amount != amount or existing.currency != currency:
                raise ValidationError(
                    f"Order {order_id} already has a checkout session for {existing.currency} {existing.amount}",
                    {"order_id": order_id}
                )
            logger.info(f"Reusing checkout session {existing.session_id} for order {order_id}")
            return existing

        payload = {
            "apiOperation": "INITIATE_CHECKOUT",
            "interaction": {
                "operation": "PURCHASE",
                "returnUrl": return_url,
                "cancelUrl": cancel_url or return_url,
                "merchant": {"name": os.getenv("ARC_PAY_MERCHANT_NAME", "Jetsetters")},
            },
            "order": {
                "id": order_id,
                "amount": _format_amount(amount),
                "currency": currency,
                "description": (description or f"Travel booking {order_id}")[:127],
            },
        }
        if customer:
            payload["customer"] = {
                k: v for k, v in {
                    "email": customer.get("email"),
                    "firstName": customer.get("first_name"),
                    "lastName": customer.get("last_name"),
                }.items() if v
            }

        data = await self._request("POST", "session", payload)
        session_id = (data.get("session") or {}).get("id")
        if not session_id:
            raise GatewayRejected("ARC Pay did not return a session id", details={"response": data})

        session = CheckoutSession(
            order_id=order_id,
            session_id=session_id,
            checkout_url=f"{self.checkout_url}/{session_id}",
            success_indicator=data.get("successIndicator"),
            amount=amount,
            currency=currency,
        )
        self._sessions[order_id] = session
        logger.info(f"✅ ARC Pay checkout session {session_id} created for order {order_id} ({currency} {amount})")
        return session

    async def retrieve_order_status(self, order_id: str) -> NormalizedOrderStatus:
        """
        Retrieve the authoritative order status.

        Network errors and 5xx responses are retried with exponential backoff.
        An order the gateway has never seen is reported as PENDING: the
        customer has not paid (yet).
        """
        attempts = max(self.read_retries, 1)
        for attempt in range(attempts):
            try:
                data = await self._request("GET", f"order/{order_id}")
                return normalize_order(order_id, data)
            except GatewayRejected as e:
                if _is_unknown_order(e):
                    logger.info(f"ARC Pay has no order {order_id} yet")
                    return NormalizedOrderStatus(order_id=order_id, result="PENDING", exists=False)
                raise
            except GatewayUnavailable:
                if attempt == attempts - 1:
                    raise
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning(f"ARC Pay read failed for order {order_id}, retry {attempt + 1}/{attempts - 1} in {delay}s")
                await asyncio.sleep(delay)

    async def refund(
        self,
        order_id: str,
        gateway_transaction_id: str,
        amount: Decimal,
        currency: str = "USD",
        reason: Optional[str] = None,
        captured_amount: Optional[Decimal] = None,
        transaction_id: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a captured transaction (``REFUND``). Never retried here.

        ``captured_amount`` lets the caller have the amount checked before the
        request leaves; the gateway enforces the same limit regardless.
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Refund amount must be positive", {"amount": str(amount)})
        if captured_amount is not None and amount > Decimal(str(captured_amount)):
            raise ValidationError(
                f"Refund of {amount} exceeds captured amount {captured_amount}",
                {"amount": str(amount), "captured_amount": str(captured_amount)}
            )

        refund_txn = transaction_id or f"refund-{gateway_transaction_id}"
        payload = {
            "apiOperation": "REFUND",
            "transaction": {
                "amount": _format_amount(amount),
                "currency": (currency or "USD").upper(),
            },
        }
        if reason:
            payload["transaction"]["reference"] = reason[:40]

        data = await self._request("PUT", f"order/{order_id}/transaction/{refund_txn}", payload)
        if data.get("result") not in ("SUCCESS", None):
            code = (data.get("response") or {}).get("gatewayCode")
            raise GatewayRejected(f"Refund declined: {code or data.get('result')}", gateway_code=code)

        txn = data.get("transaction") or {}
        logger.info(f"💸 ARC Pay refund {refund_txn} for order {order_id}: {amount}")
        return RefundResult(
            refund_id=str(txn.get("id") or refund_txn),
            status=(data.get("response") or {}).get("gatewayCode") or data.get("result") or "SUCCESS",
            amount=_money(txn.get("amount")) if txn.get("amount") is not None else amount,
        )

    async def void(
        self,
        order_id: str,
        gateway_transaction_id: str,
        reason: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> VoidResult:
        """
        Void an unsettled transaction (``VOID``). Never retried here.

        Settlement timing is the gateway's call, so eligibility is not
        guessed locally: a void after the batch cut-off comes back as
        GatewayRejected.
        """
        void_txn = transaction_id or f"void-{gateway_transaction_id}"
        payload = {
            "apiOperation": "VOID",
            "transaction": {"targetTransactionId": gateway_transaction_id},
        }
        if reason:
            payload["transaction"]["reference"] = reason[:40]

        data = await self._request("PUT", f"order/{order_id}/transaction/{void_txn}", payload)
        if data.get("result") not in ("SUCCESS", None):
            code = (data.get("response") or {}).get("gatewayCode")
            raise GatewayRejected(f"Void declined: {code or data.get('result')}", gateway_code=code)

        logger.info(f"↩️ ARC Pay void {void_txn} for order {order_id}")
        return VoidResult(transaction_id=void_txn, status="VOIDED")


def _is_unknown_order(error: GatewayRejected) -> bool:
    if error.http_status == 404:
        return True
    text = (error.message or "").lower()
    return "no order" in text or "unable to find" in text or "not found" in text


# Global gateway instance
arc_pay_gateway: Optional[ArcPayGateway] = None


def get_gateway() -> ArcPayGateway:
    """Dependency for FastAPI to get the gateway adapter"""
    global arc_pay_gateway
    if arc_pay_gateway is None:
        arc_pay_gateway = ArcPayGateway()
    return arc_pay_gateway

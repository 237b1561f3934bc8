"""
Shared fixtures: in-memory database, an ARC Pay simulator behind httpx.MockTransport,
an in-process lock and a recording notifier.
"""
import json
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Dict, Any, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from jetsetters.database import Base
from jetsetters import models  # noqa: F401
from jetsetters.errors import InconsistentState
from jetsetters.integrations.arc_pay import ArcPayGateway
from jetsetters.services.pricing import PricingService
from jetsetters.services.quotes import QuoteService
from jetsetters.services.inquiries import InquiryService
from jetsetters.services.reconciliation import ReconciliationService

ARC_BASE_URL = "https://arc.test/api/rest/version/100"
MERCHANT_ID = "TESTJETSET"


class ArcPaySimulator:
    """Just enough of the ARC Pay REST API to drive checkout, capture, refund and void."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_reads = 0
        self.fail_session = False
        self.fail_refunds = False
        self.fail_voids = False

    # scenario controls
    def pay(self, order_id: str, amount: Optional[str] = None, brand: str = "MASTERCARD"):
        order = self.orders[order_id]
        order["captured"] = Decimal(amount) if amount else order["amount"]
        order["status"] = "CAPTURED"
        order["brand"] = brand
        order["transactions"].append({
            "id": "1", "type": "PAYMENT", "amount": order["captured"], "result": "SUCCESS",
            "gatewayCode": "APPROVED",
        })

    def decline(self, order_id: str):
        order = self.orders[order_id]
        order["status"] = "FAILED"
        order["transactions"].append({
            "id": "1", "type": "PAYMENT", "amount": order["amount"], "result": "FAILURE",
            "gatewayCode": "DECLINED",
        })

    def settle(self, order_id: str):
        self.orders[order_id]["settled"] = True

    def calls(self, method: str, fragment: str = "") -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in r.url.path]

    # transport
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        prefix = f"/api/rest/version/100/merchant/{MERCHANT_ID}/"
        path = request.url.path
        if not path.startswith(prefix):
            return httpx.Response(404, json={"result": "ERROR", "error": {"cause": "INVALID_REQUEST"}})
        parts = path[len(prefix):].split("/")

        if request.method == "POST" and parts == ["session"]:
            return self._create_session(json.loads(request.content))
        if request.method == "GET" and parts[0] == "order" and len(parts) == 2:
            return self._get_order(parts[1])
        if request.method == "PUT" and parts[0] == "order" and len(parts) == 4:
            return self._transaction(parts[1], parts[3], json.loads(request.content))
        return httpx.Response(400, json={"result": "ERROR", "error": {"cause": "INVALID_REQUEST"}})

    def _create_session(self, body):
        if self.fail_session:
            return httpx.Response(503, text="Service Unavailable")
        order = body["order"]
        self.orders[order["id"]] = {
            "amount": Decimal(order["amount"]),
            "currency": order["currency"],
            "status": None,
            "captured": Decimal("0"),
            "refunded": Decimal("0"),
            "voided": False,
            "settled": False,
            "brand": None,
            "transactions": [],
        }
        return httpx.Response(200, json={
            "result": "SUCCESS",
            "session": {"id": f"SESSION{uuid.uuid4().hex[:10]}"},
            "successIndicator": f"ind{uuid.uuid4().hex[:8]}",
        })

    def _get_order(self, order_id):
        if self.fail_reads:
            self.fail_reads -= 1
            return httpx.Response(502, text="Bad Gateway")
        order = self.orders.get(order_id)
        if not order or order["status"] is None:
            return httpx.Response(400, json={
                "result": "ERROR",
                "error": {"cause": "INVALID_REQUEST", "explanation": f"Unable to find order {order_id}"},
            })
        body = {
            "result": "SUCCESS",
            "id": order_id,
            "status": order["status"],
            "currency": order["currency"],
            "amount": str(order["amount"]),
            "totalAuthorizedAmount": str(order["captured"]),
            "totalCapturedAmount": str(order["captured"]),
            "totalRefundedAmount": str(order["refunded"]),
            "transaction": [
                {
                    "result": t["result"],
                    "response": {"gatewayCode": t["gatewayCode"]},
                    "transaction": {"id": t["id"], "type": t["type"], "amount": str(t["amount"])},
                }
                for t in order["transactions"]
            ],
        }
        if order["brand"]:
            body["sourceOfFunds"] = {"provided": {"card": {"brand": order["brand"]}}}
        return httpx.Response(200, json=body)

    def _transaction(self, order_id, txn_id, body):
        order = self.orders.get(order_id)
        if not order:
            return httpx.Response(400, json={"result": "ERROR", "error": {"cause": "INVALID_REQUEST"}})
        operation = body["apiOperation"]

        if operation == "VOID":
            if self.fail_voids:
                return httpx.Response(503, text="Service Unavailable")
            if order["settled"] or order["voided"]:
                return httpx.Response(400, json={
                    "result": "ERROR",
                    "error": {"cause": "INVALID_REQUEST", "explanation": "Transaction has already been settled"},
                })
            order["voided"] = True
            order["status"] = "CANCELLED"
            order["transactions"].append({
                "id": txn_id, "type": "VOID_PAYMENT", "amount": order["captured"], "result": "SUCCESS",
                "gatewayCode": "APPROVED",
            })
            return httpx.Response(200, json={
                "result": "SUCCESS",
                "response": {"gatewayCode": "APPROVED"},
                "transaction": {"id": txn_id, "type": "VOID_PAYMENT"},
            })

        if operation == "REFUND":
            if self.fail_refunds:
                return httpx.Response(503, text="Service Unavailable")
            amount = Decimal(body["transaction"]["amount"])
            if amount > order["captured"] - order["refunded"]:
                return httpx.Response(400, json={
                    "result": "ERROR",
                    "error": {"cause": "INVALID_REQUEST", "explanation": "Requested refund exceeds captured amount"},
                })
            order["refunded"] += amount
            order["status"] = "REFUNDED" if order["refunded"] == order["captured"] else "PARTIALLY_REFUNDED"
            order["transactions"].append({
                "id": txn_id, "type": "REFUND", "amount": amount, "result": "SUCCESS", "gatewayCode": "APPROVED",
            })
            return httpx.Response(200, json={
                "result": "SUCCESS",
                "response": {"gatewayCode": "APPROVED"},
                "transaction": {"id": txn_id, "type": "REFUND", "amount": str(amount)},
            })

        return httpx.Response(400, json={"result": "ERROR", "error": {"cause": "INVALID_REQUEST"}})


class InProcessLocks:
    """Same contract as RedisService.payment_lock without a Redis server."""

    def __init__(self):
        self.held = set()
        self.acquired: List[str] = []

    @asynccontextmanager
    async def payment_lock(self, payment_id, wait=None):
        key = str(payment_id)
        if key in self.held:
            raise InconsistentState(f"Payment {payment_id} is being processed by another operation")
        self.held.add(key)
        self.acquired.append(key)
        try:
            yield
        finally:
            self.held.discard(key)


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_template(self, template, to, params):
        self.sent.append({"template": template, "to": to, "params": params})
        return {"status": "recorded"}

    async def notify_staff(self, template, params):
        return await self.send_template(template, to="staff@jetsetters.test", params=params)

    def templates(self) -> List[str]:
        return [m["template"] for m in self.sent]


class FakeSupplier:
    def __init__(self, error=None):
        self.error = error
        self.cancelled: List[str] = []

    async def cancel_order(self, order_id):
        if self.error:
            raise self.error
        self.cancelled.append(order_id)
        return {"order_id": order_id, "status": "cancelled"}


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def arc():
    return ArcPaySimulator()


@pytest.fixture
def gateway(arc):
    return ArcPayGateway(
        merchant_id=MERCHANT_ID,
        api_password="secret",
        base_url=ARC_BASE_URL,
        checkout_url="https://arc.test/checkout/pay",
        transport=httpx.MockTransport(arc.handler),
        read_retries=3,
        retry_backoff=0,
    )


@pytest.fixture
def locks():
    return InProcessLocks()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def supplier():
    return FakeSupplier()


@pytest.fixture
def reconciliation(session, gateway, locks, supplier, notifier):
    return ReconciliationService(session, gateway, locks, supplier=supplier, notifier=notifier)


@pytest_asyncio.fixture
async def inquiry(session):
    await PricingService(session).seed_defaults()
    return await InquiryService(session).create_inquiry(
        customer_name="Ada Traveller",
        customer_email="ada@example.com",
        inquiry_type="flight",
    )


@pytest_asyncio.fixture
async def quote(session, inquiry, notifier):
    """Flight quote on a 200.00 base fare: 200 + 25 fixed + 5 % = 235.00."""
    return await QuoteService(session, notifier=notifier).create_quote(
        inquiry.id,
        title="JFK to LHR",
        items=[{"item": "JFK-LHR economy", "quantity": 1, "unit_price": "200.00"}],
    )


@pytest.fixture
def start_checkout(reconciliation):
    async def _start(quote, order_id=None):
        return await reconciliation.start_checkout(
            quote_id=quote.id,
            amount=quote.total_amount,
            currency=quote.currency,
            order_id=order_id,
            booking_type="flight",
            customer_email="ada@example.com",
            customer_name="Ada Traveller",
            return_url="https://api.jetsetters.test/api/payments/callback",
        )
    return _start


@pytest_asyncio.fixture
async def paid_booking(reconciliation, start_checkout, arc, quote):
    """A quote paid through ARC Pay with its booking created."""
    payment, _ = await start_checkout(quote)
    arc.pay(payment.gateway_order_id)
    await reconciliation.reconcile(payment_id=payment.id)
    booking = await reconciliation.get_booking_for_payment(payment.id)
    return booking, payment

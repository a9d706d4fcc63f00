import json

import httpx
import pytest
import pytest_asyncio

from order_service.database import build_database as build_order_database
from order_service.service import OrderService
from payment_service.database import build_database as build_payment_database
from payment_service.dispatcher import SettlementDispatcher
from payment_service.outbox import SettlementRelay
from payment_service.reconciliation import ReconciliationClient
from payment_service.service import PaymentService

ORDER_SERVICE_URL = "http://order-service"
CALLBACK_URL = f"{ORDER_SERVICE_URL}/internal/payment-callback"


class FakeOrderServer:
    """Stands in for the order service behind an httpx.MockTransport."""

    def __init__(self):
        self.totals = {}
        self.callbacks = []
        self.callback_failures = 0
        self.order_status = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path.startswith("/orders/"):
            if self.order_status is not None:
                return httpx.Response(self.order_status, json={"code": self.order_status, "data": "boom"})
            order_id = path.rsplit("/", 1)[-1]
            if order_id not in self.totals:
                return httpx.Response(404, json={"code": 404, "status": "NOT FOUND", "data": "order not found"})
            return httpx.Response(
                200,
                json={"code": 200, "status": "SUCCESS", "data": {"id": order_id, "total_amount": self.totals[order_id]}},
            )
        if request.method == "POST" and path == "/internal/payment-callback":
            if self.callback_failures > 0:
                self.callback_failures -= 1
                return httpx.Response(500, json={"code": 500, "status": "INTERNAL SERVER ERROR", "data": "down"})
            self.callbacks.append(json.loads(request.content))
            return httpx.Response(200, json={"code": 200, "status": "SUCCESS", "data": {}})
        return httpx.Response(404)


@pytest_asyncio.fixture
async def order_db(tmp_path):
    database = build_order_database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def payment_db(tmp_path):
    database = build_payment_database(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def order_service(order_db):
    return OrderService(order_db.session_factory)


@pytest.fixture
def fake_orders():
    return FakeOrderServer()


@pytest_asyncio.fixture
async def partner_client(fake_orders):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_orders.handler)) as client:
        yield client


@pytest.fixture
def relay(payment_db, partner_client):
    dispatcher = SettlementDispatcher(partner_client, CALLBACK_URL)
    # no sleeping between retries in tests
    return SettlementRelay(
        payment_db.session_factory,
        dispatcher,
        retry_attempts=2,
        max_delivery_attempts=5,
        backoff_multiplier=0,
        backoff_max=0,
    )


@pytest.fixture
def payment_service(payment_db, partner_client, relay):
    reconciliation = ReconciliationClient(partner_client, ORDER_SERVICE_URL)
    return PaymentService(payment_db.session_factory, reconciliation, relay)

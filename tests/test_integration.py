"""
End-to-end settlement across both services, in process.

The payment service's HTTP client is routed into the real order service app
through httpx.ASGITransport, so reconciliation and the settlement callback
exercise the actual order routes and database.
"""
import httpx
import pytest
import pytest_asyncio

from order_service.main import app as order_app
from order_service.main import get_order_service
from payment_service.dispatcher import SettlementDispatcher
from payment_service.main import app as payment_app
from payment_service.main import get_payment_service
from payment_service.outbox import SettlementRelay
from payment_service.reconciliation import ReconciliationClient
from payment_service.service import PaymentService

ORDER_SERVICE_URL = "http://order-service"


class FlakyOrderTransport(httpx.AsyncBaseTransport):
    """Forwards to the order app, optionally failing the next N callbacks."""

    def __init__(self, app):
        self._inner = httpx.ASGITransport(app=app)
        self.fail_callbacks = 0

    async def handle_async_request(self, request):
        if request.url.path == "/internal/payment-callback" and self.fail_callbacks > 0:
            self.fail_callbacks -= 1
            raise httpx.ConnectError("order service unreachable", request=request)
        return await self._inner.handle_async_request(request)


@pytest_asyncio.fixture
async def system(order_service, payment_db):
    order_app.dependency_overrides[get_order_service] = lambda: order_service
    order_transport = FlakyOrderTransport(order_app)

    async with httpx.AsyncClient(transport=order_transport, base_url=ORDER_SERVICE_URL) as partner:
        relay = SettlementRelay(
            payment_db.session_factory,
            SettlementDispatcher(partner, f"{ORDER_SERVICE_URL}/internal/payment-callback"),
            retry_attempts=2,
            backoff_multiplier=0,
            backoff_max=0,
        )
        payments = PaymentService(
            payment_db.session_factory,
            ReconciliationClient(partner, ORDER_SERVICE_URL),
            relay,
        )
        payment_app.dependency_overrides[get_payment_service] = lambda: payments

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=payment_app), base_url="http://payment-service"
        ) as payment_api:
            yield {
                "orders": partner,
                "payments": payment_api,
                "relay": relay,
                "order_transport": order_transport,
            }

    order_app.dependency_overrides.clear()
    payment_app.dependency_overrides.clear()


async def _create_widget_order(orders):
    response = await orders.post("/orders", json={"itemName": "Widget", "quantity": 2, "price": 500})
    assert response.status_code == 200
    return response.json()["data"]


@pytest.mark.asyncio
async def test_scenario_a_create_order(system):
    order = await _create_widget_order(system["orders"])

    assert order["total_amount"] == 1000
    assert order["status"] == "pending"


@pytest.mark.asyncio
async def test_scenario_b_pay_and_settle(system):
    orders, payments = system["orders"], system["payments"]
    order = await _create_widget_order(orders)

    created = await payments.post("/payments", json={"order_id": order["id"], "amount": 1000, "provider": "stripe"})
    payment = created.json()["data"]
    assert payment["status"] == "pending"

    finalized = await payments.put(f"/payments/success/{payment['id']}")
    assert finalized.json()["data"]["status"] == "success"
    assert finalized.json()["data"]["paid_at"] is not None

    settled = (await orders.get(f"/orders/{order['id']}")).json()["data"]
    assert settled["status"] == "paid"
    assert settled["payment_id"] == payment["id"]


@pytest.mark.asyncio
async def test_scenario_c_amount_mismatch(system):
    order = await _create_widget_order(system["orders"])

    response = await system["payments"].post(
        "/payments", json={"order_id": order["id"], "amount": 999, "provider": "stripe"}
    )

    assert response.status_code == 400
    assert response.json()["data"] == "payment amount 999 does not match order total amount 1000"


@pytest.mark.asyncio
async def test_scenario_d_finalize_failed_payment_again(system):
    orders, payments = system["orders"], system["payments"]
    order = await _create_widget_order(orders)
    payment = (
        await payments.post("/payments", json={"order_id": order["id"], "amount": 1000, "provider": "stripe"})
    ).json()["data"]

    await payments.put(f"/payments/failed/{payment['id']}")
    response = await payments.put(f"/payments/success/{payment['id']}")

    assert response.status_code == 400
    assert response.json()["data"] == "payment already finalized"
    assert (await orders.get(f"/orders/{order['id']}")).json()["data"]["status"] == "pending"


@pytest.mark.asyncio
async def test_scenario_e_update_after_settlement(system):
    orders, payments = system["orders"], system["payments"]
    order = await _create_widget_order(orders)
    payment = (
        await payments.post("/payments", json={"order_id": order["id"], "amount": 1000, "provider": "stripe"})
    ).json()["data"]
    await payments.put(f"/payments/success/{payment['id']}")

    response = await orders.put(f"/orders/{order['id']}", json={"item_name": "Widget", "quantity": 3, "price": 500})

    assert response.status_code == 400
    assert response.json()["data"] == "paid order cannot be updated"


@pytest.mark.asyncio
async def test_payment_for_unknown_order(system):
    response = await system["payments"].post(
        "/payments",
        json={"order_id": "5a0c7e36-2b8f-4d1e-8c3a-9f6b1d2e4a70", "amount": 1000, "provider": "stripe"},
    )
    assert response.status_code == 400
    assert response.json()["data"] == "order not found"


@pytest.mark.asyncio
async def test_missed_callback_is_settled_by_relay(system):
    """
    The order stays pending while the callback cannot be delivered and is
    settled once the relay gets through.
    """
    orders, payments = system["orders"], system["payments"]
    order = await _create_widget_order(orders)
    payment = (
        await payments.post("/payments", json={"order_id": order["id"], "amount": 1000, "provider": "stripe"})
    ).json()["data"]

    system["order_transport"].fail_callbacks = 1
    finalized = await payments.put(f"/payments/success/{payment['id']}")
    assert finalized.status_code == 200
    assert (await orders.get(f"/orders/{order['id']}")).json()["data"]["status"] == "pending"

    assert await system["relay"].process_batch() == 1

    settled = (await orders.get(f"/orders/{order['id']}")).json()["data"]
    assert settled["status"] == "paid"
    assert settled["payment_id"] == payment["id"]
    # nothing left to deliver, and re-running is harmless
    assert await system["relay"].process_batch() == 0

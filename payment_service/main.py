import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request

from common.errors import unknown_id_as_bad_request
from common.logging_config import bind_request_context, setup_logging
from common.responses import WebResponse, register_exception_handlers, success
from payment_service.config import settings
from payment_service.database import build_database
from payment_service.dispatcher import SettlementDispatcher
from payment_service.outbox import SettlementRelay, stop_relay
from payment_service.reconciliation import ReconciliationClient
from payment_service.schemas import PaymentCreate, PaymentRead
from payment_service.service import PaymentService

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("payment-service", settings.LOG_LEVEL, settings.LOG_JSON)
    database = build_database()
    await database.create_all()
    http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    dispatcher = SettlementDispatcher(
        http_client, settings.ORDER_CALLBACK_URL, settings.HTTP_TIMEOUT_SECONDS
    )
    relay = SettlementRelay(
        database.session_factory,
        dispatcher,
        batch_size=settings.RELAY_BATCH_SIZE,
        poll_interval=settings.RELAY_POLL_INTERVAL_SECONDS,
        retry_attempts=settings.RELAY_RETRY_ATTEMPTS,
        max_delivery_attempts=settings.RELAY_MAX_DELIVERY_ATTEMPTS,
    )
    reconciliation = ReconciliationClient(
        http_client, settings.ORDER_SERVICE_URL, settings.HTTP_TIMEOUT_SECONDS
    )
    app.state.payment_service = PaymentService(database.session_factory, reconciliation, relay)
    app.state.auto_capture = settings.AUTO_CAPTURE_PAYMENTS

    stop_event = asyncio.Event()
    relay_task = asyncio.create_task(relay.run(stop_event))
    logger.info("payment_service_started", auto_capture=settings.AUTO_CAPTURE_PAYMENTS)
    try:
        yield
    finally:
        await stop_relay(relay_task, stop_event)
        await http_client.aclose()
        await database.dispose()
        logger.info("payment_service_stopped")


app = FastAPI(title="Payment Service", lifespan=lifespan)
app.middleware("http")(bind_request_context)
register_exception_handlers(app)


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def get_auto_capture(request: Request) -> bool:
    return getattr(request.app.state, "auto_capture", False)


@app.post("/payments", response_model=WebResponse)
async def create_payment(
    payload: PaymentCreate,
    service: PaymentService = Depends(get_payment_service),
    auto_capture: bool = Depends(get_auto_capture),
):
    with unknown_id_as_bad_request():
        payment = await service.create(payload.order_id, payload.amount, payload.provider)
        if auto_capture:
            payment = await service.capture(payment)
    return success(PaymentRead.model_validate(payment))


@app.get("/payments/{payment_id}", response_model=WebResponse)
async def get_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    payment = await service.get(payment_id)
    return success(PaymentRead.model_validate(payment))


@app.put("/payments/success/{payment_id}", response_model=WebResponse)
async def mark_payment_success(
    payment_id: str, service: PaymentService = Depends(get_payment_service)
):
    with unknown_id_as_bad_request():
        payment = await service.mark_success(payment_id)
    return success(PaymentRead.model_validate(payment))


@app.put("/payments/failed/{payment_id}", response_model=WebResponse)
async def mark_payment_failed(
    payment_id: str, service: PaymentService = Depends(get_payment_service)
):
    with unknown_id_as_bad_request():
        payment = await service.mark_failed(payment_id)
    return success(PaymentRead.model_validate(payment))


if __name__ == "__main__":
    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)

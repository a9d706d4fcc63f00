from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request

from common.errors import unknown_id_as_bad_request
from common.logging_config import bind_request_context, setup_logging
from common.responses import WebResponse, register_exception_handlers, success
from order_service.config import settings
from order_service.database import build_database
from order_service.schemas import (
    OrderCreate,
    OrderDeleted,
    OrderList,
    OrderRead,
    OrderUpdate,
    PaymentCallback,
)
from order_service.service import OrderService

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("order-service", settings.LOG_LEVEL, settings.LOG_JSON)
    database = build_database()
    await database.create_all()
    app.state.order_service = OrderService(database.session_factory)
    logger.info("order_service_started")
    try:
        yield
    finally:
        await database.dispose()
        logger.info("order_service_stopped")


app = FastAPI(title="Order Service", lifespan=lifespan)
app.middleware("http")(bind_request_context)
register_exception_handlers(app)


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


@app.post("/orders", response_model=WebResponse)
async def create_order(payload: OrderCreate, service: OrderService = Depends(get_order_service)):
    order = await service.create(payload.item_name, payload.quantity, payload.price)
    return success(OrderRead.model_validate(order))


@app.get("/orders", response_model=OrderList)
async def list_orders(service: OrderService = Depends(get_order_service)):
    orders = await service.list()
    return OrderList(data=[OrderRead.model_validate(order) for order in orders])


@app.get("/orders/{order_id}", response_model=WebResponse)
async def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    order = await service.get(order_id)
    return success(OrderRead.model_validate(order))


@app.put("/orders/{order_id}", response_model=WebResponse)
async def update_order(
    order_id: str, payload: OrderUpdate, service: OrderService = Depends(get_order_service)
):
    with unknown_id_as_bad_request():
        order = await service.update(order_id, payload.item_name, payload.quantity, payload.price)
    return success(OrderRead.model_validate(order))


@app.delete("/orders/{order_id}", response_model=OrderDeleted)
async def delete_order(order_id: str, service: OrderService = Depends(get_order_service)):
    with unknown_id_as_bad_request():
        deleted_id = await service.delete(order_id)
    return OrderDeleted(message="order deleted", id=deleted_id)


# Called by the payment service once a payment reaches a terminal state
@app.post("/internal/payment-callback", response_model=WebResponse)
async def payment_callback(
    payload: PaymentCallback, service: OrderService = Depends(get_order_service)
):
    with unknown_id_as_bad_request():
        order = await service.apply_settlement_outcome(
            str(payload.order_id), str(payload.payment_id), payload.payment_status
        )
    return success(OrderRead.model_validate(order))


if __name__ == "__main__":
    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)

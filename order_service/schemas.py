from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from order_service.models import OrderStatus, SettlementOutcome


class OrderCreate(BaseModel):
    item_name: str = Field(
        ..., validation_alias=AliasChoices("item_name", "itemName"), examples=["Widget"]
    )
    quantity: int = Field(..., examples=[2])
    price: int = Field(..., examples=[500])


# Bounds are checked by the service so that a paid order reports a
# conflict before any field problem.
class OrderUpdate(OrderCreate):
    pass


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_name: str
    quantity: int
    price: int
    total_amount: int
    status: OrderStatus
    payment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderList(BaseModel):
    data: List[OrderRead]


class OrderDeleted(BaseModel):
    message: str
    id: str


class PaymentCallback(BaseModel):
    order_id: UUID = Field(..., validation_alias=AliasChoices("order_id", "orderId"))
    payment_id: UUID = Field(..., validation_alias=AliasChoices("payment_id", "paymentId"))
    payment_status: SettlementOutcome = Field(
        ..., validation_alias=AliasChoices("payment_status", "paymentStatus")
    )

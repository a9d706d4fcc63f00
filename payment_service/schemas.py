from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from payment_service.models import PaymentStatus


class PaymentCreate(BaseModel):
    # Loose types here; PaymentService reports shape problems itself
    order_id: str = Field(
        ..., validation_alias=AliasChoices("order_id", "orderId"), examples=["<order uuid>"]
    )
    amount: int = Field(..., examples=[1000])
    provider: str = Field(..., examples=["stripe"])


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: int
    provider: str
    status: PaymentStatus
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SettlementNotice(BaseModel):
    """Body POSTed to the order service's payment callback."""

    order_id: str
    payment_id: str
    payment_status: str


class OrderTotal(BaseModel):
    total_amount: int = Field(..., validation_alias=AliasChoices("total_amount", "totalAmount"))


class OrderEnvelope(BaseModel):
    data: OrderTotal

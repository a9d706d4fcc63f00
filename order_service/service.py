"""
Order lifecycle: create/update/delete orders and apply settlement outcomes
reported by the payment service.

Every operation runs in its own transaction. Writes that must not race
with a settlement use conditional UPDATEs guarded on the current status
instead of trusting the value read a moment earlier.
"""
from datetime import datetime
from typing import List

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.errors import ConflictError, NotFoundError, ValidationError, parse_uuid
from order_service.models import Order, OrderStatus, SettlementOutcome

logger = structlog.get_logger(__name__)

# Column limits: quantity is a 32-bit Integer, price and total_amount BigInteger
MAX_QUANTITY = 2**31 - 1
MAX_AMOUNT = 2**63 - 1


def _validate_fields(item_name: str, quantity: int, price: int) -> None:
    if not item_name or not item_name.strip():
        raise ValidationError("item name required")
    if quantity <= 0:
        raise ValidationError("quantity must be greater than 0")
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"quantity must not exceed {MAX_QUANTITY}")
    if price <= 0:
        raise ValidationError("price must be greater than 0")
    if price * quantity > MAX_AMOUNT:
        raise ValidationError(f"total amount must not exceed {MAX_AMOUNT}")


class OrderService:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _get_live(self, session: AsyncSession, order_id: str) -> Order:
        order_id = parse_uuid(order_id)
        result = await session.execute(
            select(Order).where(Order.id == order_id, Order.deleted_at.is_(None))
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("order not found")
        return order

    async def create(self, item_name: str, quantity: int, price: int) -> Order:
        _validate_fields(item_name, quantity, price)
        order = Order(
            item_name=item_name,
            quantity=quantity,
            price=price,
            total_amount=price * quantity,
            status=OrderStatus.PENDING,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(order)
        logger.info("order_created", order_id=order.id, total_amount=order.total_amount)
        return order

    async def update(self, order_id: str, item_name: str, quantity: int, price: int) -> Order:
        async with self._session_factory() as session:
            async with session.begin():
                order = await self._get_live(session, order_id)
                if order.status == OrderStatus.PAID:
                    raise ConflictError("paid order cannot be updated")
                _validate_fields(item_name, quantity, price)

                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status != OrderStatus.PAID,
                        Order.deleted_at.is_(None),
                    )
                    .values(
                        item_name=item_name,
                        quantity=quantity,
                        price=price,
                        total_amount=price * quantity,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # settled between our read and write
                    raise ConflictError("paid order cannot be updated")
                await session.refresh(order)
        logger.info("order_updated", order_id=order.id, total_amount=order.total_amount)
        return order

    async def delete(self, order_id: str) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                order = await self._get_live(session, order_id)
                if order.status == OrderStatus.PAID:
                    raise ConflictError("paid order cannot be deleted")

                now = datetime.utcnow()
                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status != OrderStatus.PAID,
                        Order.deleted_at.is_(None),
                    )
                    .values(deleted_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError("paid order cannot be deleted")
        logger.info("order_deleted", order_id=order.id)
        return order.id

    async def get(self, order_id: str) -> Order:
        async with self._session_factory() as session:
            return await self._get_live(session, order_id)

    async def list(self) -> List[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.deleted_at.is_(None)).order_by(Order.created_at)
            )
            return list(result.scalars().all())

    async def apply_settlement_outcome(
        self, order_id: str, payment_id: str, outcome: SettlementOutcome
    ) -> Order:
        """
        Apply a payment outcome delivered by the settlement callback.

        Safe to call repeatedly with the same arguments: a success for the
        payment that already settled the order returns it unchanged.
        """
        payment_id = parse_uuid(payment_id, "invalid payment id")
        async with self._session_factory() as session:
            async with session.begin():
                order = await self._get_live(session, order_id)
                log = logger.bind(order_id=order.id, payment_id=payment_id, outcome=outcome.value)

                if outcome != SettlementOutcome.SUCCESS:
                    # Failed payments leave the order pending so it can be paid again.
                    log.info("settlement_outcome_ignored", status=order.status.value)
                    return order

                if order.status == OrderStatus.PAID:
                    if order.payment_id == payment_id:
                        log.info("settlement_outcome_duplicate")
                        return order
                    raise ConflictError("order already paid by another payment")

                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status != OrderStatus.PAID,
                        Order.deleted_at.is_(None),
                    )
                    .values(
                        status=OrderStatus.PAID,
                        payment_id=payment_id,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(order)
                if result.rowcount != 1:
                    # A concurrent delivery got there first
                    if order.status == OrderStatus.PAID and order.payment_id == payment_id:
                        log.info("settlement_outcome_duplicate")
                        return order
                    raise ConflictError("order already paid by another payment")
                log.info("order_paid")
        return order

"""
Payment lifecycle.

A payment is created pending against exactly one order, after its amount
has been reconciled with the order's total, and is finalized exactly once
to success or failed. Finalizing queues a settlement notification for the
order service in the same transaction.
"""
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.errors import (
    AlreadyFinalizedError,
    AmountMismatchError,
    NotFoundError,
    ValidationError,
    parse_uuid,
)
from payment_service.models import Payment, PaymentStatus, SettlementOutboxEntry
from payment_service.outbox import SettlementRelay
from payment_service.reconciliation import ReconciliationClient

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.FAILED)


async def _find_live_by_order(session: AsyncSession, order_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment).where(Payment.order_id == order_id, Payment.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def _find_live(session: AsyncSession, payment_id: str) -> Payment:
    result = await session.execute(
        select(Payment).where(Payment.id == payment_id, Payment.deleted_at.is_(None))
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("payment not found")
    return payment


class PaymentService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        reconciliation: ReconciliationClient,
        relay: SettlementRelay,
    ):
        self._session_factory = session_factory
        self._reconciliation = reconciliation
        self._relay = relay

    async def create(self, order_id, amount: int, provider: str) -> Payment:
        """
        Create a pending payment for an order, or return the one that exists.

        Repeating the call for the same order is safe: the existing live
        payment is returned unchanged and nothing new is inserted.
        """
        if order_id is None or order_id == "":
            raise ValidationError("order id required")
        order_id = parse_uuid(order_id, "invalid order id")
        if amount is None or amount <= 0:
            raise ValidationError("amount must be greater than 0")
        if not provider or not provider.strip():
            raise ValidationError("provider required")

        total_amount = await self._reconciliation.fetch_order_total(order_id)
        if amount != total_amount:
            raise AmountMismatchError(amount, total_amount)

        async with self._session_factory() as session:
            existing = await _find_live_by_order(session, order_id)
            if existing is not None:
                logger.info("payment_already_exists", order_id=order_id, payment_id=existing.id)
                return existing

            payment = Payment(
                order_id=order_id,
                amount=amount,
                provider=provider,
                status=PaymentStatus.PENDING,
            )
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent create for the same order won the unique index
                await session.rollback()
                existing = await _find_live_by_order(session, order_id)
                if existing is None:
                    raise
                logger.info("payment_create_raced", order_id=order_id, payment_id=existing.id)
                return existing

        logger.info("payment_created", order_id=order_id, payment_id=payment.id, amount=amount)
        return payment

    async def finalize(self, payment_id: str, outcome: PaymentStatus) -> Payment:
        if outcome not in TERMINAL_STATUSES:
            raise ValidationError("outcome must be success or failed")
        payment_id = parse_uuid(payment_id, "invalid payment id")

        async with self._session_factory() as session:
            async with session.begin():
                payment = await _find_live(session, payment_id)
                if payment.status != PaymentStatus.PENDING:
                    raise AlreadyFinalizedError(payment.id, payment.status.value)

                now = datetime.utcnow()
                result = await session.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
                    .values(
                        status=outcome,
                        paid_at=now if outcome == PaymentStatus.SUCCESS else None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.refresh(payment)
                    raise AlreadyFinalizedError(payment.id, payment.status.value)

                entry = SettlementOutboxEntry(
                    payment_id=payment.id,
                    order_id=payment.order_id,
                    outcome=outcome,
                )
                session.add(entry)
            await session.refresh(payment)

        logger.info(
            "payment_finalized",
            payment_id=payment.id,
            order_id=payment.order_id,
            status=payment.status.value,
        )
        # Best effort; the relay keeps retrying whatever this misses
        try:
            await self._relay.dispatch(entry)
        except Exception:
            logger.exception(
                "settlement_dispatch_error", payment_id=payment.id, entry_id=entry.id
            )
        return payment

    async def mark_success(self, payment_id: str) -> Payment:
        return await self.finalize(payment_id, PaymentStatus.SUCCESS)

    async def mark_failed(self, payment_id: str) -> Payment:
        return await self.finalize(payment_id, PaymentStatus.FAILED)

    async def capture(self, payment: Payment) -> Payment:
        """Finalize a freshly created payment as successful when it is still pending."""
        if payment.status != PaymentStatus.PENDING:
            return payment
        try:
            return await self.mark_success(payment.id)
        except AlreadyFinalizedError:
            return await self.get(payment.id)

    async def get(self, payment_id: str) -> Payment:
        payment_id = parse_uuid(payment_id, "invalid payment id")
        async with self._session_factory() as session:
            return await _find_live(session, payment_id)

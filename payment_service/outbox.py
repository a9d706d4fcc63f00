"""
Settlement outbox relay.

PaymentService.finalize writes an outbox entry in the same transaction as
the payment's terminal status, then asks the relay for one immediate
delivery. Entries that could not be delivered stay in the table and are
picked up by the background loop, which retries them with exponential
backoff until the order service acknowledges them.
"""
import asyncio
from contextlib import suppress
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.errors import UpstreamError
from payment_service.dispatcher import SettlementDispatcher
from payment_service.models import SettlementOutboxEntry

logger = structlog.get_logger(__name__)


class SettlementRelay:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: SettlementDispatcher,
        batch_size: int = 50,
        poll_interval: float = 5.0,
        retry_attempts: int = 3,
        max_delivery_attempts: int = 50,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 10.0,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.retry_attempts = retry_attempts
        self.max_delivery_attempts = max_delivery_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max

    async def _record(self, entry_id: str, attempts_made: int, error: Optional[str]) -> None:
        values = {"attempts": SettlementOutboxEntry.attempts + attempts_made}
        if error is None:
            values["delivered_at"] = datetime.utcnow()
            values["last_error"] = None
        else:
            values["last_error"] = error
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(SettlementOutboxEntry)
                    .where(SettlementOutboxEntry.id == entry_id)
                    .values(**values)
                )

    async def _notify(self, entry: SettlementOutboxEntry) -> None:
        await self._dispatcher.notify(entry.order_id, entry.payment_id, entry.outcome.value)

    async def dispatch(self, entry: SettlementOutboxEntry) -> bool:
        """Single delivery attempt. Failures are recorded and logged, never raised."""
        try:
            await self._notify(entry)
        except UpstreamError as e:
            logger.warning(
                "settlement_delivery_failed",
                entry_id=entry.id,
                order_id=entry.order_id,
                payment_id=entry.payment_id,
                error=e.message,
            )
            await self._record(entry.id, 1, e.message)
            return False
        await self._record(entry.id, 1, None)
        return True

    async def redeliver(self, entry: SettlementOutboxEntry) -> bool:
        """Delivery with tenacity retries and exponential backoff."""
        attempts_made = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            retry=retry_if_exception_type(UpstreamError),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts_made += 1
                    await self._notify(entry)
        except RetryError as e:
            error = e.last_attempt.exception()
            message = getattr(error, "message", str(error))
            await self._record(entry.id, attempts_made, message)
            total = entry.attempts + attempts_made
            log = logger.bind(entry_id=entry.id, payment_id=entry.payment_id, attempts=total)
            if total >= self.max_delivery_attempts:
                log.error("settlement_delivery_abandoned", error=message)
            else:
                log.warning("settlement_redelivery_failed", error=message)
            return False

        await self._record(entry.id, attempts_made, None)
        logger.info("settlement_redelivered", entry_id=entry.id, payment_id=entry.payment_id)
        return True

    async def pending_entries(self):
        async with self._session_factory() as session:
            result = await session.execute(
                select(SettlementOutboxEntry)
                .where(
                    SettlementOutboxEntry.delivered_at.is_(None),
                    SettlementOutboxEntry.attempts < self.max_delivery_attempts,
                )
                .order_by(SettlementOutboxEntry.created_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def process_batch(self) -> int:
        entries = await self.pending_entries()
        if not entries:
            return 0
        delivered = 0
        for entry in entries:
            if await self.redeliver(entry):
                delivered += 1
        logger.info("settlement_batch_processed", total=len(entries), delivered=delivered)
        return delivered

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("settlement_relay_started", poll_interval=self.poll_interval)
        while not stop_event.is_set():
            try:
                await self.process_batch()
            except Exception as e:
                logger.error("settlement_relay_error", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("settlement_relay_stopped")


async def stop_relay(task: asyncio.Task, stop_event: asyncio.Event, timeout: float = 5.0) -> None:
    """Ask the relay loop to stop; cancel it if it has not finished within timeout."""
    stop_event.set()
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.TimeoutError:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

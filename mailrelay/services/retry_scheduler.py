import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailrelay.core.config import settings
from mailrelay.models.outbox import OutboxRecord
from mailrelay.repositories.outbox import OutboxRepository
from mailrelay.schemas.notification import Destination
from mailrelay.services.publisher import (
    BrokerClient,
    EntitySource,
    NotificationPublisher,
    PayloadBuildError,
    employee_source,
)

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Periodically re-drives PENDING outbox records whose confirm window has passed.

    A record that already used ``max_attempts`` goes to FAILED and is never
    picked up again. Otherwise the record is claimed with a conditional update
    (attempt count bump plus a new deadline) and the payload is re-fetched and
    sent again under the same message id. Sweeps never overlap within one
    scheduler; across schedulers the per-record claim keeps retries single.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broker_client: BrokerClient,
        entity_source_factory: Callable[[AsyncSession], EntitySource] = employee_source,
        interval: int = settings.retry_interval_seconds,
        batch_size: int = settings.retry_batch_size,
        max_attempts: int = settings.max_attempts,
        ack_timeout_seconds: int = settings.ack_timeout_seconds
    ) -> None:
        self.session_maker = session_maker
        self.broker_client = broker_client
        self.entity_source_factory = entity_source_factory
        self.interval = interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.ack_timeout_seconds = ack_timeout_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if self._running:
            logger.warning("RetryScheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("RetryScheduler started")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("RetryScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in retry scheduler loop: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def sweep(self, now: Optional[datetime] = None) -> None:
        if self._lock.locked():
            logger.debug("Sweep already in progress, skipping")
            return

        async with self._lock:
            await self._sweep(now or datetime.now(timezone.utc))

    async def _sweep(self, now: datetime) -> None:
        async with self.session_maker() as session:
            repository = OutboxRepository(session)
            publisher = NotificationPublisher(
                repository,
                self.entity_source_factory(session),
                self.broker_client,
                ack_timeout_seconds=self.ack_timeout_seconds
            )

            records = await repository.get_due(now, limit=self.batch_size)
            if not records:
                return

            logger.debug(f"Sweeping {len(records)} due outbox records")

            for record in records:
                try:
                    await self._retry_record(record, now, repository, publisher)
                except Exception as e:
                    logger.error(f"Error retrying outbox record {record.message_id}: {e}", exc_info=True)
                    await session.rollback()

    async def _retry_record(
        self,
        record: OutboxRecord,
        now: datetime,
        repository: OutboxRepository,
        publisher: NotificationPublisher
    ) -> None:
        message_id = record.message_id
        attempts = record.attempt_count

        if attempts >= self.max_attempts:
            if await repository.mark_failed(message_id, expected_attempts=attempts):
                logger.warning(
                    f"Outbox record {message_id} exhausted {self.max_attempts} attempts, needs manual republish"
                )
            return

        next_retry_at = now + timedelta(seconds=self.ack_timeout_seconds)
        if not await repository.claim_retry(message_id, attempts, now, next_retry_at):
            logger.debug(f"Outbox record {message_id} changed since selection, skipping")
            return

        try:
            payload = await publisher.entity_source.fetch(record.entity_ref)
        except PayloadBuildError as e:
            logger.error(f"Outbox record {message_id} can never be sent: {e}")
            await repository.mark_failed(message_id)
            return

        if payload is None:
            logger.warning(f"Entity {record.entity_ref} for outbox record {message_id} no longer exists")
            await repository.mark_failed(message_id)
            return

        publisher.dispatch(
            message_id,
            payload,
            Destination(exchange=record.exchange, routing_key=record.routing_key)
        )

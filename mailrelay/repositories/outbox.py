import logging
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.models.outbox import OutboxRecord, OutboxStatus

logger = logging.getLogger(__name__)


class OutboxRepository:
    """Outbox persistence.

    Every mutation is a conditional UPDATE keyed by ``message_id`` and the
    expected prior status, so concurrent confirm callbacks and scheduler
    sweeps can never overwrite each other or resurrect a terminal record.
    Each method returns whether this caller won the transition.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, record: OutboxRecord) -> OutboxRecord:
        self.session.add(record)
        await self.session.flush()
        await self.session.refresh(record)
        return record

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def get_by_message_id(self, message_id: str) -> Optional[OutboxRecord]:
        result = await self.session.execute(
            select(OutboxRecord)
            .where(OutboxRecord.message_id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_due(self, now: datetime, limit: int = 100) -> List[OutboxRecord]:
        result = await self.session.execute(
            select(OutboxRecord)
            .where(OutboxRecord.status == OutboxStatus.PENDING.value)
            .where(OutboxRecord.next_retry_at <= now)
            .order_by(OutboxRecord.next_retry_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def mark_confirmed(self, message_id: str) -> bool:
        won = await self._transition(
            message_id,
            values={"status": OutboxStatus.CONFIRMED.value},
        )
        if won:
            logger.info(f"Outbox record {message_id}: PENDING -> CONFIRMED")
        return won

    async def mark_failed(self, message_id: str, expected_attempts: Optional[int] = None) -> bool:
        won = await self._transition(
            message_id,
            values={"status": OutboxStatus.FAILED.value},
            expected_attempts=expected_attempts,
        )
        if won:
            logger.warning(f"Outbox record {message_id}: PENDING -> FAILED")
        return won

    async def claim_retry(
        self,
        message_id: str,
        expected_attempts: int,
        now: datetime,
        next_retry_at: datetime
    ) -> bool:
        won = await self._transition(
            message_id,
            values={"attempt_count": expected_attempts + 1, "next_retry_at": next_retry_at},
            expected_attempts=expected_attempts,
            due_by=now,
        )
        if won:
            logger.info(f"Outbox record {message_id}: retry claimed, attempt {expected_attempts + 1}")
        return won

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(OutboxRecord.status, func.count())
            .group_by(OutboxRecord.status)
        )
        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def _transition(
        self,
        message_id: str,
        values: dict,
        expected_attempts: Optional[int] = None,
        due_by: Optional[datetime] = None
    ) -> bool:
        stmt = (
            update(OutboxRecord)
            .where(OutboxRecord.message_id == message_id)
            .where(OutboxRecord.status == OutboxStatus.PENDING.value)
        )
        if expected_attempts is not None:
            stmt = stmt.where(OutboxRecord.attempt_count == expected_attempts)
        if due_by is not None:
            stmt = stmt.where(OutboxRecord.next_retry_at <= due_by)

        stmt = stmt.values(updated_at=datetime.now(timezone.utc), **values)
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        await self.session.commit()
        return result.rowcount == 1

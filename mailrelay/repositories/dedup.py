import logging
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.models.dedup import DedupEntry

logger = logging.getLogger(__name__)


class DedupRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, message_id: str) -> bool:
        result = await self.session.execute(
            select(DedupEntry.message_id).where(DedupEntry.message_id == message_id)
        )
        return result.scalar_one_or_none() is not None

    async def record(self, message_id: str) -> bool:
        """Insert and commit. Returns False if another consumer recorded it first."""
        self.session.add(DedupEntry(message_id=message_id))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.warning(f"Dedup entry for {message_id} already exists, lost insert race")
            return False
        return True

    async def claim(self, message_id: str) -> bool:
        """Insert without committing, holding the row until ``commit_claim`` or ``release_claim``.

        A concurrent claim for the same id fails the primary key and returns False.
        """
        self.session.add(DedupEntry(message_id=message_id))
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    async def commit_claim(self) -> None:
        await self.session.commit()

    async def release_claim(self) -> None:
        await self.session.rollback()

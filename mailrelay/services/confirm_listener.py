import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailrelay.repositories.outbox import OutboxRepository

logger = logging.getLogger(__name__)


class ConfirmListener:
    """Handles broker publisher confirms, one call per physical send."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def on_confirm(self, message_id: str, accepted: bool, cause: Optional[str] = None) -> None:
        if not accepted:
            logger.warning(f"Broker did not accept message {message_id}, left PENDING: {cause}")
            return

        async with self.session_maker() as session:
            repository = OutboxRepository(session)
            if not await repository.mark_confirmed(message_id):
                logger.debug(f"Confirm for message {message_id} ignored, record is not PENDING")

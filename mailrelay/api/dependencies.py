from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.core.broker import broker
from mailrelay.core.database import get_db
from mailrelay.repositories.outbox import OutboxRepository
from mailrelay.services.publisher import NotificationPublisher, employee_source


def get_publisher(db: AsyncSession = Depends(get_db)) -> NotificationPublisher:
    return NotificationPublisher(OutboxRepository(db), employee_source(db), broker)

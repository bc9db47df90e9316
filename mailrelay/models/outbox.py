from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import String, DateTime, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from mailrelay.core.database import Base

MESSAGE_ID_LENGTH = 255


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class OutboxRecord(Base):
    """One row per notification attempt chain, not per physical broker send.

    ``message_id`` is generated once per business event and reused by every
    retry. Status only moves forward: PENDING -> CONFIRMED or PENDING -> FAILED.
    Rows are never deleted.
    """

    __tablename__ = "outbox_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(MESSAGE_ID_LENGTH), unique=True, nullable=False)
    entity_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    exchange: Mapped[str] = mapped_column(String(255), nullable=False)
    routing_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_outbox_status_next_retry', 'status', 'next_retry_at'),
    )

from datetime import datetime, timezone
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from mailrelay.core.database import Base
from mailrelay.models.outbox import MESSAGE_ID_LENGTH


class DedupEntry(Base):
    __tablename__ = "dedup_entries"

    message_id: Mapped[str] = mapped_column(String(MESSAGE_ID_LENGTH), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

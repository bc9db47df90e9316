from mailrelay.core.database import Base
from mailrelay.models.dedup import DedupEntry
from mailrelay.models.employee import Employee
from mailrelay.models.outbox import OutboxRecord, OutboxStatus

__all__ = ["Base", "DedupEntry", "Employee", "OutboxRecord", "OutboxStatus"]

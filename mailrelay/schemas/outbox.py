from datetime import datetime
from pydantic import BaseModel


class OutboxRecordResponse(BaseModel):
    message_id: str
    entity_ref: str
    exchange: str
    routing_key: str
    status: str
    attempt_count: int
    next_retry_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OutboxStats(BaseModel):
    pending: int = 0
    confirmed: int = 0
    failed: int = 0


class RepublishResponse(BaseModel):
    message_id: str
    republished_from: str

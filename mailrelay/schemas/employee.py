from datetime import datetime
from pydantic import BaseModel, Field

from mailrelay.schemas.notification import RecipientEmail


class EmployeeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: RecipientEmail
    position_name: str | None = Field(default=None, max_length=100)
    job_level_name: str | None = Field(default=None, max_length=100)
    department_name: str | None = Field(default=None, max_length=100)


class EmployeeResponse(BaseModel):
    id: int
    name: str
    email: str
    position_name: str | None = None
    job_level_name: str | None = None
    department_name: str | None = None
    created_at: datetime
    notification_message_id: str

    model_config = {"from_attributes": True}

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

# Shared by the API input and the published payload so an accepted address
# can always be turned into a notification.
RecipientEmail = Annotated[str, Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")]


class Destination(BaseModel):
    model_config = ConfigDict(frozen=True)

    exchange: str
    routing_key: str


class WelcomeNotification(BaseModel):
    employee_id: int
    recipient: RecipientEmail
    name: str = Field(min_length=1)
    position_name: str | None = None
    job_level_name: str | None = None
    department_name: str | None = None

    def template_vars(self) -> dict[str, str | None]:
        return {
            "name": self.name,
            "position_name": self.position_name,
            "job_level_name": self.job_level_name,
            "department_name": self.department_name,
        }

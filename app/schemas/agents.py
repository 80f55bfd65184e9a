from enum import StrEnum

from pydantic import BaseModel, Field


class AgentType(StrEnum):
    ai = "ai"
    staff = "staff"


class Agent(BaseModel):
    id: str
    name: str
    type: AgentType
    role: str = ""
    active: bool = True
    vapi_assistant_id: str | None = None
    fallback_staff_id: str | None = None
    backup_staff_ids: list[str] = []
    max_retries: int = 5
    retry_delay_minutes: int = 60
    timezone: str = "America/New_York"
    allowed_calling_hours: list[int] = Field(default_factory=list)
    holiday_country: str | None = None

    @property
    def can_call(self) -> bool:
        return self.type == AgentType.ai and bool(self.vapi_assistant_id)

    @property
    def is_active_staff(self) -> bool:
        return self.type == AgentType.staff and self.active

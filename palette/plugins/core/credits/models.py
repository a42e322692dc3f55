from datetime import datetime, timezone

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditBalance(BaseModel):
    user_id: str
    current_points: int


class UsageLogEntry(BaseModel):
    user_id: str
    request_id: str
    action_type: str
    model_name: str | None = None
    points_consumed: int
    # One credit point is priced at one US cent.
    cost_usd: float
    success: bool = True
    created_at: datetime = Field(default_factory=utcnow)

"""API response schemas."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class StatsData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscriber_count: int = Field(alias="subscriberCount")
    uptime: float


class StatsOut(BaseModel):
    status: str = "ok"
    data: StatsData
    timestamp: str


class HealthOut(BaseModel):
    status: str = "ok"
    timestamp: str
    uptime: float


class TestTickOut(BaseModel):
    """Acknowledgment for a manual tick (development only)."""
    status: str = "ok"
    message: str
    timestamp: str
    delivered: int = 0


class ErrorOut(BaseModel):
    status: str
    message: str
    stack: Optional[str] = None

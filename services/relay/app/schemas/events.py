from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator

from ..utils.clock import ensure_utc


class EventOut(BaseModel):
    id: int
    event_type: str
    subject: str
    signature: str
    slot: int
    timestamp: datetime
    data: dict[str, Any]
    processed_at: datetime

    class Config:
        from_attributes = True

    @field_validator("timestamp", "processed_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class EventPage(BaseModel):
    page: int
    limit: int
    total: int
    items: list[EventOut]


def serialize_event(event) -> dict[str, Any]:
    """JSON-ready dict of a stored event, as the API and the live stream emit it."""
    return EventOut.model_validate(event).model_dump(mode="json")

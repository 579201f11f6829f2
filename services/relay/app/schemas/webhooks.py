from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from ..utils.clock import ensure_utc


class WebhookCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=500, pattern=r"^https?://")
    event_types: list[str] = Field(..., alias="eventTypes", min_length=1)
    secret: str = Field(..., min_length=1, max_length=128)

    class Config:
        populate_by_name = True

    @field_validator("event_types")
    @classmethod
    def _non_blank(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("event types must be non-empty strings")
        # Keep order, drop repeats
        return list(dict.fromkeys(cleaned))


class WebhookOut(BaseModel):
    """Registered webhook; the shared secret is never returned."""

    id: int
    url: str
    event_types: list[str]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DeliveryOut(BaseModel):
    id: int
    webhook_id: int | None = None
    event_id: int
    status: str
    attempts: int
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    response_code: int | None = None
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("last_attempt_at", "next_retry_at", "created_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

from datetime import datetime

from pydantic import BaseModel, field_validator

from ..utils.clock import ensure_utc


class OperationOut(BaseModel):
    id: int
    kind: str
    target: str
    amount: str
    memo: str | None = None
    signature: str | None = None
    status: str
    failure_reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class OperationPage(BaseModel):
    page: int
    limit: int
    total: int
    items: list[OperationOut]

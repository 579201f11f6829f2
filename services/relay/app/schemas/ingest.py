from typing import Any

from pydantic import BaseModel, Field


class LogBatchIn(BaseModel):
    signature: str = Field(..., min_length=1, max_length=128)
    logs: list[str] = Field(default_factory=list)
    slot: int = Field(..., ge=0)
    err: Any = None

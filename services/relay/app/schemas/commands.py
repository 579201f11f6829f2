from typing import Union

from pydantic import BaseModel, StrictInt, StrictStr


class CommandRequest(BaseModel):
    """Raw command body; field rules are enforced by the gateway's validator."""

    kind: StrictStr
    target: StrictStr | None = None
    # JSON integer or decimal digit string; floats are rejected
    amount: Union[StrictInt, StrictStr, None] = None
    memo: StrictStr | None = None


class CommandResult(BaseModel):
    status: str
    operation_id: int
    kind: str
    target: str
    amount: str
    memo: str | None = None
    signature: str
    timestamp: str

from typing import Any

from fastapi import APIRouter, Depends, Header

from ....context import RelayContext
from ....schemas.commands import CommandRequest, CommandResult
from ...deps import get_context, require_api_key

router = APIRouter(tags=["commands"])


@router.post(
    "/commands",
    response_model=CommandResult,
    status_code=201,
    dependencies=[Depends(require_api_key)],
)
async def submit_command(
    payload: CommandRequest,
    idempotency_key: str | None = Header(None, alias="X-Idempotency-Key"),
    context: RelayContext = Depends(get_context),
) -> dict[str, Any]:
    return await context.gateway.execute(
        idempotency_key,
        kind=payload.kind,
        target=payload.target,
        amount=payload.amount,
        memo=payload.memo,
    )


@router.get("/supply")
async def get_supply(context: RelayContext = Depends(get_context)) -> dict[str, Any]:
    return await context.executor.supply()

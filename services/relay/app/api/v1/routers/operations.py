from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ....context import RelayContext
from ....schemas.operations import OperationOut, OperationPage
from ....utils.clock import ensure_utc
from ...deps import get_context

router = APIRouter(tags=["operations"])


@router.get("/operations", response_model=OperationPage)
def list_operations(
    kind: str | None = Query(None, alias="type"),
    created_from: datetime | None = Query(None, alias="from"),
    created_to: datetime | None = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    context: RelayContext = Depends(get_context),
) -> OperationPage:
    result = context.repository.list_operations(
        kind=kind,
        created_from=ensure_utc(created_from),
        created_to=ensure_utc(created_to),
        page=page,
        limit=limit,
    )
    return OperationPage(
        page=page,
        limit=limit,
        total=result.total,
        items=[OperationOut.model_validate(op) for op in result.items],
    )

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ....context import RelayContext
from ....core.errors import TransientInfraError
from ....schemas.ingest import LogBatchIn
from ....services.log_source import LogBatch
from ...deps import get_context, require_ingest_token

router = APIRouter(prefix="/ingest", tags=["ingest"])


@router.post("/logs", status_code=202, dependencies=[Depends(require_ingest_token)])
async def push_logs(payload: LogBatchIn, context: RelayContext = Depends(get_context)) -> JSONResponse:
    """Hand a log batch to the running ingestion pipeline; processing is asynchronous."""
    if not context.ingestion.running:
        raise TransientInfraError("ingestion is not running", code="ingestion_not_running")
    if not context.ingestion.accepting:
        raise TransientInfraError("ingestion queue is full", code="ingestion_backlogged")
    context.log_source.publish(
        LogBatch(signature=payload.signature, logs=payload.logs, slot=payload.slot, err=payload.err)
    )
    return JSONResponse(
        {"accepted": True, "signature": payload.signature, "backlog": context.ingestion.backlog},
        status_code=202,
    )

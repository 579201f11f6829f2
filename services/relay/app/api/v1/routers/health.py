from fastapi import APIRouter, Depends
from starlette.responses import JSONResponse

from ....context import RelayContext
from ....db import check_database_health
from ...deps import get_context

router = APIRouter(tags=["ops"])


@router.get("/health")
async def health(context: RelayContext = Depends(get_context)) -> JSONResponse:
    db = check_database_health(context.engine)
    idempotency_ok = await context.idempotency.ping()
    ingestion = context.ingestion

    # Store or idempotency outages fail the probe; a lost subscription only degrades it
    healthy = db["ok"] and idempotency_ok
    if not healthy:
        status = "unhealthy"
    elif ingestion.subscription_lost:
        status = "degraded"
    else:
        status = "ok"

    watermark = context.repository.get_watermark() if db["ok"] else None
    return JSONResponse(
        {
            "status": status,
            "service": context.settings.app_name,
            "version": context.settings.app_version,
            "mode": context.settings.service_mode,
            "db": db,
            "idempotency": {
                "ok": idempotency_ok,
                "backend": type(context.idempotency).__name__,
            },
            "indexer": {
                "running": ingestion.running,
                "subscription_lost": ingestion.subscription_lost,
                "last_error": ingestion.last_error,
                "last_slot": watermark,
                "backlog": ingestion.backlog,
                "stats": ingestion.stats.as_dict(),
            },
            "dispatcher": {
                "running": context.scheduler.running,
                "cycles": context.scheduler.cycles,
            },
            "stream": {"clients": context.event_stream.client_count},
        },
        status_code=200 if healthy else 503,
    )

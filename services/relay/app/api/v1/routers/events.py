from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ....context import RelayContext
from ....core.errors import TransientInfraError
from ....schemas.events import EventOut, EventPage
from ....utils.clock import ensure_utc
from ...deps import get_context

router = APIRouter(tags=["events"])


@router.get("/events", response_model=EventPage)
def list_events(
    event_type: str | None = Query(None, alias="type"),
    subject: str | None = None,
    time_from: datetime | None = Query(None, alias="from"),
    time_to: datetime | None = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    context: RelayContext = Depends(get_context),
) -> EventPage:
    result = context.repository.list_events(
        event_type=event_type,
        subject=subject,
        time_from=ensure_utc(time_from),
        time_to=ensure_utc(time_to),
        page=page,
        limit=limit,
    )
    return EventPage(
        page=page,
        limit=limit,
        total=result.total,
        items=[EventOut.model_validate(event) for event in result.items],
    )


@router.get("/events/stream")
async def stream_events(
    request: Request, context: RelayContext = Depends(get_context)
) -> StreamingResponse:
    if context.event_stream.closed:
        raise TransientInfraError("live stream is not available", code="stream_not_ready")
    client = context.event_stream.subscribe()
    return StreamingResponse(
        context.event_stream.frames(client, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )

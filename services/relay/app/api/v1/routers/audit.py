from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ....context import RelayContext
from ....core.errors import ValidationError
from ....services.audit import entries_to_csv, export_audit
from ....utils.clock import ensure_utc
from ...deps import get_context

router = APIRouter(tags=["audit"])


@router.get("/audit/export")
def export_audit_trail(
    fmt: str = Query("json", alias="format"),
    time_from: datetime | None = Query(None, alias="from"),
    time_to: datetime | None = Query(None, alias="to"),
    action_type: str | None = None,
    subject: str | None = None,
    context: RelayContext = Depends(get_context),
):
    fmt = fmt.lower()
    if fmt not in ("json", "csv"):
        raise ValidationError("format must be json or csv")
    entries = export_audit(
        context.repository,
        time_from=ensure_utc(time_from),
        time_to=ensure_utc(time_to),
        action_type=action_type,
        subject=subject,
    )
    if fmt == "csv":
        return Response(
            content=entries_to_csv(entries),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=relay-audit.csv"},
        )
    return {"items": [asdict(entry) for entry in entries]}

from __future__ import annotations

import csv
import io
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Iterable

from ..models.events import Event
from ..utils.clock import isoformat
from .repository import RelayRepository

AUDIT_EXPORT_LIMIT = 500
CSV_COLUMNS = ("timestamp", "action", "actor", "target", "amount", "details", "signature")

EVENT_ACTIONS = {
    "StablecoinInitialized": "INIT",
    "TokensMinted": "MINT",
    "TokensBurned": "BURN",
    "AccountFrozen": "FREEZE",
    "AccountThawed": "THAW",
    "SystemPaused": "PAUSE",
    "SystemUnpaused": "UNPAUSE",
    "RoleUpdated": "ROLE_UPDATED",
    "AuthorityTransferred": "AUTHORITY_TRANSFER",
    "BlacklistAdded": "BLACKLIST_ADD",
    "BlacklistRemoved": "BLACKLIST_REMOVE",
    "TokensSeized": "SEIZE",
}
ACTION_EVENTS = {action: event_type for event_type, action in EVENT_ACTIONS.items()}

ACTOR_KEYS = (
    "minter",
    "burner",
    "frozen_by",
    "thawed_by",
    "paused_by",
    "unpaused_by",
    "updated_by",
    "blacklisted_by",
    "removed_by",
    "seized_by",
    "old_authority",
)
TARGET_KEYS = ("recipient", "target_account", "wallet", "from_account", "new_authority")
DETAIL_KEYS = ("reason", "new_roles")


@dataclass
class AuditEntry:
    timestamp: str
    action: str
    actor: str
    target: str
    amount: str
    details: str
    signature: str


def action_for(event_type: str) -> str:
    return EVENT_ACTIONS.get(event_type, event_type)


def event_type_for(action: str) -> str:
    action = action.strip()
    return ACTION_EVENTS.get(action.upper(), action)


def _first(data: dict[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        value = data.get(key)
        if value is not None:
            if isinstance(value, (list, dict)):
                return json.dumps(value, separators=(",", ":"))
            return value if isinstance(value, str) else str(value)
    return ""


def build_audit_entry(event: Event) -> AuditEntry:
    data = event.data or {}
    return AuditEntry(
        timestamp=isoformat(event.timestamp) or "",
        action=action_for(event.event_type),
        actor=_first(data, ACTOR_KEYS),
        target=_first(data, TARGET_KEYS),
        amount=_first(data, ("amount",)),
        details=_first(data, DETAIL_KEYS),
        signature=event.signature,
    )


def export_audit(
    repository: RelayRepository,
    *,
    time_from: datetime | None = None,
    time_to: datetime | None = None,
    action_type: str | None = None,
    subject: str | None = None,
) -> list[AuditEntry]:
    page = repository.list_events(
        event_type=event_type_for(action_type) if action_type else None,
        subject=subject,
        time_from=time_from,
        time_to=time_to,
        page=1,
        limit=AUDIT_EXPORT_LIMIT,
    )
    return [build_audit_entry(event) for event in page.items]


def entries_to_csv(entries: Iterable[AuditEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for entry in entries:
        writer.writerow(asdict(entry))
    return buffer.getvalue()

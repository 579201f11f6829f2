"""
Turning raw program log lines into typed, JSON-safe event records.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Protocol

# Largest integer a JSON consumer can hold in a double without losing precision
MAX_SAFE_INTEGER = 2**53 - 1

PROGRAM_DATA_PREFIX = "Program data: "


class EventParseError(ValueError):
    pass


@dataclass
class ParsedEvent:
    name: str
    data: dict[str, Any] = field(default_factory=dict)


ParseErrorHandler = Callable[[str, EventParseError], None]


class EventParser(Protocol):
    def parse_logs(
        self, lines: Iterable[str], on_error: ParseErrorHandler | None = None
    ) -> list[ParsedEvent]: ...


class JsonLogEventParser:
    """Reads ``Program data: {"name": ..., "data": {...}}`` lines.

    Any other log line is ignored. A program-data line that is not a JSON
    object with a string ``name`` is skipped and handed to ``on_error``;
    the other lines of the batch still parse.
    """

    def __init__(self, prefix: str = PROGRAM_DATA_PREFIX) -> None:
        self._prefix = prefix

    def parse_logs(
        self, lines: Iterable[str], on_error: ParseErrorHandler | None = None
    ) -> list[ParsedEvent]:
        events: list[ParsedEvent] = []
        for line in lines:
            if not isinstance(line, str) or not line.startswith(self._prefix):
                continue
            try:
                events.append(self.parse_line(line))
            except EventParseError as exc:
                if on_error is not None:
                    on_error(line, exc)
        return events

    def parse_line(self, line: str) -> ParsedEvent:
        raw = line[len(self._prefix):].strip()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise EventParseError(f"invalid event payload: {exc.msg}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
            raise EventParseError("event payload must be an object with a string 'name'")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise EventParseError(f"event '{payload['name']}' data must be an object")
        return ParsedEvent(name=payload["name"], data=data)


def normalize_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, Decimal):
        return str(value)
    to_base58 = getattr(value, "to_base58", None)
    if callable(to_base58):
        return str(to_base58())
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): normalize_value(item) for key, item in value.items()}
    return str(value)


def normalize_payload(data: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key): normalize_value(item) for key, item in data.items()}


def event_subject(data: Mapping[str, Any]) -> str:
    subject = data.get("config")
    return subject if isinstance(subject, str) else "unknown"


def event_timestamp(data: Mapping[str, Any], now: datetime) -> datetime:
    """Payload ``timestamp`` as whole seconds since epoch, else ``now``."""
    raw = data.get("timestamp")
    if isinstance(raw, bool):
        return now
    if isinstance(raw, (int, float, str)):
        try:
            seconds = int(float(raw)) if not isinstance(raw, int) else raw
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (ValueError, OverflowError, OSError):
            return now
    return now

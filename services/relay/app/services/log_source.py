from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from ..core.logging import get_logger


@dataclass
class LogBatch:
    """Log lines emitted by one transaction touching the program."""

    signature: str
    logs: list[str] = field(default_factory=list)
    slot: int = 0
    err: Any = None


LogCallback = Callable[[LogBatch], None]
ErrorCallback = Callable[[Exception], None]


class LogSource(Protocol):
    def subscribe(
        self,
        program_id: str,
        commitment: str,
        callback: LogCallback,
        on_error: ErrorCallback | None = None,
    ) -> int: ...

    def unsubscribe(self, handle: int) -> None: ...


@dataclass
class _Subscription:
    program_id: str
    commitment: str
    callback: LogCallback
    on_error: ErrorCallback | None


class MemoryLogSource:
    """In-process log source fed by ``publish``.

    Used in mock mode, by the push endpoint and by tests. Callbacks run
    synchronously inside ``publish`` and are expected not to block.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[int, _Subscription] = {}
        self._handles = itertools.count(1)
        self._logger = get_logger(__name__)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        program_id: str,
        commitment: str,
        callback: LogCallback,
        on_error: ErrorCallback | None = None,
    ) -> int:
        handle = next(self._handles)
        self._subscriptions[handle] = _Subscription(program_id, commitment, callback, on_error)
        self._logger.info(
            "log_source.subscribed", handle=handle, program_id=program_id, commitment=commitment
        )
        return handle

    def unsubscribe(self, handle: int) -> None:
        if self._subscriptions.pop(handle, None) is not None:
            self._logger.info("log_source.unsubscribed", handle=handle)

    def publish(self, batch: LogBatch) -> int:
        """Deliver a batch to every subscriber; returns how many received it."""
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.callback(batch)
        return len(subscriptions)

    def fail(self, exc: Exception) -> None:
        """Report a lost connection to every subscriber."""
        for subscription in list(self._subscriptions.values()):
            if subscription.on_error is not None:
                subscription.on_error(exc)

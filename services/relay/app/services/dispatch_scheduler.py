from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from ..core.logging import get_logger
from .webhook_dispatcher import DispatchSummary, WebhookDispatcher


class DispatchScheduler:
    """Runs ``dispatch_pending`` on an interval; ``trigger()`` wakes it early."""

    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        interval_sec: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._interval = interval_sec
        self._sleep = sleep
        self._wake = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()
        self._logger = get_logger(__name__)
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="relay-dispatch-scheduler")
        self._logger.info("dispatch_scheduler.started", interval_sec=self._interval)

    def trigger(self) -> None:
        self._wake.set()

    async def run_once(self) -> DispatchSummary | None:
        # Cycles never overlap; stop() waits on this lock
        async with self._cycle_lock:
            try:
                summary = await self._dispatcher.dispatch_pending()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("dispatch_scheduler.error", error=str(exc))
                return None
            self.cycles += 1
            if summary.selected:
                self._logger.info(
                    "dispatch_scheduler.cycle",
                    selected=summary.selected,
                    delivered=summary.delivered,
                    failed=summary.failed,
                    skipped=summary.skipped,
                )
            return summary

    async def _wait(self) -> None:
        if self._sleep is not None:
            await self._sleep(self._interval)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        while not self._stopping:
            self._wake.clear()
            await self.run_once()
            if self._stopping:
                break
            await self._wait()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping = True
        self._wake.set()
        task, self._task = self._task, None
        # Let the in-flight cycle finish, then cancel the idle wait
        async with self._cycle_lock:
            if not task.done():
                task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._logger.info("dispatch_scheduler.stopped")


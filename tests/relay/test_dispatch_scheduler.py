"""Tests for the DispatchScheduler loop."""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from services.relay.app.services.dispatch_scheduler import DispatchScheduler
from services.relay.app.services.webhook_dispatcher import DispatchSummary


def _dispatcher(**kwargs):
    dispatcher = Mock()
    dispatcher.dispatch_pending = AsyncMock(return_value=DispatchSummary(**kwargs))
    return dispatcher


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_run_once_dispatches(self):
        dispatcher = _dispatcher(selected=2, delivered=2)
        scheduler = DispatchScheduler(dispatcher, interval_sec=60)

        summary = await scheduler.run_once()

        assert summary.delivered == 2
        assert scheduler.cycles == 1
        dispatcher.dispatch_pending.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_once_swallows_cycle_errors(self):
        dispatcher = Mock()
        dispatcher.dispatch_pending = AsyncMock(side_effect=RuntimeError("db down"))
        scheduler = DispatchScheduler(dispatcher, interval_sec=60)

        assert await scheduler.run_once() is None
        assert scheduler.cycles == 0


class TestLoop:
    @pytest.mark.asyncio
    async def test_runs_on_interval_with_injected_sleep(self):
        dispatcher = _dispatcher()
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            await asyncio.sleep(0)

        scheduler = DispatchScheduler(dispatcher, interval_sec=5, sleep=fake_sleep)
        scheduler.start()
        for _ in range(20):
            await asyncio.sleep(0)
        await scheduler.stop()

        assert dispatcher.dispatch_pending.await_count >= 2
        assert set(sleeps) == {5}

    @pytest.mark.asyncio
    async def test_trigger_wakes_early(self):
        dispatcher = _dispatcher()
        scheduler = DispatchScheduler(dispatcher, interval_sec=3600)
        scheduler.start()
        await asyncio.sleep(0.05)
        assert dispatcher.dispatch_pending.await_count == 1

        scheduler.trigger()
        await asyncio.sleep(0.05)

        assert dispatcher.dispatch_pending.await_count == 2
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self):
        finished = asyncio.Event()
        started = asyncio.Event()

        async def slow_dispatch():
            started.set()
            await asyncio.sleep(0.05)
            finished.set()
            return DispatchSummary()

        dispatcher = Mock()
        dispatcher.dispatch_pending = slow_dispatch
        scheduler = DispatchScheduler(dispatcher, interval_sec=3600)
        scheduler.start()
        await started.wait()

        await scheduler.stop()

        assert finished.is_set()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self):
        scheduler = DispatchScheduler(_dispatcher(), interval_sec=1)

        await scheduler.stop()

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        dispatcher = _dispatcher()
        scheduler = DispatchScheduler(dispatcher, interval_sec=3600)
        scheduler.start()
        task = scheduler._task
        scheduler.start()

        assert scheduler._task is task
        await scheduler.stop()

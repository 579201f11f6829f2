"""Tests for the SSE fan-out broker."""
import asyncio

import pytest

from services.relay.app.services.event_stream import (
    KEEPALIVE_FRAME,
    READY_FRAME,
    EventStream,
    format_frame,
)


class TestFormat:
    def test_event_frame(self):
        assert format_frame("TokensMinted", {"id": 1}) == 'event: TokensMinted\ndata: {"id":1}\n\n'

    def test_ready_frame(self):
        assert READY_FRAME == 'event: ready\ndata: {"status":"connected"}\n\n'


class TestBroadcast:
    def test_broadcast_without_clients(self):
        assert EventStream().broadcast("X", {}) == 0

    def test_broadcast_reaches_every_client(self):
        stream = EventStream()
        a = stream.subscribe()
        b = stream.subscribe()

        assert stream.broadcast("X", {"n": 1}) == 2
        assert a.queue.qsize() == b.queue.qsize() == 1

    def test_slow_client_drops_oldest(self):
        stream = EventStream(client_queue_size=2)
        client = stream.subscribe()

        for n in range(3):
            stream.broadcast("X", {"n": n})

        assert client.dropped == 1
        frames = [client.queue.get_nowait() for _ in range(2)]
        assert frames == [format_frame("X", {"n": 1}), format_frame("X", {"n": 2})]


class TestFrames:
    @pytest.mark.asyncio
    async def test_ready_then_events(self):
        stream = EventStream(keepalive_seconds=5)
        client = stream.subscribe()
        frames = stream.frames(client)

        assert await frames.__anext__() == READY_FRAME
        stream.broadcast("TokensMinted", {"id": 7})
        assert await frames.__anext__() == format_frame("TokensMinted", {"id": 7})
        await frames.aclose()

        assert stream.client_count == 0

    @pytest.mark.asyncio
    async def test_keepalive_when_idle(self):
        stream = EventStream(keepalive_seconds=0.01)
        client = stream.subscribe()
        frames = stream.frames(client)

        await frames.__anext__()
        assert await frames.__anext__() == KEEPALIVE_FRAME
        await frames.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_ends_stream(self):
        stream = EventStream(keepalive_seconds=5)
        client = stream.subscribe()

        async def disconnected():
            return True

        received = [frame async for frame in stream.frames(client, disconnected)]

        assert received == [READY_FRAME]
        assert stream.client_count == 0

    @pytest.mark.asyncio
    async def test_close_ends_open_streams(self):
        stream = EventStream(keepalive_seconds=5)
        client = stream.subscribe()

        async def consume():
            return [frame async for frame in stream.frames(client)]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await stream.close()
        received = await asyncio.wait_for(task, timeout=1)

        assert received == [READY_FRAME]
        assert stream.closed is True
        assert stream.broadcast("X", {}) == 0

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable

from ..core.logging import get_logger

READY_FRAME = 'event: ready\ndata: {"status":"connected"}\n\n'
KEEPALIVE_FRAME = ": keepalive\n\n"

_CLOSED = object()


def format_frame(event_name: str, payload: Any) -> str:
    return f"event: {event_name}\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"


class StreamClient:
    def __init__(self, queue_size: int) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0

    def offer(self, frame: Any) -> None:
        # A slow reader loses its oldest frames rather than stalling ingestion
        while True:
            try:
                self.queue.put_nowait(frame)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass


class EventStream:
    """Fan-out of stored events to live SSE listeners."""

    def __init__(self, keepalive_seconds: float = 15.0, client_queue_size: int = 100) -> None:
        self._keepalive = keepalive_seconds
        self._queue_size = client_queue_size
        self._clients: set[StreamClient] = set()
        self._closed = False
        self._logger = get_logger(__name__)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> StreamClient:
        client = StreamClient(self._queue_size)
        self._clients.add(client)
        self._logger.info("stream.client_connected", clients=len(self._clients))
        return client

    def unsubscribe(self, client: StreamClient) -> None:
        if client in self._clients:
            self._clients.discard(client)
            self._logger.info(
                "stream.client_disconnected", clients=len(self._clients), dropped=client.dropped
            )

    def broadcast(self, event_name: str, payload: Any) -> int:
        if self._closed or not self._clients:
            return 0
        frame = format_frame(event_name, payload)
        for client in list(self._clients):
            client.offer(frame)
        return len(self._clients)

    async def frames(
        self,
        client: StreamClient,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield the ready frame, then events and keepalives until the client leaves."""
        try:
            yield READY_FRAME
            while True:
                if is_disconnected is not None and await is_disconnected():
                    return
                try:
                    frame = await asyncio.wait_for(client.queue.get(), timeout=self._keepalive)
                except asyncio.TimeoutError:
                    yield KEEPALIVE_FRAME
                    continue
                if frame is _CLOSED:
                    return
                yield frame
        finally:
            self.unsubscribe(client)

    async def close(self) -> None:
        self._closed = True
        for client in list(self._clients):
            client.offer(_CLOSED)

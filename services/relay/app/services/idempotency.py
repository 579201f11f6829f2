"""
Idempotency primitive guarding mutating commands.

Two interchangeable stores share one contract: for a given key at most one
caller observes ``acquired=True`` until the key is completed, cleared, or
expires. The memory store serves single-process deployments and tests; the
Redis store is used whenever ``REDIS_URL`` is configured.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from redis import asyncio as aioredis

from ..core.errors import TransientInfraError
from ..core.logging import get_logger

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"

DEFAULT_TTL_SECONDS = 24 * 60 * 60
KEY_PREFIX = "idempotency:"


@dataclass
class IdempotencyRecord:
    status: str
    response: Any = None
    updated_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(
            {"status": self.status, "response": self.response, "updated_at": self.updated_at}
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "IdempotencyRecord":
        data = json.loads(raw)
        return cls(
            status=data.get("status", STATUS_PROCESSING),
            response=data.get("response"),
            updated_at=float(data.get("updated_at") or 0.0),
        )


@dataclass
class LockResult:
    acquired: bool
    existing: IdempotencyRecord | None = None


class IdempotencyStore(Protocol):
    async def lock(self, key: str) -> LockResult: ...

    async def complete(self, key: str, response: Any) -> None: ...

    async def clear(self, key: str) -> None: ...

    async def get(self, key: str) -> IdempotencyRecord | None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryIdempotencyStore:
    """In-process store. Expired records are treated as absent."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._records: dict[str, tuple[IdempotencyRecord, float]] = {}

    def _live(self, key: str) -> IdempotencyRecord | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            del self._records[key]
            return None
        return record

    async def lock(self, key: str) -> LockResult:
        async with self._lock:
            existing = self._live(key)
            if existing is not None:
                return LockResult(acquired=False, existing=existing)
            record = IdempotencyRecord(status=STATUS_PROCESSING)
            self._records[key] = (record, self._clock() + self._ttl)
            return LockResult(acquired=True)

    async def complete(self, key: str, response: Any) -> None:
        async with self._lock:
            record = IdempotencyRecord(status=STATUS_COMPLETED, response=response)
            self._records[key] = (record, self._clock() + self._ttl)

    async def clear(self, key: str) -> None:
        async with self._lock:
            self._records.pop(key, None)

    async def get(self, key: str) -> IdempotencyRecord | None:
        async with self._lock:
            return self._live(key)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._records.clear()


class RedisIdempotencyStore:
    """Redis-backed store: ``SET NX PX`` to lock, ``SET PX`` to complete, ``DEL`` to clear."""

    def __init__(self, client, ttl_seconds: float = DEFAULT_TTL_SECONDS, prefix: str = KEY_PREFIX) -> None:
        self._client = client
        self._ttl_ms = int(ttl_seconds * 1000)
        self._prefix = prefix
        self._logger = get_logger(__name__)

    @classmethod
    def from_url(cls, url: str, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> "RedisIdempotencyStore":
        return cls(aioredis.from_url(url), ttl_seconds=ttl_seconds)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def lock(self, key: str) -> LockResult:
        record = IdempotencyRecord(status=STATUS_PROCESSING)
        try:
            acquired = await self._client.set(
                self._key(key), record.to_json(), nx=True, px=self._ttl_ms
            )
            if acquired:
                return LockResult(acquired=True)
            raw = await self._client.get(self._key(key))
        except Exception as exc:  # noqa: BLE001
            self._logger.error("idempotency.redis_error", op="lock", error=str(exc))
            raise TransientInfraError("idempotency store unavailable") from exc
        if raw is None:
            # Expired between SET and GET; the next lock attempt will win it
            return LockResult(acquired=False, existing=None)
        return LockResult(acquired=False, existing=IdempotencyRecord.from_json(raw))

    async def complete(self, key: str, response: Any) -> None:
        record = IdempotencyRecord(status=STATUS_COMPLETED, response=response)
        try:
            await self._client.set(self._key(key), record.to_json(), px=self._ttl_ms)
        except Exception as exc:  # noqa: BLE001
            self._logger.error("idempotency.redis_error", op="complete", error=str(exc))
            raise TransientInfraError("idempotency store unavailable") from exc

    async def clear(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except Exception as exc:  # noqa: BLE001
            self._logger.error("idempotency.redis_error", op="clear", error=str(exc))
            raise TransientInfraError("idempotency store unavailable") from exc

    async def get(self, key: str) -> IdempotencyRecord | None:
        try:
            raw = await self._client.get(self._key(key))
        except Exception as exc:  # noqa: BLE001
            self._logger.error("idempotency.redis_error", op="get", error=str(exc))
            raise TransientInfraError("idempotency store unavailable") from exc
        return IdempotencyRecord.from_json(raw) if raw is not None else None

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception:  # noqa: BLE001
            return False

    async def close(self) -> None:
        await self._client.aclose()


def build_idempotency_store(redis_url: str | None, ttl_seconds: float) -> IdempotencyStore:
    if redis_url:
        get_logger(__name__).info("idempotency.redis_enabled")
        return RedisIdempotencyStore.from_url(redis_url, ttl_seconds=ttl_seconds)
    return MemoryIdempotencyStore(ttl_seconds=ttl_seconds)

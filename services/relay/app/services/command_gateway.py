"""
Idempotent command gateway.

Every mutating command passes through ``CommandGateway.execute``: the input is
validated before any lock is taken, the idempotency key is locked, and the
holder alone records the operation and calls the executor. Concurrent
duplicates wait for the holder and receive the holder's response in a 409.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from ..core.errors import CommandRejected, ConflictError, ValidationError
from ..core.logging import get_logger
from ..core.metrics import inc
from ..utils.clock import isoformat, utcnow
from .command_validation import ValidatedCommand, validate_command
from .executors import CommandExecutor
from .idempotency import STATUS_COMPLETED, IdempotencyStore
from .repository import RelayRepository

IDEMPOTENCY_HEADER = "X-Idempotency-Key"


class CommandGateway:
    def __init__(
        self,
        repository: RelayRepository,
        idempotency: IdempotencyStore,
        executor: CommandExecutor,
        *,
        wait_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._idempotency = idempotency
        self._executor = executor
        self._wait_seconds = wait_seconds
        self._poll_interval = poll_interval_seconds
        self._monotonic = monotonic
        self._sleep = sleep
        self._logger = get_logger(__name__)

    async def execute(
        self,
        idempotency_key: str | None,
        *,
        kind: Any,
        target: Any = None,
        amount: Any = None,
        memo: Any = None,
    ) -> dict[str, Any]:
        key = (idempotency_key or "").strip()
        if not key:
            raise ValidationError(
                f"{IDEMPOTENCY_HEADER} header is required", code="missing_idempotency_key"
            )
        command = validate_command(kind, target=target, amount=amount, memo=memo)
        await self._acquire(key)
        return await self._run(key, command)

    async def _acquire(self, key: str) -> None:
        """Take the key, or raise ConflictError once the wait is exhausted."""
        deadline = self._monotonic() + self._wait_seconds
        while True:
            result = await self._idempotency.lock(key)
            if result.acquired:
                return
            record = result.existing
            while record is not None:
                if record.status == STATUS_COMPLETED:
                    raise ConflictError(
                        "a request with this idempotency key already completed",
                        result=record.response,
                    )
                if self._monotonic() >= deadline:
                    raise ConflictError(
                        "a request with this idempotency key is still processing",
                        code="idempotency_processing",
                    )
                await self._sleep(self._poll_interval)
                record = await self._idempotency.get(key)
            # Holder cleared the key or it expired; compete for it again
            if self._monotonic() >= deadline:
                raise ConflictError(
                    "a request with this idempotency key is still processing",
                    code="idempotency_processing",
                )

    async def _run(self, key: str, command: ValidatedCommand) -> dict[str, Any]:
        operation = None
        try:
            operation = self._repository.create_operation(
                kind=command.kind,
                target=command.target,
                amount=str(command.amount),
                memo=command.memo,
                idempotency_key=key,
            )
            signature = await self._executor.submit(command.kind, command.params())
        except CommandRejected as exc:
            if operation is not None:
                self._repository.fail_operation(operation.id, exc.reason)
            await self._idempotency.clear(key)
            inc("commands_total", kind=command.kind, outcome="rejected")
            self._logger.warning(
                "command.rejected",
                kind=command.kind,
                operation_id=operation.id if operation is not None else None,
                reason=exc.reason,
            )
            raise
        except Exception as exc:
            if operation is not None:
                self._repository.fail_operation(operation.id, f"{type(exc).__name__}: {exc}")
            await self._idempotency.clear(key)
            inc("commands_total", kind=command.kind, outcome="error")
            self._logger.error(
                "command.failed",
                kind=command.kind,
                operation_id=operation.id if operation is not None else None,
                error=str(exc),
            )
            raise

        # Executed on the ledger: the key is never cleared past this point
        self._repository.complete_operation(operation.id, signature)
        response = {
            "status": "completed",
            "operation_id": operation.id,
            "kind": command.kind,
            "target": command.target,
            "amount": str(command.amount),
            "memo": command.memo,
            "signature": signature,
            "timestamp": isoformat(utcnow()),
        }
        await self._idempotency.complete(key, response)
        inc("commands_total", kind=command.kind, outcome="completed")
        self._logger.info(
            "command.completed",
            kind=command.kind,
            operation_id=operation.id,
            signature=signature,
        )
        return response

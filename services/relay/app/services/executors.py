"""
Command executors: the seam between the gateway and the external ledger.

``MockLedgerExecutor`` keeps an in-process ledger for mock mode and tests;
``HttpCommandExecutor`` forwards commands to the signer service in live mode.
Both raise ``CommandRejected`` for a refusal and ``TransientInfraError`` when
the ledger cannot be reached.
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Protocol

import httpx

from ..core.errors import CommandRejected, TransientInfraError
from ..core.logging import get_logger


class CommandExecutor(Protocol):
    async def submit(self, kind: str, params: dict[str, Any]) -> str: ...

    async def supply(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def _mock_signature() -> str:
    return f"mock-{uuid.uuid4().hex}"


class MockLedgerExecutor:
    def __init__(
        self,
        decimals: int = 6,
        latency_seconds: float = 0.0,
        signature_factory: Callable[[], str] = _mock_signature,
    ) -> None:
        self.decimals = decimals
        self.total_supply = 0
        self.total_minted = 0
        self.total_burned = 0
        self.total_seized = 0
        self.blacklist: set[str] = set()
        self.frozen: set[str] = set()
        self._latency = latency_seconds
        self._signature_factory = signature_factory
        self._closed = False
        self.submissions = 0

    async def submit(self, kind: str, params: dict[str, Any]) -> str:
        if self._closed:
            raise TransientInfraError("mock ledger is shut down")
        self.submissions += 1
        if self._latency:
            await asyncio.sleep(self._latency)
        target = params.get("target", "")
        amount = int(params.get("amount") or 0)
        handler = getattr(self, f"_apply_{kind}", None)
        if handler is None:
            raise CommandRejected(f"unsupported command: {kind}")
        handler(target, amount)
        return self._signature_factory()

    def _apply_mint(self, target: str, amount: int) -> None:
        if target in self.blacklist:
            raise CommandRejected("recipient is blacklisted")
        if target in self.frozen:
            raise CommandRejected("recipient account is frozen")
        self.total_supply += amount
        self.total_minted += amount

    def _apply_burn(self, target: str, amount: int) -> None:
        if amount > self.total_supply:
            raise CommandRejected("burn amount exceeds supply")
        self.total_supply -= amount
        self.total_burned += amount

    def _apply_freeze(self, target: str, amount: int) -> None:
        if target in self.frozen:
            raise CommandRejected("account is already frozen")
        self.frozen.add(target)

    def _apply_thaw(self, target: str, amount: int) -> None:
        if target not in self.frozen:
            raise CommandRejected("account is not frozen")
        self.frozen.discard(target)

    def _apply_blacklist_add(self, target: str, amount: int) -> None:
        if target in self.blacklist:
            raise CommandRejected("address is already blacklisted")
        self.blacklist.add(target)

    def _apply_blacklist_remove(self, target: str, amount: int) -> None:
        if target not in self.blacklist:
            raise CommandRejected("address is not blacklisted")
        self.blacklist.discard(target)

    def _apply_seize(self, target: str, amount: int) -> None:
        if target not in self.blacklist and target not in self.frozen:
            raise CommandRejected("seizure requires a blacklisted or frozen account")
        self.total_seized += amount

    async def supply(self) -> dict[str, Any]:
        return {
            "supply": str(self.total_supply),
            "total_minted": str(self.total_minted),
            "total_burned": str(self.total_burned),
            "decimals": self.decimals,
        }

    async def close(self) -> None:
        self._closed = True


class HttpCommandExecutor:
    """Forwards commands to ``POST {base_url}/commands/{kind}``; expects ``{"signature": ...}``."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout_seconds
        )
        self._logger = get_logger(__name__)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            self._logger.error("executor.transport_error", path=path, error=str(exc))
            raise TransientInfraError("command executor unreachable") from exc
        if response.status_code >= 500:
            self._logger.error("executor.upstream_error", path=path, status=response.status_code)
            raise TransientInfraError(f"command executor returned {response.status_code}")
        return response

    async def submit(self, kind: str, params: dict[str, Any]) -> str:
        response = await self._request("POST", f"/commands/{kind}", json=params)
        if response.status_code >= 400:
            raise CommandRejected(_reason(response))
        signature = (response.json() or {}).get("signature")
        if not isinstance(signature, str) or not signature:
            raise TransientInfraError("command executor returned no signature")
        return signature

    async def supply(self) -> dict[str, Any]:
        response = await self._request("GET", "/supply")
        if response.status_code >= 400:
            raise TransientInfraError(f"supply lookup failed with {response.status_code}")
        return response.json()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"rejected with status {response.status_code}"
    if isinstance(body, dict):
        for key in ("reason", "message", "detail", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return f"rejected with status {response.status_code}"

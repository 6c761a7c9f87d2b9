"""
adapters/chain_gateway.py
─────────────────────────
Chain Gateway contract: price quotes, buyer-token balances and order
submission.  Everything on the other side of this interface (RPC access,
signing, gas) belongs to an external gateway service.

:class:`HttpChainGateway` talks to such a service over JSON/HTTP:

    GET  /price?gamer=0x…&quantity=N&as_of=latest  → {"price_wei": "…"}
    GET  /balance/0x…                              → {"balance_wei": "…"}
    GET  /decimals                                 → {"decimals": 18}
    POST /orders   (proposed order as JSON)        → receipt dict
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Awaitable, Optional, TypeVar

import httpx

from core.errors import UpstreamError

T = TypeVar("T")


class ChainGateway(ABC):
    """Abstract contract for chain reads and order submission.

    Every call is fallible and latency-bearing; callers wrap them with
    :func:`call_with_timeout` so a stuck RPC fails the triggering evaluation
    instead of hanging it.
    """

    @abstractmethod
    async def get_buy_price(self, gamer: str, quantity: int, as_of: str | int = "latest") -> int:
        """Price in the buyer token's smallest unit for *quantity* bits."""

        raise NotImplementedError

    @abstractmethod
    async def balance_of(self, wallet: str) -> int:
        """Buyer-token balance of *wallet* in the smallest unit."""

        raise NotImplementedError

    @abstractmethod
    async def decimals(self) -> int:
        """Decimals of the buyer token."""

        raise NotImplementedError

    @abstractmethod
    async def submit_order(self, order: Any) -> dict[str, Any]:
        """Submit a proposed order on-chain and return the tx receipt."""

        raise NotImplementedError


class HttpChainGateway(ChainGateway):
    def __init__(self, base_url: str, *, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None) -> None:
        if not base_url and client is None:
            raise ValueError("HttpChainGateway needs a base URL (CHAIN_GATEWAY_URL)")
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self._decimals: Optional[int] = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            resp = await self._client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"chain gateway GET {path} failed: {exc}") from exc
        return resp.json()

    async def get_buy_price(self, gamer: str, quantity: int, as_of: str | int = "latest") -> int:
        data = await self._get("/price", {"gamer": gamer, "quantity": quantity, "as_of": as_of})
        return int(data["price_wei"])

    async def balance_of(self, wallet: str) -> int:
        data = await self._get(f"/balance/{wallet}")
        return int(data["balance_wei"])

    async def decimals(self) -> int:
        if self._decimals is None:
            data = await self._get("/decimals")
            self._decimals = int(data["decimals"])
        return self._decimals

    async def submit_order(self, order: Any) -> dict[str, Any]:
        body = order.model_dump(mode="json") if hasattr(order, "model_dump") else dict(order)
        try:
            resp = await self._client.post("/orders", json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"chain gateway order submission failed: {exc}") from exc
        return resp.json()


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await a gateway call, mapping timeouts and failures to UpstreamError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamError(f"{what} timed out after {timeout:.1f}s") from exc
    except UpstreamError:
        raise
    except Exception as exc:
        raise UpstreamError(f"{what} failed: {exc}") from exc


def wei_to_ether(amount_wei: int, decimals: int) -> float:
    return float(Decimal(int(amount_wei)) / (Decimal(10) ** decimals))

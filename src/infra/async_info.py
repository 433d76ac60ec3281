"""
Minimal async HTTP client for Hyperliquid info endpoints using HTTP/2.
"""

from __future__ import annotations

import httpx
from typing import Any, Optional


class AsyncInfo:
    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def meta(self) -> Any:
        return await self._post_info({"type": "meta"})

    async def all_mids(self) -> Any:
        return await self._post_info({"type": "allMids"})

    async def user_state(self, account: str) -> Any:
        """Balances and open perp positions (clearinghouseState)."""
        return await self._post_info({"type": "clearinghouseState", "user": account})

    async def l2_book(self, coin: str) -> Any:
        """Order book snapshot: {"coin", "time", "levels": [bids, asks]}."""
        return await self._post_info({"type": "l2Book", "coin": coin})

    async def open_orders(self, account: str) -> Any:
        return await self._post_info({"type": "openOrders", "user": account})

    async def _post_info(self, payload: dict[str, Any]) -> Any:
        resp = await self.client.post("/info", json=payload)
        resp.raise_for_status()
        data = resp.json()
        # unwrap {status:'ok', response:{data:{...}}} patterns
        if isinstance(data, dict):
            payload = data
            if "response" in payload and isinstance(payload["response"], dict):
                payload = payload["response"]
            if "data" in payload and isinstance(payload["data"], dict):
                payload = payload["data"]
            # Special-case allMids nesting
            if "allMids" in payload and isinstance(payload["allMids"], dict):
                payload = payload["allMids"]
            return payload
        return data

"""
Async wrapper around the blocking Hyperliquid Exchange using a shared thread pool.
This reduces thread churn and presents async methods for order/cancel flows.

Order placement is sent exactly once per call: the gateway owns the retry
ladder (price escalation), so a transport-level resend here could double an
order. Cancels are idempotent and keep a small retry.
"""

from __future__ import annotations

import asyncio
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from eth_account import Account
from hyperliquid.exchange import Exchange


class AsyncExchange:
    def __init__(self, exchange, timeout: float = 10.0, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self._exchange = exchange
        self._timeout = timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="hl-exec")

    @classmethod
    def for_account(
        cls,
        private_key: str,
        base_url: str,
        vault_address: Optional[str] = None,
        timeout: float = 10.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> "AsyncExchange":
        """Signing client for one account; orders route to the vault when set."""
        wallet = Account.from_key(private_key)
        exchange = Exchange(wallet, base_url, vault_address=vault_address or None)
        return cls(exchange, timeout=timeout, executor=executor)

    async def order(self, coin: str, is_buy: bool, sz: float, limit_px: float, order_type: dict, reduce_only: bool = False) -> Any:
        return await self._call(
            lambda: self._exchange.order(coin, is_buy, sz, limit_px, order_type, reduce_only=reduce_only),
            retries=0,
        )

    async def cancel(self, coin: str, oid: int) -> Any:
        return await self._call(lambda: self._exchange.cancel(coin, oid))

    async def close(self, wait: bool = True) -> None:
        # prefer graceful shutdown to avoid leaking threads between restarts
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    async def _call(self, fn, retries: int = 2) -> Any:
        loop = asyncio.get_running_loop()
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
            except Exception:
                if attempt >= retries:
                    raise
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2

"""
Market metadata cache.

MetaCache: coin -> (asset index, szDecimals) from the `meta` info endpoint,
refreshed hourly. A refresh builds a new dict and swaps the reference in a
single assignment, so readers never see a half-built table.

TickSizeCache: tick size per coin inferred once from an l2Book snapshot and
kept in the durable keyed store so later runs skip the inference.

Usage:
    meta = MetaCache(async_info)
    await meta.initialize()
    decimals = await meta.size_decimals("BTC")
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from src.core.rounding import DEFAULT_TICK_SIZE, infer_tick_from_levels
from src.core.utils import to_float
from src.execution.errors import UnknownCoinError
from src.infra.logging_cfg import log_event

log = logging.getLogger("copybot")


def _default_log(event: str, **kw: Any) -> None:
    log_event(log, event, **kw)


@dataclass(frozen=True)
class CoinMeta:
    index: int
    sz_decimals: int


class MetaCache:
    def __init__(
        self,
        async_info: Any,
        refresh_sec: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.async_info = async_info
        self.refresh_sec = refresh_sec
        self._clock = clock
        self._log_event = log_event or _default_log
        self._coins: Dict[str, CoinMeta] = {}
        self._loaded_at: Optional[float] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded_at is not None

    async def initialize(self) -> None:
        await self.refresh()

    async def refresh(self) -> None:
        async with self._refresh_lock:
            meta = await self.async_info.meta()
            universe = meta.get("universe", []) if isinstance(meta, dict) else []
            table: Dict[str, CoinMeta] = {}
            for idx, asset in enumerate(universe):
                name = asset.get("name")
                if not name:
                    continue
                table[name] = CoinMeta(index=idx, sz_decimals=int(asset.get("szDecimals", 0)))
            # single reference swap
            self._coins = table
            self._loaded_at = self._clock()
            self._log_event("meta_refreshed", coins=len(table))

    async def ensure_fresh(self) -> None:
        if self._loaded_at is None or self._clock() - self._loaded_at >= self.refresh_sec:
            try:
                await self.refresh()
            except Exception as exc:
                # keep serving the previous table when one exists
                if self._loaded_at is None:
                    raise
                self._log_event("meta_refresh_error", err=str(exc))

    def get_nowait(self, coin: str) -> Optional[CoinMeta]:
        return self._coins.get(coin)

    def size_decimals_nowait(self, coin: str) -> Optional[int]:
        meta = self._coins.get(coin)
        return meta.sz_decimals if meta else None

    def coin_index_nowait(self, coin: str) -> Optional[int]:
        meta = self._coins.get(coin)
        return meta.index if meta else None

    async def get(self, coin: str) -> CoinMeta:
        await self.ensure_fresh()
        meta = self._coins.get(coin)
        if meta is None:
            raise UnknownCoinError(coin)
        return meta

    async def size_decimals(self, coin: str) -> int:
        return (await self.get(coin)).sz_decimals

    async def coin_index(self, coin: str) -> int:
        return (await self.get(coin)).index

    def coins(self) -> List[str]:
        return list(self._coins)


class TickSizeCache:
    """
    Tick sizes inferred from the order book, persisted per coin.

    Concurrent lookups for the same coin share one inference through a
    per-coin lock. The default tick used for thin books is not persisted so
    a later lookup can infer the real value.
    """

    STORE_KEY = "ticks"

    def __init__(self, async_info: Any, store: Any, log_event: Optional[Callable[..., None]] = None) -> None:
        self.async_info = async_info
        self._store = store
        self._log_event = log_event or _default_log
        self._ticks: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._load_lock = asyncio.Lock()
        self._loaded = False

    async def load(self) -> None:
        data = await self._store.load(self.STORE_KEY) or {}
        self._ticks = {coin: float(t) for coin, t in data.items() if to_float(t) > 0}
        self._loaded = True

    def get_nowait(self, coin: str) -> Optional[float]:
        return self._ticks.get(coin)

    async def get(self, coin: str) -> float:
        if not self._loaded:
            async with self._load_lock:
                if not self._loaded:
                    await self.load()
        tick = self._ticks.get(coin)
        if tick is not None:
            return tick
        lock = self._locks.setdefault(coin, asyncio.Lock())
        async with lock:
            tick = self._ticks.get(coin)
            if tick is not None:
                return tick
            return await self._infer(coin)

    async def _infer(self, coin: str) -> float:
        book = await self.async_info.l2_book(coin)
        levels = book.get("levels", []) if isinstance(book, dict) else []
        tick = self._infer_from_sides(levels)
        if tick is None:
            self._log_event("tick_inference_default", coin=coin, tick=DEFAULT_TICK_SIZE)
            return DEFAULT_TICK_SIZE
        self._ticks[coin] = tick
        await self._store.save(self.STORE_KEY, dict(self._ticks))
        self._log_event("tick_inferred", coin=coin, tick=tick)
        return tick

    @staticmethod
    def _infer_from_sides(levels: List[List[Dict[str, Any]]]) -> Optional[float]:
        """Smallest tick seen on either side of the book."""
        candidates = []
        for side in levels[:2]:
            tick = infer_tick_from_levels([to_float(level.get("px")) for level in side])
            if tick is not None:
                candidates.append(tick)
        return min(candidates) if candidates else None

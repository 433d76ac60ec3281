"""
ExchangeGateway: order placement for one copy-trading account.

This module provides the only path from the sync orchestrator to the
exchange:
- Open / add / reduce / close with sizes quantized to the coin's szDecimals
- Minimum-notional upscaling
- Slippage escalation with retries on "could not immediately match"
- A single best-effort fallback at maximum slippage
- Cleanup of resting limit orders

Market mode (default) prices each attempt k at
reference * (1 +/- (base + (k - 1) * step)%) toward immediate execution with
IOC time-in-force. Reduce-only orders use GTC so a marketable limit may rest
briefly instead of being cancelled on no-match. A market-mode order still
resting after `resting_timeout_sec` is cancelled by oid and reported as
"cancelled"; if the cancel is refused the order already filled. Limit mode
places one GTC order at the reference price and leaves it resting.

Unknown coins and accounts without a signing client fail before any network
call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from src.core.models import LONG, OrderType
from src.core.rounding import format_price, format_size, min_size_for_notional
from src.core.utils import to_float
from src.infra.logging_cfg import log_event
from src.execution.errors import (
    ClientNotInitializedError,
    GatewayError,
    InvalidOrderError,
    OrderRejectedError,
    UnknownCoinError,
    status_error,
)

if TYPE_CHECKING:
    from src.infra.async_execution import AsyncExchange
    from src.infra.async_info import AsyncInfo
    from src.market_data.meta_cache import MetaCache, TickSizeCache
    from src.monitoring.metrics import CopyMetrics

log = logging.getLogger("copybot")

NO_MATCH_ERROR = "could not immediately match"

TIF_IOC = {"limit": {"tif": "Ioc"}}
TIF_GTC = {"limit": {"tif": "Gtc"}}


def is_no_match_error(error: Optional[str]) -> bool:
    return bool(error) and NO_MATCH_ERROR in error.lower()


def slippage_for_attempt(attempt: int, base_pct: float, step_pct: float) -> float:
    """Slippage percent for a 1-based attempt number."""
    return base_pct + (attempt - 1) * step_pct


def slipped_price(reference_px: float, slippage_pct: float, is_buy: bool) -> float:
    factor = 1 + slippage_pct / 100.0 if is_buy else 1 - slippage_pct / 100.0
    return reference_px * factor


@dataclass
class OrderResult:
    """Result of an accepted order."""
    success: bool
    coin: str
    is_buy: bool
    size: float
    price: float
    attempts: int = 1
    status: str = "filled"  # filled | resting | cancelled
    filled_size: float = 0.0
    avg_px: Optional[float] = None
    oid: Optional[int] = None
    latency_ms: float = 0.0
    fallback_used: bool = False

    @property
    def execution_price(self) -> float:
        return self.avg_px if self.avg_px else self.price

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"


@dataclass
class ExchangeGatewayConfig:
    """Configuration for ExchangeGateway."""
    min_order_value: float = 10.0
    slippage_base_pct: float = 0.5
    slippage_step_pct: float = 0.5
    slippage_max_pct: float = 3.0
    max_attempts: int = 3
    resting_timeout_sec: float = 2.0

    # Logging
    log_event_callback: Optional[Callable[..., None]] = None


class ExchangeGateway:
    """
    Order placement for one account.

    The signing client may be None (read-only deployments); every placement
    then raises ClientNotInitializedError without touching the network.
    """

    def __init__(
        self,
        account_id: str,
        exchange: Optional["AsyncExchange"],
        async_info: "AsyncInfo",
        meta_cache: "MetaCache",
        tick_cache: "TickSizeCache",
        config: Optional[ExchangeGatewayConfig] = None,
        metrics: Optional["CopyMetrics"] = None,
        account_address: Optional[str] = None,
    ) -> None:
        self.account_id = account_id
        self.exchange = exchange
        self.async_info = async_info
        self.meta_cache = meta_cache
        self.tick_cache = tick_cache
        self.config = config or ExchangeGatewayConfig()
        self.metrics = metrics
        self.account_address = account_address
        self.order_type: OrderType = OrderType.MARKET
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kw: Any) -> None:
        log_event(log, event, account=self.account_id, **kw)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def open_long(self, coin: str, size: float, reference_px: Optional[float] = None) -> OrderResult:
        return await self._place(coin, True, size, reduce_only=False, action="open", reference_px=reference_px)

    async def open_short(self, coin: str, size: float, reference_px: Optional[float] = None) -> OrderResult:
        return await self._place(coin, False, size, reduce_only=False, action="open", reference_px=reference_px)

    async def open_position(self, coin: str, size: float, side: str, reference_px: Optional[float] = None) -> OrderResult:
        if side == LONG:
            return await self.open_long(coin, size, reference_px)
        return await self.open_short(coin, size, reference_px)

    async def add_to_position(self, coin: str, size: float, side: str, reference_px: Optional[float] = None) -> OrderResult:
        return await self._place(coin, side == LONG, size, reduce_only=False, action="add", reference_px=reference_px)

    async def reduce_position(self, coin: str, size: float, side: str, reference_px: Optional[float] = None) -> OrderResult:
        """Reduce-only order against a position held on `side`."""
        return await self._place(coin, side != LONG, size, reduce_only=True, action="reduce", reference_px=reference_px)

    async def close_position(self, coin: str, size: float, side: str, reference_px: Optional[float] = None) -> OrderResult:
        """Reduce-only order for the full current size of a position held on `side`."""
        return await self._place(coin, side != LONG, size, reduce_only=True, action="close", reference_px=reference_px)

    async def cancel_open_orders(self, coin: Optional[str] = None) -> int:
        """Cancel resting orders (optionally for one coin). Returns the number cancelled."""
        if self.exchange is None:
            raise ClientNotInitializedError(self.account_id)
        if not self.account_address:
            return 0
        orders = await self.async_info.open_orders(self.account_address) or []
        cancelled = 0
        for order in orders:
            order_coin = order.get("coin")
            if coin is not None and order_coin != coin:
                continue
            oid = order.get("oid")
            try:
                resp = await self.exchange.cancel(order_coin, int(oid))
            except Exception as exc:
                self._log_event("cancel_error", coin=order_coin, oid=oid, err=str(exc))
                continue
            if _response_ok(resp):
                cancelled += 1
            else:
                self._log_event("cancel_rejected", coin=order_coin, oid=oid, resp=str(resp))
        if cancelled:
            self._log_event("stale_orders_cancelled", coin=coin, count=cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def _place(
        self,
        coin: str,
        is_buy: bool,
        size: float,
        reduce_only: bool,
        action: str,
        reference_px: Optional[float],
    ) -> OrderResult:
        if self.exchange is None:
            raise ClientNotInitializedError(self.account_id)
        meta = self.meta_cache.get_nowait(coin)
        if meta is None:
            raise UnknownCoinError(coin)

        sz_decimals = meta.sz_decimals
        qty = float(format_size(size, sz_decimals))
        if qty <= 0:
            raise InvalidOrderError(f"{coin}: size {size} rounds to zero at {sz_decimals} decimals")

        started = time.perf_counter()
        ref = reference_px if reference_px and reference_px > 0 else await self._mid_price(coin)

        min_value = self.config.min_order_value
        if min_value > 0 and qty * ref < min_value:
            scaled = min_size_for_notional(min_value, ref, sz_decimals)
            self._log_event("order_upscaled_min_notional", coin=coin, size=qty, new_size=scaled, min_value=min_value)
            qty = scaled

        tick = await self.tick_cache.get(coin)

        if self.order_type == OrderType.LIMIT:
            px = format_price(ref, tick, sz_decimals, is_buy)
            status = await self._send(coin, is_buy, qty, px, TIF_GTC, reduce_only, action, attempt=1)
            err = status_error(status)
            if err is not None:
                self._count_rejection(coin, err)
                raise OrderRejectedError(coin, err)
            return self._result(coin, is_buy, qty, px, status, attempts=1, started=started)

        tif = TIF_GTC if reduce_only else TIF_IOC
        cfg = self.config
        last_error = ""
        for attempt in range(1, cfg.max_attempts + 1):
            slip = slippage_for_attempt(attempt, cfg.slippage_base_pct, cfg.slippage_step_pct)
            px = format_price(slipped_price(ref, slip, is_buy), tick, sz_decimals, is_buy)
            status = await self._send(coin, is_buy, qty, px, tif, reduce_only, action, attempt=attempt)
            err = status_error(status)
            if err is None:
                result = self._result(coin, is_buy, qty, px, status, attempts=attempt, started=started)
                return await self._settle_resting(result)
            if not is_no_match_error(err):
                self._count_rejection(coin, err)
                raise OrderRejectedError(coin, err, attempts=attempt)
            last_error = err
            if self.metrics:
                self.metrics.order_retries.labels(account=self.account_id, coin=coin).inc()
            self._log_event("order_no_match_retry", coin=coin, attempt=attempt, slippage_pct=slip, px=px)

        # one last try at the widest allowed price, allowed to rest
        px = format_price(slipped_price(ref, cfg.slippage_max_pct, is_buy), tick, sz_decimals, is_buy)
        attempts = cfg.max_attempts + 1
        self._log_event("order_fallback", coin=coin, px=px, slippage_pct=cfg.slippage_max_pct, last_error=last_error)
        status = await self._send(coin, is_buy, qty, px, TIF_GTC, reduce_only, action, attempt=attempts)
        err = status_error(status)
        if err is not None:
            self._count_rejection(coin, err)
            raise OrderRejectedError(coin, err, attempts=attempts, fallback_used=True)
        result = self._result(coin, is_buy, qty, px, status, attempts=attempts, started=started)
        result.fallback_used = True
        return await self._settle_resting(result)

    async def _settle_resting(self, result: OrderResult) -> OrderResult:
        """
        Give a resting market-mode order a short window, then cancel it by oid.

        A successful cancel means nothing (or only part) filled: the result
        becomes "cancelled" and success False. A refused cancel means the
        order left the book by filling. A cancel that errors leaves the result
        "resting" for the cycle-start cleanup to catch.
        """
        if result.status != "resting" or result.oid is None:
            return result
        timeout = self.config.resting_timeout_sec
        if timeout > 0:
            await asyncio.sleep(timeout)
        try:
            resp = await self.exchange.cancel(result.coin, int(result.oid))
        except Exception as exc:
            self._log_event("resting_cancel_error", coin=result.coin, oid=result.oid, err=str(exc))
            return result
        if _response_ok(resp):
            result.status = "cancelled"
            result.success = False
            self._log_event("resting_order_cancelled", coin=result.coin, oid=result.oid, timeout_sec=timeout)
        else:
            result.status = "filled"
            result.filled_size = result.size
            self._log_event("resting_order_filled", coin=result.coin, oid=result.oid)
        return result

    async def _send(
        self,
        coin: str,
        is_buy: bool,
        qty: float,
        px: float,
        order_type: Dict[str, Any],
        reduce_only: bool,
        action: str,
        attempt: int,
    ) -> Dict[str, Any]:
        """Submit one order and return its first status entry."""
        self._log_event(
            "order_submit",
            coin=coin,
            action=action,
            is_buy=is_buy,
            sz=qty,
            px=px,
            tif=order_type["limit"]["tif"],
            reduce_only=reduce_only,
            attempt=attempt,
        )
        if self.metrics:
            self.metrics.orders_submitted.labels(account=self.account_id, coin=coin, action=action).inc()
        try:
            resp = await self.exchange.order(coin, is_buy, qty, px, order_type, reduce_only=reduce_only)
        except Exception as exc:
            self._log_event("order_transport_error", coin=coin, err=str(exc))
            raise GatewayError(f"{coin}: order submission failed: {exc}") from exc
        return _first_status(resp)

    async def _mid_price(self, coin: str) -> float:
        mids = await self.async_info.all_mids()
        mid = to_float((mids or {}).get(coin))
        if mid <= 0:
            raise GatewayError(f"{coin}: no reference price available")
        return mid

    def _result(
        self,
        coin: str,
        is_buy: bool,
        qty: float,
        px: float,
        status: Dict[str, Any],
        attempts: int,
        started: float,
    ) -> OrderResult:
        latency_ms = (time.perf_counter() - started) * 1000.0
        result = OrderResult(
            success=True,
            coin=coin,
            is_buy=is_buy,
            size=qty,
            price=px,
            attempts=attempts,
            latency_ms=latency_ms,
        )
        if "filled" in status:
            filled = status["filled"] or {}
            result.status = "filled"
            result.filled_size = to_float(filled.get("totalSz"), qty)
            result.avg_px = to_float(filled.get("avgPx")) or None
            result.oid = filled.get("oid")
        elif "resting" in status:
            resting = status["resting"] or {}
            result.status = "resting"
            result.oid = resting.get("oid")
        self._log_event(
            "order_accepted",
            coin=coin,
            status=result.status,
            sz=qty,
            px=px,
            avg_px=result.avg_px,
            attempts=attempts,
            latency_ms=round(latency_ms, 1),
        )
        return result

    def _count_rejection(self, coin: str, error: str) -> None:
        self._log_event("order_rejected", coin=coin, err=error)
        if self.metrics:
            self.metrics.orders_rejected.labels(account=self.account_id, coin=coin).inc()


def _response_ok(resp: Any) -> bool:
    if not isinstance(resp, dict) or resp.get("status") != "ok":
        return False
    statuses = _statuses(resp)
    return not statuses or status_error(statuses[0]) is None


def _statuses(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    response = resp.get("response")
    if not isinstance(response, dict):
        return []
    data = response.get("data") or {}
    return list(data.get("statuses") or [])


def _first_status(resp: Any) -> Dict[str, Any]:
    """
    Normalize an exchange order response to its first status entry.

    A top-level error (status != "ok") becomes {"error": <text>}.
    """
    if not isinstance(resp, dict):
        return {"error": f"unexpected response: {resp!r}"}
    if resp.get("status") != "ok":
        return {"error": str(resp.get("response", resp))}
    statuses = _statuses(resp)
    if not statuses:
        return {"error": f"no order status in response: {resp!r}"}
    first = statuses[0]
    if isinstance(first, str):
        return {"error": first}
    return first

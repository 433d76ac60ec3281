"""
SyncOrchestrator: the per-account poll loop.

Each cycle:
    fetch tracked + user state -> snapshot record -> drawdown pause release
    -> stale order cleanup -> take profit -> detect drifts -> drift alert
    -> gating -> sequential execution

Only filled orders count as trades. An order that ends resting or cancelled
is logged and the drift is picked up again next cycle; a side flip never
opens the new side while the old one is still open.

Gating, in order:
    trading paused, user balance below the trading floor, then per drift:
    unfavorable, drawdown-paused coin, time-paused coin, HREF for entries.

Execution is strictly sequential with one gateway call in flight per
account; a failed drift is logged and the next one proceeds.

Overlap policy: skip. The loop runs cycles inline on a fixed cadence; a
cycle that outlives the interval skips the ticks it missed. A cycle
requested while another is in flight returns immediately as skipped.

Control operations (pause, resume, close, settings) mutate AccountState
through the orchestrator so every change is persisted and serialized with
in-flight order calls.

Usage:
    orch = SyncOrchestrator(account, gateway, async_info, state, store)
    await orch.start()
    ...
    await orch.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from src.core.models import (
    Balance,
    DriftReport,
    DriftType,
    OrderType,
    Position,
    PositionDrift,
    SnapshotRecord,
    TradeAction,
    TradeRecord,
    parse_positions,
)
from src.core.utils import now_ms as _now_ms
from src.infra.logging_cfg import log_event
from src.state.account_state import AccountState
from src.strategy.drift_detector import detect

if TYPE_CHECKING:
    from src.config.accounts import AccountConfig
    from src.execution.execution_gateway import ExchangeGateway, OrderResult
    from src.infra.async_info import AsyncInfo
    from src.market_data.meta_cache import MetaCache
    from src.monitoring.alerting import AlertManager
    from src.monitoring.metrics import CopyMetrics
    from src.monitoring.records import RecordSink
    from src.state.account_state import AccountStateStore

log = logging.getLogger("copybot")

@dataclass
class SyncOrchestratorConfig:
    """Configuration for SyncOrchestrator."""
    poll_interval_sec: float = 60.0
    min_balance_to_trade: float = 10.0
    drift_threshold_percent: float = 5.0
    drift_alert_cooldown_sec: float = 3600.0
    close_and_pause_hours: float = 4.0

    # Logging
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class AccountSnapshot:
    tracked_balance: Balance
    tracked_positions: List[Position]
    user_balance: Balance
    user_positions: List[Position]

    @property
    def balance_ratio(self) -> float:
        tracked = self.tracked_balance.account_value
        if tracked <= 0:
            return 0.0
        return self.user_balance.account_value / tracked


@dataclass
class CycleResult:
    """Result of a single poll cycle."""
    success: bool
    skipped: bool = False
    reason: Optional[str] = None
    drifts: int = 0
    actionable: int = 0
    trades_executed: int = 0
    failures: int = 0
    take_profit_closes: int = 0
    balance_ratio: float = 0.0
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class CloseAllResult:
    closed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class SyncOrchestrator:
    def __init__(
        self,
        account: "AccountConfig",
        gateway: "ExchangeGateway",
        async_info: "AsyncInfo",
        state: AccountState,
        state_store: "AccountStateStore",
        config: Optional[SyncOrchestratorConfig] = None,
        meta_cache: Optional["MetaCache"] = None,
        alerts: Optional["AlertManager"] = None,
        records: Optional["RecordSink"] = None,
        metrics: Optional["CopyMetrics"] = None,
        clock_ms: Callable[[], int] = _now_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.account = account
        self.account_id = account.id
        self.gateway = gateway
        self.async_info = async_info
        self.state = state
        self.state_store = state_store
        self.config = config or SyncOrchestratorConfig()
        self.meta_cache = meta_cache
        self.alerts = alerts
        self.records = records
        self.metrics = metrics
        self._now_ms = clock_ms
        self._monotonic = monotonic
        self._log_event = self.config.log_event_callback or self._default_log

        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopping = False
        self._scheduled: Dict[str, asyncio.Task] = {}
        self._pending_saves: Set[asyncio.Task] = set()
        self._last_drift_alert: Optional[float] = None
        self.last_result: Optional[CycleResult] = None

        self.gateway.order_type = state.order_type
        self.state.on_change = self._on_state_change

    def _default_log(self, event: str, **kw: Any) -> None:
        log_event(log, event, account=self.account_id, **kw)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"sync-{self.account_id}")
        self._log_event("sync_started", interval_sec=self.config.poll_interval_sec)

    async def stop(self) -> None:
        """
        Stop polling. A cycle in flight finishes its current gateway call and
        executes no further drifts; the loop then exits.
        """
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()
        for task in list(self._scheduled.values()):
            task.cancel()
        await asyncio.gather(*self._scheduled.values(), return_exceptions=True)
        self._scheduled.clear()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.flush_state()
        self._log_event("sync_stopped")

    async def _loop(self) -> None:
        interval = self.config.poll_interval_sec
        next_tick = self._monotonic()
        while not self._stopping:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.exception(json.dumps({"event": "poll_cycle_error", "account": self.account_id, "err": str(exc)}))
            if self._stopping:
                break
            next_tick += interval
            now = self._monotonic()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                next_tick += missed * interval
                self._log_event("poll_overrun", skipped_ticks=missed)
            delay = max(0.0, next_tick - now)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _on_state_change(self, state: AccountState) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log_event("state_persist_skipped", reason="no_event_loop")
            return
        task = loop.create_task(self.state_store.save(self.account_id, state))
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def flush_state(self) -> None:
        """Wait for every scheduled state write."""
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def fetch_snapshot(self) -> AccountSnapshot:
        tracked_state, user_state = await asyncio.gather(
            self.async_info.user_state(self.account.tracked_wallet),
            self.async_info.user_state(self.account.trading_address),
        )
        return AccountSnapshot(
            tracked_balance=Balance.from_user_state(tracked_state),
            tracked_positions=parse_positions(tracked_state),
            user_balance=Balance.from_user_state(user_state),
            user_positions=parse_positions(user_state),
        )

    async def run_cycle(self) -> CycleResult:
        if self._cycle_lock.locked():
            self._log_event("poll_skipped", reason="cycle_in_progress")
            return CycleResult(success=True, skipped=True, reason="cycle_in_progress")
        async with self._cycle_lock:
            started = self._monotonic()
            result = await self._cycle()
            result.duration_ms = (self._monotonic() - started) * 1000.0
        self.last_result = result
        if self.metrics:
            outcome = "error" if not result.success else ("skipped" if result.skipped else "ok")
            self.metrics.poll_cycles.labels(account=self.account_id, result=outcome).inc()
            self.metrics.poll_duration_sec.labels(account=self.account_id).observe(result.duration_ms / 1000.0)
        self._log_event(
            "poll_complete",
            success=result.success,
            skipped=result.skipped,
            reason=result.reason,
            drifts=result.drifts,
            actionable=result.actionable,
            trades=result.trades_executed,
            failures=result.failures,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def _cycle(self) -> CycleResult:
        try:
            if self.meta_cache is not None:
                await self.meta_cache.ensure_fresh()
            snap = await self.fetch_snapshot()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event("poll_fetch_error", err=str(exc))
            return CycleResult(success=False, reason="fetch_failed", error=str(exc))

        tracked_value = snap.tracked_balance.account_value
        user_value = snap.user_balance.account_value
        ratio = snap.balance_ratio
        now = self._now_ms()
        if self.metrics:
            self.metrics.balance_ratio.labels(account=self.account_id).set(ratio)

        if self.records is not None:
            self.records.snapshot(SnapshotRecord(
                account_id=self.account_id,
                tracked_balance=tracked_value,
                user_balance=user_value,
                balance_ratio=ratio,
                tracked_positions=snap.tracked_positions,
                user_positions=snap.user_positions,
                timestamp_ms=now,
            ))

        cleared = self.state.clear_drawdown_pauses(snap.tracked_positions, tracked_value)
        if cleared:
            self._log_event("drawdown_pause_cleared", coins=cleared)

        self.gateway.order_type = self.state.order_type
        # leftovers from limit mode or an uncancelled market-mode rest
        if not self._stopping:
            try:
                await self.gateway.cancel_open_orders()
            except Exception as exc:
                self._log_event("stale_order_cleanup_failed", err=str(exc))

        closed_by_tp = await self._run_take_profit(snap.user_positions, user_value)
        user_positions = [p for p in snap.user_positions if p.coin not in closed_by_tp]

        report = detect(
            snap.tracked_positions,
            user_positions,
            tracked_value,
            user_value,
            self.config.drift_threshold_percent,
            now_ms=now,
        )
        result = CycleResult(
            success=True,
            drifts=len(report.drifts),
            balance_ratio=ratio,
            take_profit_closes=len(closed_by_tp),
        )
        if not report.has_drift:
            return result

        if self.metrics:
            for drift in report.drifts:
                self.metrics.drifts_detected.labels(account=self.account_id, drift_type=drift.drift_type.value).inc()
        self._log_event("drift_detected", drifts=[_drift_summary(d) for d in report.drifts], balance_ratio=round(ratio, 4))
        await self._maybe_alert_drift(report, ratio)

        if self.state.trading_paused:
            result.skipped, result.reason = True, "trading_paused"
            self._log_event("sync_skipped", reason="trading_paused")
            return result
        if user_value < self.config.min_balance_to_trade:
            result.skipped, result.reason = True, "balance_below_minimum"
            self._log_event("sync_skipped", reason="balance_below_minimum", user_balance=user_value)
            return result

        actionable = self.filter_drifts(report, tracked_value, now)
        result.actionable = len(actionable)
        trades, failures = await self._execute(actionable)
        result.trades_executed = trades
        result.failures = failures
        return result

    def filter_drifts(self, report: DriftReport, tracked_balance: float, now_ms: Optional[int] = None) -> List[PositionDrift]:
        """Apply per-drift gates; returns the drifts cleared for execution in report order."""
        now = now_ms if now_ms is not None else self._now_ms()
        out: List[PositionDrift] = []
        for drift in report.drifts:
            reason = None
            if not drift.is_favorable:
                reason = "unfavorable"
            elif self.state.is_drawdown_paused(drift.coin):
                reason = "drawdown_paused"
            elif self.state.is_symbol_paused(drift.coin, now):
                reason = "symbol_paused"
            elif not self.state.is_entry_allowed_by_href(drift, tracked_balance):
                reason = "href_filter"
            if reason:
                self._log_event("drift_skipped", coin=drift.coin, drift_type=drift.drift_type.value, reason=reason)
                continue
            out.append(drift)
        return out

    async def _execute(self, drifts: List[PositionDrift]) -> Tuple[int, int]:
        trades = failures = 0
        for drift in drifts:
            if self._stopping:
                self._log_event("sync_interrupted", reason="shutdown", remaining=len(drifts))
                break
            try:
                done, failed = await self._sync_drift(drift)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                self._log_event("sync_trade_failed", coin=drift.coin, drift_type=drift.drift_type.value, err=str(exc))
                if self.alerts:
                    await self.alerts.alert_trade_failed(self.account_id, drift.coin, str(exc), drift_type=drift.drift_type.value)
                continue
            trades += done
            failures += failed
        return trades, failures

    async def _sync_drift(self, drift: PositionDrift) -> Tuple[int, int]:
        """Execute one drift. Returns (trades executed, failures absorbed)."""
        multiplier = self.state.position_size_multiplier
        target = drift.scaled_target_size * multiplier
        price = drift.current_price or None
        tracked = drift.tracked_position
        user = drift.user_position

        if drift.drift_type == DriftType.MISSING:
            if target <= 0:
                return 0, 0
            res = await self.gateway.open_position(drift.coin, target, tracked.side, price)
            if self._unfilled(drift.coin, TradeAction.OPEN, res):
                return 0, 0
            self._record(drift.coin, TradeAction.OPEN, tracked.side, res, reason="missing_position")
            return 1, 0

        if drift.drift_type == DriftType.EXTRA:
            res = await self.gateway.close_position(drift.coin, user.size, user.side, user.mark_price or None)
            if self._unfilled(drift.coin, TradeAction.CLOSE, res):
                return 0, 0
            self._record(drift.coin, TradeAction.CLOSE, user.side, res, pnl=user.unrealized_pnl, reason="orphan_position")
            return 1, 0

        if drift.drift_type == DriftType.SIZE_MISMATCH:
            if user.size < drift.scaled_target_size:
                delta = target - user.size
                if delta <= 0:
                    self._log_event("sync_noop", coin=drift.coin, reason="scaled_target_reached", multiplier=multiplier)
                    return 0, 0
                res = await self.gateway.add_to_position(drift.coin, delta, user.side, price)
                if self._unfilled(drift.coin, TradeAction.ADD, res):
                    return 0, 0
                self._record(drift.coin, TradeAction.ADD, user.side, res, reason="size_under")
                return 1, 0
            delta = min(user.size - target, user.size)
            if delta <= 0:
                self._log_event("sync_noop", coin=drift.coin, reason="scaled_target_reached", multiplier=multiplier)
                return 0, 0
            res = await self.gateway.reduce_position(drift.coin, delta, user.side, price)
            if self._unfilled(drift.coin, TradeAction.REDUCE, res):
                return 0, 0
            pnl = user.unrealized_pnl * (delta / user.size) if user.size else 0.0
            self._record(drift.coin, TradeAction.REDUCE, user.side, res, pnl=pnl, reason="size_over")
            return 1, 0

        # side mismatch: flatten, then open on the tracked side
        res = await self.gateway.close_position(drift.coin, user.size, user.side, price)
        if self._unfilled(drift.coin, TradeAction.CLOSE, res):
            # opening now would only shrink the old side
            self._log_event("reverse_skipped", coin=drift.coin, reason="close_not_filled", status=res.status)
            return 0, 1
        self._record(drift.coin, TradeAction.CLOSE, user.side, res, pnl=user.unrealized_pnl, reason="side_mismatch")
        if target <= 0:
            return 1, 0
        try:
            res = await self.gateway.open_position(drift.coin, target, tracked.side, price)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # account is now flat on this coin
            self._log_event("reverse_open_failed", coin=drift.coin, side=tracked.side, size=target, err=str(exc))
            if self.alerts:
                await self.alerts.alert_trade_failed(self.account_id, drift.coin, f"reverse open failed, position flat: {exc}")
            return 1, 1
        if self._unfilled(drift.coin, TradeAction.REVERSE, res):
            return 1, 0
        self._record(drift.coin, TradeAction.REVERSE, tracked.side, res, reason="side_mismatch")
        return 2, 0

    def _unfilled(self, coin: str, action: TradeAction, res: "OrderResult") -> bool:
        """True (and logged) when an accepted order did not fill: resting in limit mode or cancelled."""
        if res.is_filled:
            return False
        self._log_event("order_not_filled", coin=coin, action=action.value, status=res.status, oid=res.oid)
        return True

    def _record(
        self,
        coin: str,
        action: TradeAction,
        side: str,
        res: "OrderResult",
        pnl: float = 0.0,
        source: str = "sync",
        reason: Optional[str] = None,
    ) -> TradeRecord:
        record = TradeRecord(
            account_id=self.account_id,
            coin=coin,
            action=action.value,
            side=side,
            size=res.size,
            price=res.execution_price,
            timestamp_ms=self._now_ms(),
            execution_latency_ms=round(res.latency_ms, 1),
            realized_pnl_estimate=pnl,
            source=source,
            reason=reason,
        )
        if self.records is not None:
            self.records.trade(record)
        if self.metrics:
            self.metrics.trades_executed.labels(account=self.account_id, action=action.value, source=source).inc()
        self._log_event("trade_executed", coin=coin, action=action.value, side=side, size=res.size, px=res.execution_price, source=source)
        return record

    async def _maybe_alert_drift(self, report: DriftReport, ratio: float) -> bool:
        now = self._monotonic()
        if self._last_drift_alert is not None and now - self._last_drift_alert < self.config.drift_alert_cooldown_sec:
            return False
        self._last_drift_alert = now
        if self.alerts is None:
            return False
        summary = [
            {"coin": d.coin, "type": d.drift_type.value, "diff_pct": d.size_diff_percent}
            for d in report.drifts
        ]
        return await self.alerts.alert_drift_detected(self.account_id, summary, ratio)

    async def _run_take_profit(self, positions: List[Position], user_balance: float) -> Set[str]:
        signals = self.state.evaluate_take_profit(positions, user_balance)
        if not signals:
            return set()
        by_coin = {p.coin: p for p in positions}
        closed: Set[str] = set()
        for signal in signals:
            if self._stopping:
                break
            pos = by_coin[signal.coin]
            try:
                res = await self.gateway.close_position(pos.coin, pos.size, pos.side, pos.mark_price or None)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("take_profit_close_failed", coin=pos.coin, source=signal.source, err=str(exc))
                continue
            if self._unfilled(pos.coin, TradeAction.CLOSE, res):
                continue
            self.state.clear_peak(pos.coin)
            closed.add(pos.coin)
            self._record(pos.coin, TradeAction.CLOSE, pos.side, res, pnl=pos.unrealized_pnl, source=signal.source, reason="take_profit")
            if self.alerts:
                await self.alerts.alert_take_profit(self.account_id, pos.coin, signal.profit_pct, signal.source)
        return closed

    # ------------------------------------------------------------------
    # Scheduled effects
    # ------------------------------------------------------------------

    def _schedule(self, name: str, delay_sec: float, fn: Callable[[], Awaitable[Any]]) -> None:
        existing = self._scheduled.pop(name, None)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()

        async def _run() -> None:
            await asyncio.sleep(delay_sec)
            self._scheduled.pop(name, None)
            await fn()

        self._scheduled[name] = asyncio.create_task(_run(), name=f"{self.account_id}-{name}")

    def _cancel_scheduled(self, name: str) -> None:
        task = self._scheduled.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def pause_trading(self, hours: Optional[float] = None) -> None:
        self.state.set_trading_paused(True)
        if hours:
            self._schedule("trading_resume", hours * 3600.0, self.resume_trading)
        self._log_event("trading_paused", hours=hours)
        await self.flush_state()

    async def resume_trading(self) -> None:
        self._cancel_scheduled("trading_resume")
        self.state.set_trading_paused(False)
        self._log_event("trading_resumed")
        await self.flush_state()

    async def pause_symbol(self, coin: str, hours: float) -> int:
        resume_at = self.state.pause_symbol(coin, hours, self._now_ms())
        self._log_event("symbol_paused", coin=coin, hours=hours, resume_at_ms=resume_at)
        await self.flush_state()
        return resume_at

    async def pause_all_symbols(self, hours: float) -> List[str]:
        """Time-pause every coin held by the tracked wallet or the account."""
        snap = await self.fetch_snapshot()
        coins = sorted({p.coin for p in snap.tracked_positions} | {p.coin for p in snap.user_positions})
        now = self._now_ms()
        for coin in coins:
            self.state.pause_symbol(coin, hours, now)
        self._log_event("symbols_paused", coins=coins, hours=hours)
        await self.flush_state()
        return coins

    async def resume_symbol(self, coin: str) -> bool:
        resumed = self.state.resume_symbol(coin)
        self._log_event("symbol_resumed", coin=coin, was_paused=resumed)
        await self.flush_state()
        return resumed

    async def close_position(self, coin: str, percent: float = 100.0) -> "OrderResult":
        """Close `percent` of the account's position in `coin`."""
        if not 0 < percent <= 100:
            raise ValueError("percent must be in (0, 100]")
        async with self._cycle_lock:
            snap = await self.fetch_snapshot()
            pos = next((p for p in snap.user_positions if p.coin == coin), None)
            if pos is None:
                raise ValueError(f"No open position for {coin}")
            if percent >= 100:
                res = await self.gateway.close_position(coin, pos.size, pos.side, pos.mark_price or None)
                if not self._unfilled(coin, TradeAction.CLOSE, res):
                    self._record(coin, TradeAction.CLOSE, pos.side, res, pnl=pos.unrealized_pnl, source="control", reason="manual_close")
            else:
                size = pos.size * percent / 100.0
                res = await self.gateway.reduce_position(coin, size, pos.side, pos.mark_price or None)
                if not self._unfilled(coin, TradeAction.REDUCE, res):
                    self._record(coin, TradeAction.REDUCE, pos.side, res, pnl=pos.unrealized_pnl * percent / 100.0, source="control", reason="manual_reduce")
            return res

    async def close_and_pause(self, coin: str, hours: Optional[float] = None) -> "OrderResult":
        res = await self.close_position(coin)
        await self.pause_symbol(coin, hours if hours is not None else self.config.close_and_pause_hours)
        return res

    async def close_and_wait_drawdown(self, coin: str, threshold_pct: float) -> "OrderResult":
        """Close now; re-enter only after the tracked position loses threshold_pct of tracked balance."""
        if threshold_pct <= 0:
            raise ValueError("threshold_pct must be > 0")
        res = await self.close_position(coin)
        self.state.pause_until_drawdown(coin, threshold_pct)
        self._log_event("drawdown_pause_set", coin=coin, threshold_pct=threshold_pct)
        await self.flush_state()
        return res

    async def close_all_positions(self, pause_hours: Optional[float] = None) -> CloseAllResult:
        out = CloseAllResult()
        async with self._cycle_lock:
            snap = await self.fetch_snapshot()
            for pos in snap.user_positions:
                try:
                    res = await self.gateway.close_position(pos.coin, pos.size, pos.side, pos.mark_price or None)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    out.failed[pos.coin] = str(exc)
                    self._log_event("manual_close_failed", coin=pos.coin, err=str(exc))
                    continue
                if self._unfilled(pos.coin, TradeAction.CLOSE, res):
                    out.failed[pos.coin] = f"order {res.status}"
                    continue
                self._record(pos.coin, TradeAction.CLOSE, pos.side, res, pnl=pos.unrealized_pnl, source="control", reason="close_all")
                out.closed.append(pos.coin)
        if pause_hours:
            await self.pause_trading(pause_hours)
        self._log_event("close_all_complete", closed=out.closed, failed=list(out.failed))
        return out

    async def set_take_profit(self, threshold: float) -> None:
        self.state.set_take_profit(threshold)
        self._log_event("take_profit_set", threshold=threshold)
        await self.flush_state()

    async def set_size_multiplier(self, multiplier: float) -> None:
        self.state.set_size_multiplier(multiplier)
        self._log_event("size_multiplier_set", multiplier=multiplier)
        await self.flush_state()

    async def set_order_type(self, order_type: OrderType | str) -> None:
        self.state.set_order_type(order_type)
        self.gateway.order_type = self.state.order_type
        self._log_event("order_type_set", order_type=self.state.order_type.value)
        await self.flush_state()

    async def set_href_threshold(self, pct: float) -> None:
        self.state.set_href_threshold(pct)
        self._log_event("href_threshold_set", pct=pct)
        await self.flush_state()


def _drift_summary(drift: PositionDrift) -> Dict[str, Any]:
    return {
        "coin": drift.coin,
        "type": drift.drift_type.value,
        "favorable": drift.is_favorable,
        "target": round(drift.scaled_target_size, 8),
        "diff_pct": round(drift.size_diff_percent, 2),
    }

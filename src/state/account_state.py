"""
Per-account control state.

AccountState carries every operator-controlled and automatic flag that gates
syncing for one account: global pause, time-boxed symbol pauses, drawdown
pauses, take-profit mode and peaks, size multiplier, order type and the
high-risk-entry filter (HREF).

Every mutation invokes the on_change hook so the owner can persist the new
state immediately. Time-pause expiry is lazy: an expired entry is treated as
absent (and removed) the next time it is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from src.core.models import OrderType, Position, PositionDrift
from src.core.utils import now_ms as _now_ms

TAKE_PROFIT_OFF = 0.0
TAKE_PROFIT_DYNAMIC = -1.0

# Dynamic take-profit: positions below this profit % are not tracked.
DYNAMIC_TP_MIN_PROFIT_PCT = 2.0

HOUR_MS = 3_600_000


def allowed_retracement(peak_pct: float) -> float:
    """Fraction of the peak profit that may be given back before closing."""
    if peak_pct < 3.0:
        return 0.40
    if peak_pct < 5.0:
        return 0.30
    return 0.20


@dataclass
class TakeProfitSignal:
    coin: str
    profit_pct: float
    source: str
    peak_pct: Optional[float] = None
    retracement: Optional[float] = None


@dataclass
class AccountState:
    trading_paused: bool = False
    paused_symbols: Dict[str, int] = field(default_factory=dict)
    drawdown_paused_symbols: Dict[str, float] = field(default_factory=dict)
    take_profit_threshold: float = TAKE_PROFIT_OFF
    position_peaks: Dict[str, float] = field(default_factory=dict)
    position_size_multiplier: float = 1.0
    order_type: OrderType = OrderType.MARKET
    href_threshold: float = 0.0
    on_change: Optional[Callable[["AccountState"], None]] = field(default=None, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trading_paused": self.trading_paused,
            "paused_symbols": dict(self.paused_symbols),
            "drawdown_paused_symbols": dict(self.drawdown_paused_symbols),
            "take_profit_threshold": self.take_profit_threshold,
            "position_peaks": dict(self.position_peaks),
            "position_size_multiplier": self.position_size_multiplier,
            "order_type": self.order_type.value,
            "href_threshold": self.href_threshold,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AccountState":
        if not data:
            return cls()
        try:
            order_type = OrderType(data.get("order_type", OrderType.MARKET.value))
        except ValueError:
            order_type = OrderType.MARKET
        multiplier = float(data.get("position_size_multiplier", 1.0) or 1.0)
        return cls(
            trading_paused=bool(data.get("trading_paused", False)),
            paused_symbols={k: int(v) for k, v in (data.get("paused_symbols") or {}).items()},
            drawdown_paused_symbols={k: float(v) for k, v in (data.get("drawdown_paused_symbols") or {}).items()},
            take_profit_threshold=float(data.get("take_profit_threshold", TAKE_PROFIT_OFF)),
            position_peaks={k: float(v) for k, v in (data.get("position_peaks") or {}).items()},
            position_size_multiplier=multiplier if multiplier > 0 else 1.0,
            order_type=order_type,
            href_threshold=max(0.0, float(data.get("href_threshold", 0.0))),
        )

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    # ------------------------------------------------------------------
    # Pauses
    # ------------------------------------------------------------------

    def set_trading_paused(self, paused: bool) -> None:
        self.trading_paused = paused
        self._changed()

    def pause_symbol(self, coin: str, hours: float, now_ms: Optional[int] = None) -> int:
        if hours <= 0:
            raise ValueError("hours must be > 0")
        now = now_ms if now_ms is not None else _now_ms()
        resume_at = now + int(hours * HOUR_MS)
        self.paused_symbols[coin] = resume_at
        self._changed()
        return resume_at

    def is_symbol_paused(self, coin: str, now_ms: Optional[int] = None) -> bool:
        resume_at = self.paused_symbols.get(coin)
        if resume_at is None:
            return False
        now = now_ms if now_ms is not None else _now_ms()
        if now >= resume_at:
            del self.paused_symbols[coin]
            self._changed()
            return False
        return True

    def pause_until_drawdown(self, coin: str, threshold_pct: float) -> None:
        if threshold_pct <= 0:
            raise ValueError("threshold_pct must be > 0")
        self.drawdown_paused_symbols[coin] = threshold_pct
        self._changed()

    def is_drawdown_paused(self, coin: str) -> bool:
        return coin in self.drawdown_paused_symbols

    def clear_drawdown_pauses(self, tracked_positions: Sequence[Position], tracked_balance: float) -> List[str]:
        """
        Release drawdown pauses whose tracked position now shows enough loss.

        A coin is released once the tracked position's unrealized loss, as a
        percent of tracked balance, exceeds the stored threshold. Coins the
        tracked wallet no longer holds stay paused.
        """
        if not self.drawdown_paused_symbols or tracked_balance <= 0:
            return []
        by_coin = {p.coin: p for p in tracked_positions}
        cleared: List[str] = []
        for coin, threshold in list(self.drawdown_paused_symbols.items()):
            tracked = by_coin.get(coin)
            if tracked is None:
                continue
            loss_pct = -tracked.unrealized_pnl / tracked_balance * 100.0
            if loss_pct > threshold:
                del self.drawdown_paused_symbols[coin]
                cleared.append(coin)
        if cleared:
            self._changed()
        return cleared

    def resume_symbol(self, coin: str) -> bool:
        had = coin in self.paused_symbols or coin in self.drawdown_paused_symbols
        self.paused_symbols.pop(coin, None)
        self.drawdown_paused_symbols.pop(coin, None)
        if had:
            self._changed()
        return had

    # ------------------------------------------------------------------
    # Sizing / execution settings
    # ------------------------------------------------------------------

    def set_take_profit(self, threshold: float) -> None:
        if threshold < 0 and threshold != TAKE_PROFIT_DYNAMIC:
            raise ValueError("take profit threshold must be 0, -1 (dynamic) or a positive percent")
        self.take_profit_threshold = threshold
        self.position_peaks.clear()
        self._changed()

    def set_size_multiplier(self, multiplier: float) -> None:
        if multiplier <= 0:
            raise ValueError("position size multiplier must be > 0")
        self.position_size_multiplier = multiplier
        self._changed()

    def set_order_type(self, order_type: OrderType | str) -> None:
        self.order_type = OrderType(order_type)
        self._changed()

    def set_href_threshold(self, pct: float) -> None:
        if pct < 0:
            raise ValueError("href threshold must be >= 0")
        self.href_threshold = pct
        self._changed()

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def is_entry_allowed_by_href(self, drift: PositionDrift, tracked_balance: float) -> bool:
        """
        HREF gate for entry drifts.

        With a positive threshold, an entry is allowed only once the tracked
        position's unrealized loss (as % of tracked balance) meets or exceeds
        it. Non-entry drifts and a disabled filter always pass.
        """
        if self.href_threshold <= 0 or not drift.is_entry:
            return True
        tracked = drift.tracked_position
        if tracked is None or tracked_balance <= 0:
            return False
        loss_pct = -tracked.unrealized_pnl / tracked_balance * 100.0
        return loss_pct >= self.href_threshold

    # ------------------------------------------------------------------
    # Take profit
    # ------------------------------------------------------------------

    def evaluate_take_profit(self, user_positions: Sequence[Position], user_balance: float) -> List[TakeProfitSignal]:
        """
        Return the positions that should be closed for profit.

        Fixed mode (N > 0): close when profit % of user balance exceeds N.
        Dynamic mode (-1): track each position's peak profit % and close once
        it retraces from the peak by the tier allowance while still positive.
        Peaks for closed signals are not cleared here; call clear_peak() after
        the close succeeds.
        """
        threshold = self.take_profit_threshold
        if threshold == TAKE_PROFIT_OFF or user_balance <= 0:
            return []

        if threshold > 0:
            signals: List[TakeProfitSignal] = []
            for pos in user_positions:
                profit_pct = pos.unrealized_pnl / user_balance * 100.0
                if profit_pct > threshold:
                    signals.append(TakeProfitSignal(pos.coin, profit_pct, "take-profit"))
            return signals

        return self._evaluate_dynamic(user_positions, user_balance)

    def _evaluate_dynamic(self, user_positions: Sequence[Position], user_balance: float) -> List[TakeProfitSignal]:
        changed = False
        held = {p.coin for p in user_positions}
        for coin in list(self.position_peaks):
            if coin not in held:
                del self.position_peaks[coin]
                changed = True

        signals: List[TakeProfitSignal] = []
        for pos in user_positions:
            profit_pct = pos.unrealized_pnl / user_balance * 100.0
            if profit_pct < DYNAMIC_TP_MIN_PROFIT_PCT:
                if pos.coin in self.position_peaks:
                    del self.position_peaks[pos.coin]
                    changed = True
                continue

            peak = self.position_peaks.get(pos.coin)
            if peak is None or profit_pct > peak:
                self.position_peaks[pos.coin] = profit_pct
                changed = True
                continue

            retracement = (peak - profit_pct) / peak
            if retracement >= allowed_retracement(peak) and profit_pct > 0:
                signals.append(TakeProfitSignal(
                    pos.coin, profit_pct, "take-profit-dynamic",
                    peak_pct=peak, retracement=retracement,
                ))

        if changed:
            self._changed()
        return signals

    def clear_peak(self, coin: str) -> None:
        if self.position_peaks.pop(coin, None) is not None:
            self._changed()


class AccountStateStore:
    """Binds a KeyedStateStore to AccountState, keyed by account id."""

    def __init__(self, store: Any) -> None:
        self._store = store

    async def load(self, account_id: str) -> AccountState:
        return AccountState.from_dict(await self._store.load(account_id))

    async def save(self, account_id: str, state: AccountState) -> bool:
        return await self._store.save(account_id, state.to_dict())

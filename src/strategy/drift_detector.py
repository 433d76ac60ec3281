"""
Drift detection between a tracked wallet and a user account.

Pure and deterministic: positions and balances in, DriftReport out. Sizes are
compared as allocation percentages (notional / balance) so accounts of any
size can mirror the tracked wallet proportionally.

Classification per coin:
- missing: tracked holds it, user does not
- side_mismatch: both hold it on opposite sides
- size_mismatch: same side, allocation differs by more than the threshold
- extra: user holds it, tracked does not

Favorability decides whether the orchestrator may act on a drift:
- entries (missing, side_mismatch, under-allocation) are favorable when the
  current mark is no worse than the tracked wallet's entry
- reducing an over-allocation is favorable only while the user position is
  in profit
- closing an extra position is always favorable
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from src.core.models import DriftReport, DriftType, Position, PositionDrift
from src.core.utils import now_ms as _now_ms

# Tracked positions below this notional are dust and ignored.
DUST_NOTIONAL = 10.0


def _allocation_pct(position: Position, balance: float) -> float:
    return position.notional_value / balance * 100.0


def _entry_is_favorable(tracked: Position, mark: float) -> bool:
    """Mark at or better than the tracked wallet's entry for its side."""
    if tracked.is_long:
        return mark <= tracked.entry_price
    return mark >= tracked.entry_price


def _user_in_profit(user: Position, mark: float) -> bool:
    if user.is_long:
        return mark > user.entry_price
    return mark < user.entry_price


def _price_improvement(tracked: Position, mark: float) -> float:
    """Percent by which mark beats tracked entry (negative when worse)."""
    if tracked.entry_price <= 0:
        return 0.0
    if tracked.is_long:
        return (tracked.entry_price - mark) / tracked.entry_price * 100.0
    return (mark - tracked.entry_price) / tracked.entry_price * 100.0


def detect(
    tracked_positions: Sequence[Position],
    user_positions: Sequence[Position],
    tracked_balance: float,
    user_balance: float,
    threshold_percent: float,
    now_ms: Optional[int] = None,
) -> DriftReport:
    """
    Compare tracked and user positions and classify each difference.

    Output order: drifts for tracked positions in input order, then extras in
    user input order. Non-positive balances produce an empty report.
    """
    ts = now_ms if now_ms is not None else _now_ms()
    if tracked_balance <= 0 or user_balance <= 0:
        return DriftReport(drifts=[], timestamp_ms=ts)

    user_by_coin: Dict[str, Position] = {p.coin: p for p in user_positions}
    tracked_coins = {p.coin for p in tracked_positions}
    drifts: List[PositionDrift] = []

    for tracked in tracked_positions:
        if tracked.notional_value < DUST_NOTIONAL:
            continue
        mark = tracked.mark_price
        if mark <= 0:
            continue
        tracked_pct = _allocation_pct(tracked, tracked_balance)
        target_size = tracked_pct / 100.0 * user_balance / mark
        improvement = _price_improvement(tracked, mark)
        user = user_by_coin.get(tracked.coin)

        if user is None:
            drifts.append(PositionDrift(
                coin=tracked.coin,
                drift_type=DriftType.MISSING,
                tracked_position=tracked,
                user_position=None,
                is_favorable=_entry_is_favorable(tracked, mark),
                scaled_target_size=target_size,
                size_diff_percent=tracked_pct,
                current_price=mark,
                price_improvement=improvement,
            ))
            continue

        if user.side != tracked.side:
            drifts.append(PositionDrift(
                coin=tracked.coin,
                drift_type=DriftType.SIDE_MISMATCH,
                tracked_position=tracked,
                user_position=user,
                is_favorable=_entry_is_favorable(tracked, mark),
                scaled_target_size=target_size,
                size_diff_percent=100.0,
                current_price=mark,
                price_improvement=improvement,
            ))
            continue

        user_pct = _allocation_pct(user, user_balance)
        diff = tracked_pct - user_pct
        if abs(diff) <= threshold_percent:
            continue
        if user_pct < tracked_pct:
            favorable = _entry_is_favorable(tracked, mark)
        else:
            favorable = _user_in_profit(user, mark)
        drifts.append(PositionDrift(
            coin=tracked.coin,
            drift_type=DriftType.SIZE_MISMATCH,
            tracked_position=tracked,
            user_position=user,
            is_favorable=favorable,
            scaled_target_size=target_size,
            size_diff_percent=abs(diff),
            current_price=mark,
            price_improvement=improvement,
        ))

    for user in user_positions:
        if user.coin in tracked_coins:
            continue
        drifts.append(PositionDrift(
            coin=user.coin,
            drift_type=DriftType.EXTRA,
            tracked_position=None,
            user_position=user,
            is_favorable=True,
            scaled_target_size=0.0,
            size_diff_percent=_allocation_pct(user, user_balance),
            current_price=user.mark_price,
        ))

    return DriftReport(drifts=drifts, timestamp_ms=ts)


class DriftDetector:
    """Holds an account's drift threshold and delegates to detect()."""

    def __init__(self, threshold_percent: float) -> None:
        if threshold_percent < 0:
            raise ValueError("threshold_percent must be >= 0")
        self.threshold_percent = threshold_percent

    def detect(
        self,
        tracked_positions: Sequence[Position],
        user_positions: Sequence[Position],
        tracked_balance: float,
        user_balance: float,
        now_ms: Optional[int] = None,
    ) -> DriftReport:
        return detect(
            tracked_positions,
            user_positions,
            tracked_balance,
            user_balance,
            self.threshold_percent,
            now_ms=now_ms,
        )

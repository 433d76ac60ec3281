"""
Hyperliquid rounding helpers aligned with official docs and example.

Sizes are quantized to the coin's szDecimals. Prices respect both the
5-significant-figure rule and the tick size inferred from the order book.
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP, getcontext
from typing import Optional, Sequence

# Increase precision to avoid intermediate rounding drift
getcontext().prec = 18

DEFAULT_TICK_SIZE = 0.01

# Largest first; inferred gaps snap to the first value they match.
CANONICAL_TICKS: tuple[float, ...] = (
    10.0, 5.0, 1.0, 0.5, 0.1, 0.05, 0.01, 0.005, 0.001,
    0.0005, 0.0001, 0.00005, 0.00001,
)
TICK_MATCH_TOLERANCE = 0.1


def _step(sz_decimals: int) -> Decimal:
    return Decimal(1).scaleb(-max(0, int(sz_decimals)))


def format_size(size: float, sz_decimals: int) -> str:
    """
    Render a size with exactly sz_decimals decimals, rounding half-up.

    format_size(1.23456, 2) -> "1.23"; format_size(0.005, 2) -> "0.01".
    """
    q = Decimal(str(size)).quantize(_step(sz_decimals), rounding=ROUND_HALF_UP)
    return f"{q:f}"


def quantize_size(size: float, sz_decimals: int) -> float:
    return float(format_size(size, sz_decimals))


def min_size_for_notional(min_value: float, price: float, sz_decimals: int) -> float:
    """Smallest quantized size whose value at price is at least min_value."""
    if price <= 0:
        raise ValueError("price must be > 0")
    raw = Decimal(str(min_value)) / Decimal(str(price))
    q = raw.quantize(_step(sz_decimals), rounding=ROUND_CEILING)
    # guard against binary float artifacts when the caller re-multiplies
    while float(q) * price < min_value:
        q += _step(sz_decimals)
    return float(q)


def snap_tick(raw_gap: float) -> float:
    """
    Snap an observed price gap to the canonical tick set.

    Picks the first canonical tick c (largest first) for which the gap is at
    least c or within 10% of c. Gaps below every canonical value map to the
    smallest one.
    """
    if raw_gap <= 0:
        return DEFAULT_TICK_SIZE
    for tick in CANONICAL_TICKS:
        if raw_gap >= tick or abs(raw_gap - tick) < tick * TICK_MATCH_TOLERANCE:
            return tick
    return CANONICAL_TICKS[-1]


def infer_tick_from_levels(prices: Sequence[float]) -> Optional[float]:
    """
    Smallest positive gap between adjacent levels, snapped to a canonical tick.

    Returns None when fewer than two distinct levels are available.
    """
    distinct = sorted({p for p in prices if p > 0})
    if len(distinct) < 2:
        return None
    gaps = [b - a for a, b in zip(distinct, distinct[1:]) if b - a > 0]
    if not gaps:
        return None
    return snap_tick(min(gaps))


def tick_to_decimals(tick: float) -> int:
    if tick <= 0:
        return 2
    s = f"{tick:.10f}".rstrip("0")
    if "." in s:
        return max(0, len(s.split(".")[1]))
    return 0


def round_price(px: float, sz_decimals: int, is_perp: bool = True) -> float:
    """
    Prices can have up to 5 significant figures, and at most
    (6 - szDecimals) decimals for perps, (8 - szDecimals) for spot.
    If px > 100_000, round to int.
    """
    if px > 100_000:
        return round(px)
    max_decimals = (6 - sz_decimals) if is_perp else (8 - sz_decimals)
    max_decimals = max(0, max_decimals)
    sig5 = float(f"{px:.5g}")
    return round(sig5, max_decimals)


def snap_to_tick(px: float, tick: float, side: str) -> float:
    """
    Snap price to a tick boundary.

    - sell: floor to tick (lower price)
    - buy: ceil to tick (higher price)
    """
    if tick <= 0:
        return px
    ratio = px / tick
    # tolerate float noise so an on-tick price is not pushed a full tick
    nearest = round(ratio)
    if abs(ratio - nearest) < 1e-9:
        return nearest * tick
    ticks = math.floor(ratio) if side == "sell" else math.ceil(ratio)
    return ticks * tick


def format_price(px: float, tick: float, sz_decimals: int, is_buy: bool) -> float:
    """Exchange-valid price: 5 sig figs, then tick aligned toward execution."""
    side = "buy" if is_buy else "sell"
    rounded = round_price(px, sz_decimals)
    snapped = snap_to_tick(rounded, tick, side)
    decimals = min(tick_to_decimals(tick), max(0, 6 - sz_decimals))
    return round(snapped, decimals)

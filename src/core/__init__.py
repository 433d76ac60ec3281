"""
Core package.

Domain models, rounding helpers and shared utilities.
"""

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
from src.core.rounding import format_size, round_price, snap_tick, snap_to_tick, tick_to_decimals
from src.core.utils import BoundedSet, now_ms

__all__ = [
    "Balance",
    "DriftReport",
    "DriftType",
    "OrderType",
    "Position",
    "PositionDrift",
    "SnapshotRecord",
    "TradeAction",
    "TradeRecord",
    "parse_positions",
    "format_size",
    "round_price",
    "snap_tick",
    "snap_to_tick",
    "tick_to_decimals",
    "BoundedSet",
    "now_ms",
]

"""
Domain types shared by the detector, gateway and orchestrator.

Positions and balances are parsed from the `clearinghouseState` info
payload. Drift reports and trade records are plain dataclasses; only
AccountState (see src/state/account_state.py) is ever persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from src.core.utils import now_ms, to_float, to_optional_float

LONG = "long"
SHORT = "short"


class DriftType(str, Enum):
    MISSING = "missing"
    EXTRA = "extra"
    SIDE_MISMATCH = "side_mismatch"
    SIZE_MISMATCH = "size_mismatch"


class OrderType(str, Enum):
    """Execution style chosen per account: IOC market-like or resting GTC limit."""
    MARKET = "market"
    LIMIT = "limit"


class TradeAction(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    ADD = "add"
    REDUCE = "reduce"
    REVERSE = "reverse"


@dataclass
class Position:
    coin: str
    side: str
    size: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float
    notional_value: float
    leverage: float = 1.0
    margin_used: float = 0.0
    liquidation_price: Optional[float] = None

    @property
    def is_long(self) -> bool:
        return self.side == LONG

    @property
    def close_is_buy(self) -> bool:
        """Closing a short buys; closing a long sells."""
        return not self.is_long

    @classmethod
    def from_asset_position(cls, entry: Dict[str, Any]) -> Optional["Position"]:
        """
        Parse one assetPositions[] element. Returns None for flat entries.

        Mark price is not reported directly; it is derived from
        positionValue / |szi|.
        """
        pos = entry.get("position", entry)
        szi = to_float(pos.get("szi"))
        if szi == 0:
            return None
        size = abs(szi)
        position_value = abs(to_float(pos.get("positionValue")))
        leverage = pos.get("leverage") or {}
        lev_value = to_float(leverage.get("value"), 1.0) if isinstance(leverage, dict) else to_float(leverage, 1.0)
        return cls(
            coin=str(pos.get("coin")),
            side=LONG if szi > 0 else SHORT,
            size=size,
            entry_price=to_float(pos.get("entryPx")),
            mark_price=position_value / size if size else 0.0,
            unrealized_pnl=to_float(pos.get("unrealizedPnl")),
            notional_value=position_value,
            leverage=lev_value,
            margin_used=to_float(pos.get("marginUsed")),
            liquidation_price=to_optional_float(pos.get("liquidationPx")),
        )


@dataclass
class Balance:
    account_value: float
    withdrawable: float = 0.0
    margin_used: float = 0.0

    @classmethod
    def from_user_state(cls, state: Dict[str, Any]) -> "Balance":
        summary = state.get("marginSummary") or {}
        return cls(
            account_value=to_float(summary.get("accountValue")),
            withdrawable=to_float(state.get("withdrawable")),
            margin_used=to_float(summary.get("totalMarginUsed")),
        )


def parse_positions(state: Dict[str, Any]) -> List[Position]:
    out: List[Position] = []
    for entry in state.get("assetPositions") or []:
        pos = Position.from_asset_position(entry)
        if pos is not None:
            out.append(pos)
    return out


@dataclass
class PositionDrift:
    coin: str
    drift_type: DriftType
    tracked_position: Optional[Position]
    user_position: Optional[Position]
    is_favorable: bool
    scaled_target_size: float
    size_diff_percent: float
    current_price: float = 0.0
    price_improvement: float = 0.0

    @property
    def is_entry(self) -> bool:
        """True when syncing this drift opens or grows exposure."""
        if self.drift_type in (DriftType.MISSING, DriftType.SIDE_MISMATCH):
            return True
        if self.drift_type == DriftType.SIZE_MISMATCH and self.user_position is not None:
            return self.user_position.size < self.scaled_target_size
        return False


@dataclass
class DriftReport:
    drifts: List[PositionDrift] = field(default_factory=list)
    timestamp_ms: int = field(default_factory=now_ms)

    @property
    def has_drift(self) -> bool:
        return bool(self.drifts)

    def by_type(self, drift_type: DriftType) -> List[PositionDrift]:
        return [d for d in self.drifts if d.drift_type == drift_type]


@dataclass
class TradeRecord:
    account_id: str
    coin: str
    action: str
    side: str
    size: float
    price: float
    timestamp_ms: int
    execution_latency_ms: float
    realized_pnl_estimate: float = 0.0
    source: str = "sync"
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SnapshotRecord:
    account_id: str
    tracked_balance: float
    user_balance: float
    balance_ratio: float
    tracked_positions: List[Position]
    user_positions: List[Position]
    timestamp_ms: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

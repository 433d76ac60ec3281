"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import the `src` package.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from src.core.models import LONG, Position  # noqa: E402


def position(
    coin: str,
    side: str = LONG,
    size: float = 1.0,
    entry: float = 100.0,
    mark: float = 100.0,
    pnl: float = None,
) -> Position:
    """Build a Position whose notional and PnL follow from size, entry and mark."""
    if pnl is None:
        pnl = (mark - entry) * size if side == LONG else (entry - mark) * size
    return Position(
        coin=coin,
        side=side,
        size=size,
        entry_price=entry,
        mark_price=mark,
        unrealized_pnl=pnl,
        notional_value=size * mark,
    )


def user_state(account_value: float, positions=()) -> dict:
    """clearinghouseState payload as returned by the info endpoint."""
    asset_positions = []
    for p in positions:
        szi = p.size if p.side == LONG else -p.size
        asset_positions.append({
            "type": "oneWay",
            "position": {
                "coin": p.coin,
                "szi": str(szi),
                "entryPx": str(p.entry_price),
                "positionValue": str(p.notional_value),
                "unrealizedPnl": str(p.unrealized_pnl),
                "leverage": {"type": "cross", "value": 5},
                "marginUsed": "0",
                "liquidationPx": None,
            },
        })
    return {
        "marginSummary": {"accountValue": str(account_value), "totalMarginUsed": "0"},
        "withdrawable": str(account_value),
        "assetPositions": asset_positions,
    }


@pytest.fixture
def make_position():
    return position


@pytest.fixture
def make_user_state():
    return user_state



"""
Tests for parsing exchange payloads into domain models.
"""

import pytest

from src.core.models import (
    Balance,
    DriftType,
    Position,
    PositionDrift,
    TradeRecord,
    parse_positions,
)
from src.core.utils import BoundedSet, to_float


class TestPositionParsing:

    def test_long_position(self):
        entry = {
            "type": "oneWay",
            "position": {
                "coin": "BTC",
                "szi": "0.5",
                "entryPx": "60000",
                "positionValue": "31000",
                "unrealizedPnl": "1000",
                "leverage": {"type": "cross", "value": 10},
                "marginUsed": "3100",
                "liquidationPx": "40000",
            },
        }
        pos = Position.from_asset_position(entry)
        assert pos.coin == "BTC"
        assert pos.is_long
        assert not pos.close_is_buy
        assert pos.size == 0.5
        assert pos.mark_price == pytest.approx(62000.0)
        assert pos.notional_value == 31000.0
        assert pos.leverage == 10
        assert pos.liquidation_price == 40000.0

    def test_short_position_has_positive_size(self):
        pos = Position.from_asset_position({"position": {"coin": "ETH", "szi": "-2", "positionValue": "6000"}})
        assert pos.side == "short"
        assert pos.size == 2.0
        assert pos.close_is_buy
        assert pos.mark_price == pytest.approx(3000.0)
        assert pos.liquidation_price is None

    def test_flat_entries_are_skipped(self, make_user_state):
        state = make_user_state(1000)
        state["assetPositions"] = [{"position": {"coin": "SOL", "szi": "0.0"}}]
        assert parse_positions(state) == []

    def test_parse_positions_round_trips_fixture(self, make_user_state, make_position):
        held = [make_position("BTC", size=1, entry=100, mark=110), make_position("ETH", side="short", size=3, mark=50)]
        parsed = parse_positions(make_user_state(5000, held))
        assert [(p.coin, p.side, p.size) for p in parsed] == [("BTC", "long", 1.0), ("ETH", "short", 3.0)]


class TestBalance:

    def test_from_user_state(self):
        bal = Balance.from_user_state({
            "marginSummary": {"accountValue": "1234.5", "totalMarginUsed": "200"},
            "withdrawable": "1000",
        })
        assert bal.account_value == 1234.5
        assert bal.margin_used == 200.0
        assert bal.withdrawable == 1000.0

    def test_missing_fields_default_to_zero(self):
        assert Balance.from_user_state({}).account_value == 0.0


class TestDriftAndRecords:

    def test_extra_is_not_entry(self, make_position):
        drift = PositionDrift(
            coin="BTC",
            drift_type=DriftType.EXTRA,
            tracked_position=None,
            user_position=make_position("BTC"),
            is_favorable=True,
            scaled_target_size=0.0,
            size_diff_percent=10.0,
        )
        assert not drift.is_entry

    def test_trade_record_to_dict(self):
        rec = TradeRecord(
            account_id="main", coin="BTC", action="open", side="long",
            size=0.1, price=100.0, timestamp_ms=1, execution_latency_ms=12.5,
        )
        data = rec.to_dict()
        assert data["account_id"] == "main"
        assert data["source"] == "sync"
        assert data["reason"] is None


class TestUtils:

    def test_to_float(self):
        assert to_float("1.5") == 1.5
        assert to_float(None) == 0.0
        assert to_float("", 2.0) == 2.0
        assert to_float("abc") == 0.0

    def test_bounded_set_evicts_oldest(self):
        seen = BoundedSet(maxlen=2)
        assert seen.add("a")
        assert seen.add("b")
        assert not seen.add("a")
        assert seen.add("c")
        assert "a" not in seen
        assert "b" in seen and "c" in seen
        assert len(seen) == 2

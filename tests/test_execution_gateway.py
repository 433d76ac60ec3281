"""
Tests for ExchangeGateway - quantized order placement for one account.

Tests cover:
- Market orders with slippage escalation on no-match
- Max-slippage fallback
- Non-retryable rejections
- Reduce-only time-in-force and direction
- Minimum notional upscaling and size quantization
- Pre-network failures (unknown coin, no signing client)
- Resting market orders cancelled after a short window
- Limit mode and stale order cleanup
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.core.models import LONG, SHORT, OrderType
from src.execution.errors import (
    ClientNotInitializedError,
    GatewayError,
    InvalidOrderError,
    OrderRejectedError,
    UnknownCoinError,
)
from src.execution.execution_gateway import (
    TIF_GTC,
    TIF_IOC,
    ExchangeGateway,
    ExchangeGatewayConfig,
    is_no_match_error,
    slippage_for_attempt,
    slipped_price,
)
from src.market_data.meta_cache import CoinMeta
from src.monitoring.metrics import CopyMetrics


def filled(sz="0.5", px="100.2", oid=1):
    return {"status": "ok", "response": {"type": "order", "data": {
        "statuses": [{"filled": {"totalSz": sz, "avgPx": px, "oid": oid}}]}}}


def resting(oid=7):
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": oid}}]}}}


def error(msg):
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [{"error": msg}]}}}


NO_MATCH = error("Order could not immediately match against any resting orders. asset=0")


@pytest.fixture
def exchange():
    ex = MagicMock()
    ex.order = AsyncMock(return_value=filled())
    ex.cancel = AsyncMock(return_value={"status": "ok", "response": {"type": "cancel", "data": {"statuses": ["success"]}}})
    return ex


@pytest.fixture
def info():
    i = MagicMock()
    i.all_mids = AsyncMock(return_value={"BTC": "100.0"})
    i.open_orders = AsyncMock(return_value=[])
    return i


@pytest.fixture
def meta():
    m = MagicMock()
    table = {"BTC": CoinMeta(index=0, sz_decimals=2)}
    m.get_nowait = MagicMock(side_effect=table.get)
    return m


@pytest.fixture
def ticks():
    t = MagicMock()
    t.get = AsyncMock(return_value=0.01)
    return t


@pytest.fixture
def metrics():
    return CopyMetrics()


@pytest.fixture
def gateway(exchange, info, meta, ticks, metrics):
    events = []
    gw = ExchangeGateway(
        "main",
        exchange,
        info,
        meta,
        ticks,
        config=ExchangeGatewayConfig(
            resting_timeout_sec=0,
            log_event_callback=lambda e, **kw: events.append((e, kw)),
        ),
        metrics=metrics,
        account_address="0xvault",
    )
    gw.events = events
    return gw


def _call(exchange, idx=-1):
    args, kwargs = exchange.order.call_args_list[idx]
    coin, is_buy, sz, px, order_type = args
    return coin, is_buy, sz, px, order_type, kwargs["reduce_only"]


class TestHelpers:

    def test_slippage_ladder(self):
        assert [slippage_for_attempt(k, 0.5, 0.5) for k in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_slipped_price_direction(self):
        assert slipped_price(100, 1.0, is_buy=True) == pytest.approx(101.0)
        assert slipped_price(100, 1.0, is_buy=False) == pytest.approx(99.0)

    def test_no_match_detection(self):
        assert is_no_match_error("Order could not immediately match against any resting orders.")
        assert not is_no_match_error("Insufficient margin to place order.")
        assert not is_no_match_error(None)


class TestMarketOrders:

    @pytest.mark.asyncio
    async def test_open_long_first_attempt(self, gateway, exchange):
        result = await gateway.open_long("BTC", 0.5, reference_px=100.0)

        assert result.success
        assert result.attempts == 1
        assert result.status == "filled"
        assert result.execution_price == pytest.approx(100.2)
        coin, is_buy, sz, px, order_type, reduce_only = _call(exchange)
        assert (coin, is_buy, sz, reduce_only) == ("BTC", True, 0.5, False)
        assert px == pytest.approx(100.5)
        assert order_type == TIF_IOC

    @pytest.mark.asyncio
    async def test_open_short_slips_down(self, gateway, exchange):
        await gateway.open_position("BTC", 0.5, SHORT, reference_px=100.0)
        _, is_buy, _, px, _, _ = _call(exchange)
        assert not is_buy
        assert px == pytest.approx(99.5)

    @pytest.mark.asyncio
    async def test_no_match_retries_with_wider_slippage(self, gateway, exchange, metrics):
        exchange.order.side_effect = [NO_MATCH, filled()]
        result = await gateway.add_to_position("BTC", 0.5, LONG, reference_px=100.0)

        assert result.attempts == 2
        assert not result.fallback_used
        assert _call(exchange, 0)[3] == pytest.approx(100.5)
        assert _call(exchange, 1)[3] == pytest.approx(101.0)
        assert metrics.registry.get_sample_value(
            "copy_order_retries_total", {"account": "main", "coin": "BTC"}) == 1.0

    @pytest.mark.asyncio
    async def test_fallback_after_exhausting_attempts(self, gateway, exchange):
        exchange.order.side_effect = [NO_MATCH, NO_MATCH, NO_MATCH, resting()]
        result = await gateway.open_long("BTC", 0.5, reference_px=100.0)

        assert exchange.order.await_count == 4
        assert result.fallback_used
        assert result.attempts == 4
        assert result.status == "cancelled"
        assert not result.success
        assert result.oid == 7
        exchange.cancel.assert_awaited_once_with("BTC", 7)
        _, _, _, px, order_type, _ = _call(exchange)
        assert px == pytest.approx(103.0)
        assert order_type == TIF_GTC

    @pytest.mark.asyncio
    async def test_fallback_rejection_raises(self, gateway, exchange, metrics):
        exchange.order.side_effect = [NO_MATCH] * 4
        with pytest.raises(OrderRejectedError) as exc_info:
            await gateway.open_long("BTC", 0.5, reference_px=100.0)
        assert exc_info.value.fallback_used
        assert exc_info.value.attempts == 4
        assert metrics.registry.get_sample_value(
            "copy_orders_rejected_total", {"account": "main", "coin": "BTC"}) == 1.0

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, gateway, exchange):
        exchange.order.return_value = error("Insufficient margin to place order.")
        with pytest.raises(OrderRejectedError) as exc_info:
            await gateway.open_long("BTC", 0.5, reference_px=100.0)
        assert exchange.order.await_count == 1
        assert exc_info.value.exchange_error == "Insufficient margin to place order."

    @pytest.mark.asyncio
    async def test_top_level_error_response(self, gateway, exchange):
        exchange.order.return_value = {"status": "err", "response": "User or API Wallet does not exist."}
        with pytest.raises(OrderRejectedError):
            await gateway.open_long("BTC", 0.5, reference_px=100.0)

    @pytest.mark.asyncio
    async def test_close_is_reduce_only_gtc_opposite_side(self, gateway, exchange):
        await gateway.close_position("BTC", 0.5, LONG, reference_px=100.0)
        _, is_buy, _, px, order_type, reduce_only = _call(exchange)
        assert not is_buy
        assert reduce_only
        assert order_type == TIF_GTC
        assert px == pytest.approx(99.5)

    @pytest.mark.asyncio
    async def test_reduce_short_buys(self, gateway, exchange):
        await gateway.reduce_position("BTC", 0.25, SHORT, reference_px=100.0)
        _, is_buy, sz, _, _, reduce_only = _call(exchange)
        assert is_buy and reduce_only
        assert sz == 0.25

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, gateway, exchange):
        exchange.order.side_effect = ConnectionError("reset")
        with pytest.raises(GatewayError):
            await gateway.open_long("BTC", 0.5, reference_px=100.0)


class TestRestingMarketOrders:

    @pytest.mark.asyncio
    async def test_resting_close_is_cancelled_after_window(self, gateway, exchange):
        gateway.config.resting_timeout_sec = 0.01
        exchange.order.return_value = resting(oid=7)
        result = await gateway.close_position("BTC", 0.5, LONG, reference_px=100.0)

        exchange.cancel.assert_awaited_once_with("BTC", 7)
        assert result.status == "cancelled"
        assert not result.success
        assert not result.is_filled
        assert any(e == "resting_order_cancelled" for e, _ in gateway.events)

    @pytest.mark.asyncio
    async def test_refused_cancel_means_filled(self, gateway, exchange):
        exchange.order.return_value = resting(oid=9)
        exchange.cancel.return_value = {"status": "ok", "response": {"type": "cancel", "data": {
            "statuses": [{"error": "Order was never placed, already canceled, or filled. asset=0"}]}}}
        result = await gateway.reduce_position("BTC", 0.5, SHORT, reference_px=100.0)

        assert result.success
        assert result.is_filled
        assert result.filled_size == 0.5

    @pytest.mark.asyncio
    async def test_cancel_error_leaves_resting(self, gateway, exchange):
        exchange.order.return_value = resting(oid=9)
        exchange.cancel.side_effect = ConnectionError("reset")
        result = await gateway.close_position("BTC", 0.5, LONG, reference_px=100.0)

        assert result.status == "resting"
        assert any(e == "resting_cancel_error" for e, _ in gateway.events)

    @pytest.mark.asyncio
    async def test_filled_order_is_not_cancelled(self, gateway, exchange):
        result = await gateway.close_position("BTC", 0.5, LONG, reference_px=100.0)
        assert result.is_filled
        exchange.cancel.assert_not_awaited()


class TestSizingAndPricing:

    @pytest.mark.asyncio
    async def test_size_quantized_to_decimals(self, gateway, exchange):
        await gateway.open_long("BTC", 0.123456, reference_px=100.0)
        assert _call(exchange)[2] == 0.12

    @pytest.mark.asyncio
    async def test_upscales_to_min_notional(self, gateway, exchange):
        await gateway.open_long("BTC", 0.05, reference_px=100.0)
        assert _call(exchange)[2] == 0.1
        assert any(e == "order_upscaled_min_notional" for e, _ in gateway.events)

    @pytest.mark.asyncio
    async def test_size_rounding_to_zero_is_invalid(self, gateway, exchange):
        with pytest.raises(InvalidOrderError):
            await gateway.open_long("BTC", 0.001, reference_px=100.0)
        exchange.order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reference_from_mids(self, gateway, exchange, info):
        await gateway.open_long("BTC", 0.5)
        info.all_mids.assert_awaited_once()
        assert _call(exchange)[3] == pytest.approx(100.5)

    @pytest.mark.asyncio
    async def test_missing_mid_raises(self, gateway, info):
        info.all_mids.return_value = {}
        with pytest.raises(GatewayError):
            await gateway.open_long("BTC", 0.5)


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_unknown_coin_fails_before_network(self, gateway, exchange, info):
        with pytest.raises(UnknownCoinError):
            await gateway.open_long("NOPE", 1.0, reference_px=1.0)
        exchange.order.assert_not_awaited()
        info.all_mids.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_signing_client(self, info, meta, ticks):
        gw = ExchangeGateway("readonly", None, info, meta, ticks)
        with pytest.raises(ClientNotInitializedError):
            await gw.open_long("BTC", 1.0, reference_px=100.0)
        with pytest.raises(ClientNotInitializedError):
            await gw.cancel_open_orders()


class TestLimitMode:

    @pytest.mark.asyncio
    async def test_single_gtc_at_reference(self, gateway, exchange):
        gateway.order_type = OrderType.LIMIT
        exchange.order.return_value = resting()
        result = await gateway.open_long("BTC", 0.5, reference_px=100.0)

        assert exchange.order.await_count == 1
        assert result.status == "resting"
        exchange.cancel.assert_not_awaited()
        _, _, _, px, order_type, _ = _call(exchange)
        assert px == pytest.approx(100.0)
        assert order_type == TIF_GTC

    @pytest.mark.asyncio
    async def test_limit_rejection_not_retried(self, gateway, exchange):
        gateway.order_type = OrderType.LIMIT
        exchange.order.return_value = NO_MATCH
        with pytest.raises(OrderRejectedError):
            await gateway.open_long("BTC", 0.5, reference_px=100.0)
        assert exchange.order.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_open_orders(self, gateway, exchange, info):
        info.open_orders.return_value = [
            {"coin": "BTC", "oid": 11, "side": "B", "limitPx": "99", "sz": "0.5"},
            {"coin": "ETH", "oid": 12, "side": "A", "limitPx": "3000", "sz": "1"},
        ]
        assert await gateway.cancel_open_orders() == 2
        info.open_orders.assert_awaited_with("0xvault")

        exchange.cancel.reset_mock()
        assert await gateway.cancel_open_orders("ETH") == 1
        exchange.cancel.assert_awaited_once_with("ETH", 12)

    @pytest.mark.asyncio
    async def test_cancel_failure_counts_nothing(self, gateway, exchange, info):
        info.open_orders.return_value = [{"coin": "BTC", "oid": 11}]
        exchange.cancel.side_effect = RuntimeError("timeout")
        assert await gateway.cancel_open_orders() == 0

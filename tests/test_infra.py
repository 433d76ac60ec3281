"""
Tests for the info client, exchange wrapper, logging filters and record sink.
"""

import json
import logging

import httpx
import pytest

from src.core.models import TradeRecord
from src.infra.async_execution import AsyncExchange
from src.infra.async_info import AsyncInfo
from src.infra.logging_cfg import ThrottledFilter, log_event
from src.monitoring.metrics import CopyMetrics, start_metrics_server
from src.monitoring.records import RecordSink


def _info_with(handler):
    client = httpx.AsyncClient(base_url="https://api.test", transport=httpx.MockTransport(handler))
    return AsyncInfo("https://api.test", client=client), client


class TestAsyncInfo:

    @pytest.mark.asyncio
    async def test_user_state_posts_clearinghouse_request(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"marginSummary": {"accountValue": "10"}, "assetPositions": []})

        info, client = _info_with(handler)
        state = await info.user_state("0xabc")
        await client.aclose()

        assert seen == [{"type": "clearinghouseState", "user": "0xabc"}]
        assert state["marginSummary"]["accountValue"] == "10"

    @pytest.mark.asyncio
    async def test_all_mids_unwrapped(self):
        def handler(request):
            return httpx.Response(200, json={"status": "ok", "response": {"data": {"allMids": {"BTC": "100"}}}})

        info, client = _info_with(handler)
        assert await info.all_mids() == {"BTC": "100"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        info, client = _info_with(lambda request: httpx.Response(500))
        with pytest.raises(httpx.HTTPStatusError):
            await info.meta()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self):
        info, client = _info_with(lambda request: httpx.Response(200, json=[]))
        await info.close()
        assert not client.is_closed
        await client.aclose()


class FakeExchange:
    def __init__(self, fail_times=0):
        self.orders = []
        self.cancels = 0
        self.fail_times = fail_times

    def order(self, coin, is_buy, sz, limit_px, order_type, reduce_only=False):
        self.orders.append((coin, is_buy, sz, limit_px, order_type, reduce_only))
        raise ConnectionError("reset")

    def cancel(self, coin, oid):
        self.cancels += 1
        if self.cancels <= self.fail_times:
            raise ConnectionError("reset")
        return {"status": "ok"}


class TestAsyncExchange:

    @pytest.mark.asyncio
    async def test_order_is_sent_once(self):
        fake = FakeExchange()
        ex = AsyncExchange(fake)
        with pytest.raises(ConnectionError):
            await ex.order("BTC", True, 0.1, 100.0, {"limit": {"tif": "Ioc"}}, reduce_only=False)
        assert len(fake.orders) == 1
        await ex.close()

    @pytest.mark.asyncio
    async def test_cancel_retries(self):
        fake = FakeExchange(fail_times=1)
        ex = AsyncExchange(fake)
        assert await ex.cancel("BTC", 1) == {"status": "ok"}
        assert fake.cancels == 2
        await ex.close()


class TestLogging:

    def _record(self, payload):
        return logging.LogRecord("copybot", logging.WARNING, __file__, 1, json.dumps(payload), None, None)

    def test_throttles_repeated_event_per_key(self):
        f = ThrottledFilter(cooldown_sec=60)
        assert f.filter(self._record({"event": "stream_stale", "wallet": "0xa"}))
        assert not f.filter(self._record({"event": "stream_stale", "wallet": "0xa"}))
        assert f.filter(self._record({"event": "stream_stale", "wallet": "0xb"}))

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60)
        assert f.filter(self._record({"event": "trade_executed"}))
        assert f.filter(self._record({"event": "trade_executed"}))
        assert f.filter(logging.LogRecord("copybot", logging.INFO, __file__, 1, "plain text", None, None))

    def test_log_event_serializes(self, caplog):
        logger = logging.getLogger("copybot.test")
        with caplog.at_level(logging.INFO, logger="copybot.test"):
            log_event(logger, "poll_complete", account="main", trades=2)
        assert json.loads(caplog.records[-1].getMessage()) == {"event": "poll_complete", "account": "main", "trades": 2}

    @pytest.mark.parametrize("event,level", [
        ("stream_reconnect_exhausted", logging.CRITICAL),
        ("reverse_skipped", logging.ERROR),
        ("order_not_filled", logging.WARNING),
        ("trade_executed", logging.INFO),
    ])
    def test_log_event_level_follows_event(self, caplog, event, level):
        logger = logging.getLogger("copybot.test")
        with caplog.at_level(logging.DEBUG, logger="copybot.test"):
            log_event(logger, event, coin="BTC")
        assert caplog.records[-1].levelno == level

    def test_log_event_explicit_level_wins(self, caplog):
        logger = logging.getLogger("copybot.test")
        with caplog.at_level(logging.DEBUG, logger="copybot.test"):
            log_event(logger, "stream_stale", level=logging.DEBUG)
        assert caplog.records[-1].levelno == logging.DEBUG


class TestRecords:

    def test_trade_record_line(self, caplog):
        sink = RecordSink(logging.getLogger("copybot.records.test"))
        rec = TradeRecord(account_id="main", coin="BTC", action="open", side="long",
                          size=0.1, price=100.0, timestamp_ms=1, execution_latency_ms=5.0)
        with caplog.at_level(logging.INFO, logger="copybot.records.test"):
            sink.trade(rec)
        line = json.loads(caplog.records[-1].getMessage())
        assert line["event"] == "trade"
        assert line["coin"] == "BTC"


class TestMetrics:

    def test_exporter_disabled_on_port_zero(self):
        assert not start_metrics_server(CopyMetrics(), 0)

    def test_independent_registries(self):
        a, b = CopyMetrics(), CopyMetrics()
        a.trades_executed.labels(account="main", action="open", source="sync").inc()
        assert a.registry.get_sample_value(
            "copy_trades_executed_total", {"account": "main", "action": "open", "source": "sync"}) == 1.0
        assert b.registry.get_sample_value(
            "copy_trades_executed_total", {"account": "main", "action": "open", "source": "sync"}) is None

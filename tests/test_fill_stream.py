"""
Tests for FillStreamConnector - tracked wallet fills over WebSocket.

Tests cover:
- Subscription on connect
- Snapshot discard (flagged and unflagged first batch)
- De-duplication across batches
- Bounded queue overflow
- Backoff schedule and reconnect exhaustion
- Stale connection detection and ping
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from websockets.exceptions import ConnectionClosedOK

from src.core.json_utils import dumps, loads
from src.core.utils import now_ms
from src.market_data.fill_stream import (
    FillStreamConfig,
    FillStreamConnector,
    StreamState,
    backoff_delay,
    fill_key,
)

WALLET = "0xTracked"


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        self.sent.append(loads(data))

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True

    def feed(self, msg):
        self.incoming.put_nowait(dumps(msg))


def fills_msg(fills, user=WALLET, snapshot=None):
    data = {"user": user, "fills": fills}
    if snapshot is not None:
        data["isSnapshot"] = snapshot
    return {"channel": "userFills", "data": data}


def fill(tid, t=None, coin="BTC"):
    return {"coin": coin, "px": "100.0", "sz": "0.1", "side": "B", "time": t if t is not None else now_ms() + 1_000,
            "dir": "Open Long", "closedPnl": "0.0", "hash": f"0x{tid}", "oid": tid, "tid": tid}


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestHelpers:

    @pytest.mark.parametrize("failures,delay", [(0, 5), (1, 5), (2, 10), (3, 30), (5, 300), (9, 300)])
    def test_backoff_is_clamped(self, failures, delay):
        assert backoff_delay(failures, (5, 10, 30, 60, 300)) == delay

    def test_fill_key_prefers_tid(self):
        assert fill_key({"tid": 5, "hash": "0xa"}) == "tid:5"
        assert fill_key({"hash": "0xa", "oid": 1, "time": 2, "px": "3", "sz": "4"}) == "0xa:1:2:3:4"


class TestMessageHandling:

    @pytest.fixture
    def connector(self):
        queue = asyncio.Queue(maxsize=100)
        c = FillStreamConnector(WALLET, queue, FillStreamConfig(url="ws://test"))
        c._on_connected(FakeWebSocket())
        return c

    def _drain(self, queue):
        out = []
        while not queue.empty():
            out.append(queue.get_nowait())
        return out

    def test_flagged_snapshot_is_discarded(self, connector):
        connector.handle_message(dumps(fills_msg([fill(1), fill(2)], snapshot=True)))
        assert connector.queue.empty()
        assert connector.stats().snapshots_discarded == 1

        # the same fills replayed live are duplicates
        connector.handle_message(dumps(fills_msg([fill(2), fill(3)])))
        assert [f.tid for f in self._drain(connector.queue)] == [3]
        assert connector.stats().duplicates_skipped == 1

    def test_unflagged_first_batch_drops_history(self, connector):
        old = fill(1, t=connector.stats().connected_at_ms - 60_000)
        new = fill(2)
        connector.handle_message(dumps(fills_msg([old, new])))
        assert [f.tid for f in self._drain(connector.queue)] == [2]

        # only the first batch is filtered by time
        late = fill(3, t=connector.stats().connected_at_ms - 1)
        connector.handle_message(dumps(fills_msg([late])))
        assert [f.tid for f in self._drain(connector.queue)] == [3]

    def test_parses_fill_fields(self, connector):
        connector.handle_message(dumps(fills_msg([fill(9, coin="ETH")])))
        got = connector.queue.get_nowait()
        assert got.wallet == WALLET
        assert got.coin == "ETH"
        assert got.px == 100.0
        assert got.sz == 0.1
        assert got.direction == "Open Long"

    def test_other_wallets_and_channels_ignored(self, connector):
        connector.handle_message(dumps(fills_msg([fill(1)], user="0xsomeoneelse")))
        connector.handle_message(dumps({"channel": "pong"}))
        connector.handle_message(dumps({"channel": "subscriptionResponse", "data": {}}))
        connector.handle_message(dumps({"channel": "error", "data": "bad sub"}))
        connector.handle_message("not json")
        assert connector.queue.empty()

    def test_wallet_match_is_case_insensitive(self, connector):
        connector.handle_message(dumps(fills_msg([fill(1)], user=WALLET.lower())))
        assert connector.queue.qsize() == 1

    def test_full_queue_drops_fill(self):
        queue = asyncio.Queue(maxsize=1)
        c = FillStreamConnector(WALLET, queue, FillStreamConfig(url="ws://test"))
        c._on_connected(FakeWebSocket())
        c.handle_message(dumps(fills_msg([fill(1), fill(2)])))
        assert queue.qsize() == 1
        assert c.stats().fills_dropped == 1
        assert c.stats().fills_received == 2


class TestConnectionLifecycle:

    @pytest.mark.asyncio
    async def test_subscribes_and_delivers_fills(self):
        ws = FakeWebSocket()
        queue = asyncio.Queue()
        c = FillStreamConnector(WALLET, queue, FillStreamConfig(url="ws://test"), connect=AsyncMock(return_value=ws))
        await c.start()
        try:
            await wait_until(lambda: c.state == StreamState.CONNECTED and ws.sent)
            assert ws.sent[0] == {"method": "subscribe", "subscription": {"type": "userFills", "user": WALLET}}

            ws.feed(fills_msg([fill(1)]))
            got = await asyncio.wait_for(queue.get(), timeout=1.0)
            assert got.tid == 1
        finally:
            await c.stop()
        assert ws.closed
        assert c.state == StreamState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_exhaustion_alerts_once(self):
        delays = []

        async def fake_sleep(d):
            delays.append(d)
            await asyncio.sleep(0)

        on_exhausted = AsyncMock()
        connect = AsyncMock(side_effect=OSError("refused"))
        c = FillStreamConnector(
            WALLET,
            asyncio.Queue(),
            FillStreamConfig(url="ws://test", max_consecutive_failures=3),
            on_exhausted=on_exhausted,
            connect=connect,
            sleep=fake_sleep,
        )
        await c.start()
        await asyncio.wait_for(c.wait_stopped(), timeout=1.0)

        assert c.state == StreamState.FAILED
        assert connect.await_count == 3
        assert delays == [5.0, 10.0]
        on_exhausted.assert_awaited_once_with(WALLET, 3)

    @pytest.mark.asyncio
    async def test_closed_connection_reconnects(self):
        sockets = [FakeWebSocket(), FakeWebSocket()]
        connect = AsyncMock(side_effect=sockets + [FakeWebSocket() for _ in range(5)])
        c = FillStreamConnector(
            WALLET,
            asyncio.Queue(),
            FillStreamConfig(url="ws://test", backoff_schedule=(0.01,)),
            connect=connect,
        )
        await c.start()
        try:
            await wait_until(lambda: c.state == StreamState.CONNECTED)
            sockets[0].incoming.put_nowait(ConnectionClosedOK(None, None))
            await wait_until(lambda: connect.await_count >= 2 and c.state == StreamState.CONNECTED)
            assert sockets[0].closed
            assert c.stats().consecutive_failures == 0
            assert c.stats().total_reconnects == 1
        finally:
            await c.stop()

    @pytest.mark.asyncio
    async def test_stale_connection_is_recycled(self):
        sockets = [FakeWebSocket() for _ in range(10)]
        connect = AsyncMock(side_effect=sockets)
        c = FillStreamConnector(
            WALLET,
            asyncio.Queue(),
            FillStreamConfig(url="ws://test", health_check_interval=0.01, stale_after=0.05, backoff_schedule=(0.01,)),
            connect=connect,
        )
        await c.start()
        try:
            await wait_until(lambda: connect.await_count >= 2)
            first = sockets[0]
            assert first.closed
            assert {"method": "ping"} in first.sent
        finally:
            await c.stop()

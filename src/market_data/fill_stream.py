"""
Fill stream connector: live fills of one tracked wallet over WebSocket.

Lifecycle:
    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...
    FAILED once consecutive failures reach the limit (alerted once).

Liveness: while connected, a monitor wakes every health_check_interval,
sends an application-level ping and checks the last frame received (pongs
count). No frame within stale_after marks the connection stale; it is torn
down and reconnected even though the transport reported no error.

Snapshots: the server replays recent fills on subscribe. Batches flagged
isSnapshot are dropped. The first batch on a connection that is not flagged
is still filtered to fills newer than the connection time, and every fill is
de-duplicated by tid across reconnects.

Fills are handed to a bounded asyncio.Queue with put_nowait; a full queue
drops the fill instead of blocking the receive loop.

Usage:
    queue = asyncio.Queue(maxsize=1000)
    stream = FillStreamConnector(wallet, queue, FillStreamConfig(url=ws_url))
    await stream.start()
    ...
    await stream.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from src.core.json_utils import dumps, loads
from src.core.utils import BoundedSet, now_ms, to_float
from src.infra.logging_cfg import log_event

log = logging.getLogger("copybot")

MAINNET_WS_URL = "wss://api.hyperliquid.xyz/ws"
TESTNET_WS_URL = "wss://api.hyperliquid-testnet.xyz/ws"

PING_MESSAGE = {"method": "ping"}


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class FillStreamConfig:
    url: str = MAINNET_WS_URL
    backoff_schedule: Tuple[float, ...] = (5.0, 10.0, 30.0, 60.0, 300.0)
    max_consecutive_failures: int = 10
    health_check_interval: float = 15.0
    stale_after: float = 45.0
    connect_timeout: float = 30.0
    dedup_size: int = 5000
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class TrackedFill:
    wallet: str
    coin: str
    side: str
    px: float
    sz: float
    time_ms: int
    tid: Optional[int] = None
    direction: Optional[str] = None
    closed_pnl: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_ws(cls, wallet: str, fill: Dict[str, Any]) -> "TrackedFill":
        return cls(
            wallet=wallet,
            coin=str(fill.get("coin")),
            side=str(fill.get("side")),
            px=to_float(fill.get("px")),
            sz=to_float(fill.get("sz")),
            time_ms=int(fill.get("time") or 0),
            tid=fill.get("tid"),
            direction=fill.get("dir"),
            closed_pnl=to_float(fill.get("closedPnl")),
            raw=fill,
        )


@dataclass
class ConnectionStats:
    wallet: str
    state: StreamState
    connected_at_ms: Optional[int] = None
    last_message_at_ms: Optional[int] = None
    last_fill_at_ms: Optional[int] = None
    consecutive_failures: int = 0
    total_reconnects: int = 0
    fills_received: int = 0
    fills_dropped: int = 0
    duplicates_skipped: int = 0
    snapshots_discarded: int = 0
    last_error: Optional[str] = None


def backoff_delay(failures: int, schedule: Tuple[float, ...]) -> float:
    """Delay before the next attempt after `failures` consecutive failures (clamped)."""
    idx = min(max(failures, 1), len(schedule)) - 1
    return schedule[idx]


def fill_key(fill: Dict[str, Any]) -> str:
    tid = fill.get("tid")
    if tid is not None:
        return f"tid:{tid}"
    return f"{fill.get('hash')}:{fill.get('oid')}:{fill.get('time')}:{fill.get('px')}:{fill.get('sz')}"


async def _default_connect(url: str) -> Any:
    # liveness is handled with application pings, not protocol pings
    return await websockets.connect(url, ping_interval=None, max_size=2 ** 22)


class FillStreamConnector:
    def __init__(
        self,
        tracked_wallet: str,
        queue: "asyncio.Queue[TrackedFill]",
        config: Optional[FillStreamConfig] = None,
        on_exhausted: Optional[Callable[[str, int], Any]] = None,
        connect: Callable[[str], Awaitable[Any]] = _default_connect,
        metrics: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.wallet = tracked_wallet
        self.queue = queue
        self.config = config or FillStreamConfig()
        self._on_exhausted = on_exhausted
        self._connect = connect
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._log_event = self.config.log_event_callback or self._default_log

        self._state = StreamState.DISCONNECTED
        self._stats = ConnectionStats(wallet=tracked_wallet, state=self._state)
        self._failures = 0
        self._exhausted_alerted = False
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self._ws: Optional[Any] = None
        self._last_frame = 0.0
        self._connected_at_ms = 0
        self._first_batch_pending = False
        self._seen = BoundedSet(maxlen=self.config.dedup_size)

    def _default_log(self, event: str, **kw: Any) -> None:
        log_event(log, event, wallet=self.wallet, **kw)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    def stats(self) -> ConnectionStats:
        self._stats.state = self._state
        self._stats.consecutive_failures = self._failures
        return ConnectionStats(**self._stats.__dict__)

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping = False
        self._failures = 0
        self._exhausted_alerted = False
        self._task = asyncio.create_task(self._run(), name=f"fill-stream-{self.wallet[:10]}")

    async def stop(self) -> None:
        self._stopping = True
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._close_ws()
        self._set_state(StreamState.DISCONNECTED)

    async def wait_stopped(self) -> None:
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)

    async def force_reconnect(self) -> None:
        """Drop the current connection; the supervisor reconnects."""
        await self._close_ws()

    def _set_state(self, state: StreamState) -> None:
        if state != self._state:
            self._log_event("stream_state", old=self._state.value, new=state.value)
        self._state = state
        if self.metrics:
            self.metrics.stream_connected.labels(wallet=self.wallet).set(1 if state == StreamState.CONNECTED else 0)

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._stopping:
            self._set_state(StreamState.CONNECTING)
            ws = None
            try:
                ws = await asyncio.wait_for(self._connect(self.config.url), timeout=self.config.connect_timeout)
                await ws.send(dumps({"method": "subscribe", "subscription": {"type": "userFills", "user": self.wallet}}))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if ws is not None:
                    self._ws = ws
                    await self._close_ws()
                self._stats.last_error = str(exc)
                self._log_event("stream_connect_error", err=str(exc), failures=self._failures + 1)
                if not await self._after_failure():
                    return
                continue

            self._on_connected(ws)
            try:
                await self._session(ws)
            finally:
                await self._close_ws()

            if self._stopping:
                break
            self._log_event("stream_disconnected", err=self._stats.last_error)
            if not await self._after_failure():
                return

    def _on_connected(self, ws: Any) -> None:
        self._ws = ws
        self._failures = 0
        self._last_frame = self._clock()
        self._connected_at_ms = now_ms()
        self._first_batch_pending = True
        self._stats.connected_at_ms = self._connected_at_ms
        self._set_state(StreamState.CONNECTED)
        self._log_event("stream_connected", url=self.config.url)

    async def _after_failure(self) -> bool:
        """Count a failure; sleep the backoff delay or give up. Returns False when exhausted."""
        self._failures += 1
        if self._failures >= self.config.max_consecutive_failures:
            self._set_state(StreamState.FAILED)
            self._log_event("stream_reconnect_exhausted", failures=self._failures)
            await self._notify_exhausted()
            return False
        delay = backoff_delay(self._failures, self.config.backoff_schedule)
        self._set_state(StreamState.RECONNECTING)
        self._stats.total_reconnects += 1
        if self.metrics:
            self.metrics.stream_reconnects.labels(wallet=self.wallet).inc()
        self._log_event("stream_reconnect_scheduled", delay_sec=delay, failures=self._failures)
        await self._sleep(delay)
        return not self._stopping

    async def _notify_exhausted(self) -> None:
        if self._exhausted_alerted or self._on_exhausted is None:
            return
        self._exhausted_alerted = True
        try:
            result = self._on_exhausted(self.wallet, self._failures)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._log_event("stream_exhausted_callback_error", err=str(exc))

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            self._log_event("stream_close_error", err=str(exc))

    # ------------------------------------------------------------------
    # Connection session
    # ------------------------------------------------------------------

    async def _session(self, ws: Any) -> None:
        """Run receive loop and liveness monitor until either ends."""
        recv_task = asyncio.create_task(self._receive(ws))
        monitor_task = asyncio.create_task(self._monitor(ws))
        try:
            done, pending = await asyncio.wait({recv_task, monitor_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            recv_task.cancel()
            monitor_task.cancel()
            await asyncio.gather(recv_task, monitor_task, return_exceptions=True)
            raise
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None:
                self._stats.last_error = str(exc) or type(exc).__name__

    async def _receive(self, ws: Any) -> None:
        while True:
            try:
                raw = await ws.recv()
            except ConnectionClosed as exc:
                self._stats.last_error = f"closed: {exc}"
                return
            self._last_frame = self._clock()
            self._stats.last_message_at_ms = now_ms()
            self.handle_message(raw)

    async def _monitor(self, ws: Any) -> None:
        cfg = self.config
        while True:
            await self._sleep(cfg.health_check_interval)
            idle = self._clock() - self._last_frame
            if idle > cfg.stale_after:
                self._stats.last_error = f"stale: no frame for {idle:.1f}s"
                self._log_event("stream_stale", idle_sec=round(idle, 1))
                return
            await ws.send(dumps(PING_MESSAGE))

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def handle_message(self, raw: str | bytes) -> None:
        try:
            msg = loads(raw)
        except ValueError:
            self._log_event("stream_bad_frame", frame=str(raw)[:200])
            return
        if not isinstance(msg, dict):
            return
        channel = msg.get("channel")
        if channel == "pong":
            return
        if channel == "subscriptionResponse":
            self._log_event("stream_subscribed")
            return
        if channel == "error":
            self._log_event("stream_server_error", data=str(msg.get("data"))[:200])
            return
        if channel != "userFills":
            return
        data = msg.get("data") or {}
        user = str(data.get("user", self.wallet))
        if user.lower() != self.wallet.lower():
            return
        self._handle_fills(data)

    def _handle_fills(self, data: Dict[str, Any]) -> None:
        fills = data.get("fills") or []
        first_batch = self._first_batch_pending
        self._first_batch_pending = False

        if data.get("isSnapshot"):
            self._stats.snapshots_discarded += 1
            for fill in fills:
                self._seen.add(fill_key(fill))
            self._log_event("stream_snapshot_discarded", fills=len(fills))
            return

        for fill in fills:
            if first_batch and int(fill.get("time") or 0) < self._connected_at_ms:
                # historical replay without the snapshot flag
                self._seen.add(fill_key(fill))
                continue
            if not self._seen.add(fill_key(fill)):
                self._stats.duplicates_skipped += 1
                continue
            self._enqueue(TrackedFill.from_ws(self.wallet, fill))

    def _enqueue(self, fill: TrackedFill) -> None:
        self._stats.fills_received += 1
        self._stats.last_fill_at_ms = fill.time_ms or now_ms()
        if self.metrics:
            self.metrics.stream_fills.labels(wallet=self.wallet).inc()
        try:
            self.queue.put_nowait(fill)
        except asyncio.QueueFull:
            self._stats.fills_dropped += 1
            if self.metrics:
                self.metrics.stream_fills_dropped.labels(wallet=self.wallet).inc()
            self._log_event("fill_queue_full", coin=fill.coin, dropped=self._stats.fills_dropped)

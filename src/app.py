"""
Runtime assembly with per-account isolation and supervision.

One SyncOrchestrator per account; one FillStreamConnector per distinct
tracked wallet (accounts copying the same wallet share it). Market metadata,
tick sizes, the HTTP client and the state file are shared.
"""

from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from src.config.accounts import AccountConfig
from src.config.config import Settings
from src.execution.execution_gateway import ExchangeGateway, ExchangeGatewayConfig
from src.infra.async_execution import AsyncExchange
from src.infra.async_info import AsyncInfo
from src.market_data.fill_stream import FillStreamConfig, FillStreamConnector, TrackedFill
from src.market_data.meta_cache import MetaCache, TickSizeCache
from src.monitoring.alerting import AlertManager
from src.monitoring.metrics import CopyMetrics
from src.monitoring.records import RecordSink
from src.orchestrator.sync_orchestrator import SyncOrchestrator, SyncOrchestratorConfig
from src.state.account_state import AccountStateStore
from src.state.state_store import KeyedStateStore

log = logging.getLogger("copybot")


class AccountRunner:
    def __init__(self, account: AccountConfig, orchestrator: SyncOrchestrator, exchange: Optional[AsyncExchange]) -> None:
        self.account = account
        self.orchestrator = orchestrator
        self.exchange = exchange
        self.error: Exception | None = None

    async def start(self) -> None:
        try:
            await self.orchestrator.start()
        except Exception as exc:
            self.error = exc
            log.exception(json.dumps({"event": "account_start_error", "account": self.account.id, "err": str(exc)}))

    async def stop(self) -> None:
        await self.orchestrator.stop()
        if self.exchange is not None:
            await self.exchange.close()


@dataclass
class Runtime:
    settings: Settings
    http_client: httpx.AsyncClient
    async_info: AsyncInfo
    meta_cache: MetaCache
    tick_cache: TickSizeCache
    alerts: AlertManager
    metrics: CopyMetrics
    fill_queue: "asyncio.Queue[TrackedFill]"
    executor: ThreadPoolExecutor
    runners: List[AccountRunner] = field(default_factory=list)
    streams: Dict[str, FillStreamConnector] = field(default_factory=dict)
    consumer_task: Optional[asyncio.Task] = None

    def orchestrator(self, account_id: str) -> SyncOrchestrator:
        for runner in self.runners:
            if runner.account.id == account_id:
                return runner.orchestrator
        raise KeyError(account_id)


async def build_runtime(
    settings: Settings,
    accounts: List[AccountConfig],
    alerts: AlertManager,
    metrics: CopyMetrics,
) -> Runtime:
    http_client = httpx.AsyncClient(base_url=settings.base_url.rstrip("/"), http2=True, timeout=settings.http_timeout)
    async_info = AsyncInfo(settings.base_url, timeout=settings.http_timeout, client=http_client)
    state_dir = Path(settings.state_dir)
    meta_cache = MetaCache(async_info, refresh_sec=settings.meta_refresh_sec)
    await meta_cache.initialize()
    tick_cache = TickSizeCache(async_info, KeyedStateStore(state_dir / "tick_sizes.json"))
    await tick_cache.load()

    rt = Runtime(
        settings=settings,
        http_client=http_client,
        async_info=async_info,
        meta_cache=meta_cache,
        tick_cache=tick_cache,
        alerts=alerts,
        metrics=metrics,
        fill_queue=asyncio.Queue(maxsize=settings.fill_queue_size),
        executor=ThreadPoolExecutor(max_workers=max(2, len(accounts)), thread_name_prefix="hl-exec"),
    )

    state_store = AccountStateStore(KeyedStateStore(state_dir / "account_state.json"))
    records = RecordSink()

    for account in accounts:
        exchange: Optional[AsyncExchange] = None
        if settings.private_key:
            exchange = AsyncExchange.for_account(
                settings.private_key,
                settings.base_url,
                vault_address=account.vault_address,
                timeout=settings.order_timeout,
                executor=rt.executor,
            )
        gateway = ExchangeGateway(
            account.id,
            exchange,
            async_info,
            meta_cache,
            tick_cache,
            config=ExchangeGatewayConfig(
                min_order_value=account.effective_min_order_value(settings.min_order_value),
                slippage_base_pct=settings.slippage_base_pct,
                slippage_step_pct=settings.slippage_step_pct,
                slippage_max_pct=settings.slippage_max_pct,
                max_attempts=settings.order_max_attempts,
                resting_timeout_sec=settings.order_resting_timeout_sec,
            ),
            metrics=metrics,
            account_address=account.trading_address,
        )
        state = await state_store.load(account.id)
        orchestrator = SyncOrchestrator(
            account,
            gateway,
            async_info,
            state,
            state_store,
            config=SyncOrchestratorConfig(
                poll_interval_sec=settings.poll_interval_sec,
                min_balance_to_trade=settings.min_balance_to_trade,
                drift_threshold_percent=account.effective_drift_threshold(settings.drift_threshold_pct),
                drift_alert_cooldown_sec=settings.drift_alert_cooldown_sec,
                close_and_pause_hours=settings.close_and_pause_hours,
            ),
            meta_cache=meta_cache,
            alerts=alerts,
            records=records,
            metrics=metrics,
        )
        rt.runners.append(AccountRunner(account, orchestrator, exchange))

        wallet = account.tracked_wallet.lower()
        if wallet not in rt.streams:
            rt.streams[wallet] = FillStreamConnector(
                account.tracked_wallet,
                rt.fill_queue,
                FillStreamConfig(url=settings.ws_url),
                on_exhausted=alerts.alert_stream_exhausted,
                metrics=metrics,
            )
    return rt


async def consume_fills(queue: "asyncio.Queue[TrackedFill]") -> None:
    """Drain tracked-wallet fills; the poll loop stays the source of truth for positions."""
    while True:
        fill = await queue.get()
        log.info(json.dumps({
            "event": "tracked_fill",
            "wallet": fill.wallet,
            "coin": fill.coin,
            "side": fill.side,
            "px": fill.px,
            "sz": fill.sz,
            "dir": fill.direction,
            "time_ms": fill.time_ms,
        }))
        queue.task_done()


async def start_runtime(rt: Runtime) -> None:
    for stream in rt.streams.values():
        await stream.start()
    rt.consumer_task = asyncio.create_task(consume_fills(rt.fill_queue), name="fill-consumer")
    for runner in rt.runners:
        await runner.start()


async def stop_runtime(rt: Runtime) -> None:
    """Shutdown order: fill streams, then poll loops (in-flight orders finish), then clients."""
    for stream in rt.streams.values():
        await stream.stop()
    if rt.consumer_task is not None:
        rt.consumer_task.cancel()
        await asyncio.gather(rt.consumer_task, return_exceptions=True)
    await asyncio.gather(*(runner.stop() for runner in rt.runners), return_exceptions=True)
    await rt.async_info.close()
    await rt.http_client.aclose()
    rt.executor.shutdown(wait=True)

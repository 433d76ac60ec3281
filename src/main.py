"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys

from src.app import build_runtime, start_runtime, stop_runtime
from src.config.accounts import load_accounts
from src.config.config import Settings
from src.infra.logging_cfg import build_logger
from src.monitoring.alerting import AlertSeverity, configure_alerts
from src.monitoring.metrics import CopyMetrics, start_metrics_server

log = logging.getLogger("copybot")


async def main() -> None:
    build_logger(
        "copybot",
        level=getattr(logging, os.getenv("HL_LOG_LEVEL", "INFO").upper(), logging.INFO),
        file_path=os.getenv("HL_LOG_FILE", "copybot.log") or None,
    )
    cfg = Settings.load()

    accounts = load_accounts(cfg.accounts_config)
    if not accounts:
        log.error(json.dumps({"event": "no_accounts", "path": cfg.accounts_config}))
        sys.exit(1)

    alert_manager = configure_alerts(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.INFO,
        enabled=cfg.alert_enabled,
        bot_name="CopySync",
    )

    metrics = CopyMetrics()
    if start_metrics_server(metrics, cfg.metrics_port):
        log.info(json.dumps({"event": "metrics_server_started", "port": cfg.metrics_port}))

    rt = await build_runtime(cfg, accounts, alert_manager, metrics)
    account_ids = [a.id for a in accounts]
    log.info(json.dumps({"event": "startup", "accounts": account_ids, "streams": len(rt.streams), "testnet": cfg.testnet}))
    await alert_manager.alert_startup(account_ids, testnet=cfg.testnet)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await start_runtime(rt)
        await stop_event.wait()
        log.info(json.dumps({"event": "shutdown_signal"}))
        await alert_manager.alert_shutdown("signal_received")
    finally:
        log.info("Stopping streams, poll loops and connections...")
        await stop_runtime(rt)
        await alert_manager.flush()
        log.info("Shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)

"""
Structured logging setup for the copy-sync service.

Production-optimized:
- Async-safe queue handler to avoid blocking event loop
- Per-event default levels (EVENT_LEVELS) used by log_event, so components
  only name the event and the level follows from it
- Throttling for repetitive warnings (stale stream, full fill queue)
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler


# Log level constants for semantic clarity
CRITICAL_SAFETY = logging.CRITICAL  # Fill stream exhausted, state loss
ERROR = logging.ERROR               # Failures requiring attention
WARNING = logging.WARNING           # Recoverable issues (stream reconnect, order retries)
INFO = logging.INFO                 # Key lifecycle events (polls, trades, drifts)
DEBUG = logging.DEBUG               # High-frequency debug (order submits, skipped drifts)


# Default level per structured event; anything not listed logs at INFO.
EVENT_LEVELS: Dict[str, int] = {
    # fill stream
    "stream_reconnect_exhausted": CRITICAL_SAFETY,
    "stream_stale": WARNING,
    "stream_disconnected": WARNING,
    "stream_connect_error": WARNING,
    "fill_queue_full": WARNING,
    "stream_bad_frame": WARNING,
    "stream_server_error": WARNING,
    "stream_exhausted_callback_error": ERROR,
    # orchestrator
    "poll_fetch_error": ERROR,
    "poll_cycle_error": ERROR,
    "sync_trade_failed": ERROR,
    "reverse_open_failed": ERROR,
    "reverse_skipped": ERROR,
    "take_profit_close_failed": ERROR,
    "manual_close_failed": ERROR,
    "stale_order_cleanup_failed": WARNING,
    "poll_overrun": WARNING,
    "order_not_filled": WARNING,
    "drift_skipped": DEBUG,
    # gateway
    "order_submit": DEBUG,
    "order_no_match_retry": WARNING,
    "order_rejected": WARNING,
    "order_transport_error": ERROR,
    "resting_cancel_error": ERROR,
    "cancel_error": WARNING,
    "cancel_rejected": WARNING,
    # state and metadata
    "state_load_error": ERROR,
    "state_save_error": ERROR,
    "meta_refresh_error": WARNING,
    "tick_inference_default": WARNING,
}


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = time.time()
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for background processing.

    Prevents logging from blocking the asyncio event loop. Records are
    written by a dedicated background thread.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        self._dropped = 0
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            # Non-blocking put; drop if queue full
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._target.handle(record)
            self._queue.task_done()

    def close(self) -> None:
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Filter that throttles repetitive log messages.

    Allows first occurrence, then suppresses duplicates for cooldown_sec.
    Keys combine the event with its account/wallet/coin so one noisy
    account does not hide another's warnings.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or {
            "stream_stale", "stream_connect_error", "fill_queue_full", "order_no_match_retry",
        }

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        try:
            data = json.loads(msg)
        except (json.JSONDecodeError, TypeError):
            return True  # Not JSON, allow through
        if not isinstance(data, dict):
            return True

        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('account', '')}:{data.get('wallet', '')}:{data.get('coin', '')}"
        last = self._last_seen.get(key, 0)

        if now - last < self._cooldown:
            return False  # Suppress

        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "copybot",
    level: int = logging.INFO,
    file_path: Optional[str] = "copybot.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build production-optimized logger.

    Child loggers (copybot.records, copybot.alerts) propagate into the
    handlers installed here.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to log file (None to disable file logging)
        async_file: Use async queue handler for file to avoid blocking
        throttle_warnings: Apply throttling filter to reduce repetitive warnings

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent handler setup
    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    # Console: human-friendly
    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))

    # Apply throttle filter to reduce console spam
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))

    logger.addHandler(stream_handler)

    # File: structured JSON for downstream ingestion
    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)

        if async_file:
            # Wrap in async handler to avoid blocking event loop
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


# Convenience function for structured event logging
def log_event(
    logger: logging.Logger,
    event: str,
    level: Optional[int] = None,
    **data
) -> None:
    """
    Log a structured event; the level defaults to EVENT_LEVELS[event].

    Usage:
        log_event(log, "trade_executed", account="main", coin="BTC", size=0.01)
    """
    if level is None:
        level = EVENT_LEVELS.get(event, INFO)
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))

"""
Prometheus metrics for the copy-sync service.

Organized into: execution, sync cycles, fill stream.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server
from typing import Optional


class CopyMetrics:
    """Metrics shared by all accounts; labelled by account id."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Execution Metrics ===
        self.orders_submitted = Counter(
            'copy_orders_submitted_total',
            'Orders submitted to exchange (each attempt counts)',
            labelnames=['account', 'coin', 'action'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'copy_orders_rejected_total',
            'Orders rejected by exchange',
            labelnames=['account', 'coin'],
            registry=reg
        )
        self.order_retries = Counter(
            'copy_order_retries_total',
            'No-match retries with wider slippage',
            labelnames=['account', 'coin'],
            registry=reg
        )
        self.trades_executed = Counter(
            'copy_trades_executed_total',
            'Sync trades completed',
            labelnames=['account', 'action', 'source'],
            registry=reg
        )

        # === Sync Metrics ===
        self.drifts_detected = Counter(
            'copy_drifts_detected_total',
            'Drifts detected per poll',
            labelnames=['account', 'drift_type'],
            registry=reg
        )
        self.poll_cycles = Counter(
            'copy_poll_cycles_total',
            'Poll cycles by outcome',
            labelnames=['account', 'result'],
            registry=reg
        )
        self.poll_duration_sec = Histogram(
            'copy_poll_duration_seconds',
            'Wall time of one poll cycle',
            labelnames=['account'],
            buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60],
            registry=reg
        )
        self.balance_ratio = Gauge(
            'copy_balance_ratio',
            'User account value / tracked account value',
            labelnames=['account'],
            registry=reg
        )

        # === Fill Stream Metrics ===
        self.stream_reconnects = Counter(
            'copy_stream_reconnects_total',
            'Fill stream reconnect attempts',
            labelnames=['wallet'],
            registry=reg
        )
        self.stream_fills = Counter(
            'copy_stream_fills_total',
            'Live fills received from the tracked wallet',
            labelnames=['wallet'],
            registry=reg
        )
        self.stream_fills_dropped = Counter(
            'copy_stream_fills_dropped_total',
            'Fills dropped because the downstream queue was full',
            labelnames=['wallet'],
            registry=reg
        )
        self.stream_connected = Gauge(
            'copy_stream_connected',
            'Fill stream connected (1) or not (0)',
            labelnames=['wallet'],
            registry=reg
        )


def start_metrics_server(metrics: CopyMetrics, port: int) -> bool:
    """Expose metrics over HTTP. Port 0 disables the exporter."""
    if port <= 0:
        return False
    start_http_server(port, registry=metrics.registry)
    return True

"""
Monitoring and observability package.

This package contains alerting, metrics, and structured record components.
"""

from src.monitoring.alerting import (
    AlertSeverity,
    AlertType,
    Alert,
    AlertConfig,
    AlertManager,
    configure_alerts,
    get_alert_manager,
)
from src.monitoring.metrics import CopyMetrics, start_metrics_server
from src.monitoring.records import RecordSink

__all__ = [
    "AlertSeverity",
    "AlertType",
    "Alert",
    "AlertConfig",
    "AlertManager",
    "configure_alerts",
    "get_alert_manager",
    "CopyMetrics",
    "start_metrics_server",
    "RecordSink",
]

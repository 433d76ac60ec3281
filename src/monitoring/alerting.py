"""
Webhook alerting for operator-facing events.

- Send alerts to webhooks (Slack, Discord, PagerDuty, generic HTTP)
- Rate limiting per alert type and account to prevent alert storms
- Alert batching for related events
- Async non-blocking delivery (best effort, never raises into callers)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger("copybot.alerts")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    """Types of alerts."""
    DRIFT_DETECTED = auto()
    STREAM_RECONNECT_EXHAUSTED = auto()
    TAKE_PROFIT = auto()
    TRADE_FAILED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    account: Optional[str] = None
    coin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "account": self.account,
            "coin": self.coin,
        }


@dataclass
class AlertConfig:
    """Configuration for alerting."""
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord, pagerduty
    min_severity: AlertSeverity = AlertSeverity.INFO
    rate_limit_seconds: int = 60  # Min seconds between same alert type for one account
    batch_window_ms: int = 5000  # Batch alerts within this window
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "CopySync"


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def _fields(alert: Alert, config: AlertConfig) -> List[Tuple[str, str]]:
        fields = []
        if alert.account:
            fields.append(("Account", alert.account))
        if alert.coin:
            fields.append(("Coin", alert.coin))
        fields.append(("Type", alert.alert_type.name))
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:  # Limit to 5 fields
                fields.append((key, str(value)))
        return fields

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        """Format for generic HTTP webhook."""
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        """Format for Slack webhook."""
        emoji = {
            AlertSeverity.CRITICAL: "🚨",
            AlertSeverity.WARNING: "⚠️",
            AlertSeverity.INFO: "ℹ️",
        }.get(alert.severity, "📢")
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")
        fields = [
            {"title": k, "value": v, "short": True}
            for k, v in WebhookFormatter._fields(alert, config)
        ]
        return {
            "username": config.bot_name,
            "icon_emoji": ":robot_face:",
            "attachments": [{
                "color": color,
                "title": f"{emoji} {alert.title}",
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        """Format for Discord webhook."""
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)
        fields = [
            {"name": k, "value": v, "inline": True}
            for k, v in WebhookFormatter._fields(alert, config)
        ]
        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }

    @staticmethod
    def format_pagerduty(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        """Format for PagerDuty Events API v2."""
        severity_map = {
            AlertSeverity.CRITICAL: "critical",
            AlertSeverity.WARNING: "warning",
            AlertSeverity.INFO: "info",
        }
        component = alert.account or "global"
        return {
            "routing_key": config.webhook_url,  # PagerDuty uses routing key
            "event_action": "trigger",
            "dedup_key": f"{config.bot_name}-{alert.alert_type.name}-{component}",
            "payload": {
                "summary": f"{alert.title}: {alert.message}",
                "severity": severity_map.get(alert.severity, "warning"),
                "source": config.bot_name,
                "component": component,
                "custom_details": alert.details,
            }
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting and batching.

    Delivery failures are logged and never propagate to the caller: a drift
    alert that fails to reach the webhook must not abort a sync cycle.
    """

    def __init__(self, config: Optional[AlertConfig] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if alert was queued, False if rate limited or disabled
        """
        if not self.config.enabled:
            return False

        if not self.config.webhook_url:
            logger.debug(f"Alert not sent (no webhook): {alert.title}")
            return False

        # Check severity threshold
        if alert.severity.value > self.config.min_severity.value:
            return False

        # Check rate limit
        now_ms = int(time.time() * 1000)
        key = (alert.alert_type, alert.account)
        last_time = self._last_alert_times.get(key, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name} {alert.account}")
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[key] = now_ms

            # Start batch task if not running
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())

        return True

    async def flush(self) -> None:
        """Wait for the pending batch (used at shutdown)."""
        if self._batch_task is not None and not self._batch_task.done():
            await asyncio.gather(self._batch_task, return_exceptions=True)

    async def _batch_deliver(self) -> None:
        """Deliver batched alerts after window expires."""
        await asyncio.sleep(self.config.batch_window_ms / 1000)

        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()

        if not alerts:
            return

        if len(alerts) == 1:
            await self._deliver_single(alerts[0])
        else:
            await self._deliver_batch(alerts)

    async def _deliver_single(self, alert: Alert) -> bool:
        payload = self._format_alert(alert)
        return await self._http_post(payload)

    async def _deliver_batch(self, alerts: List[Alert]) -> bool:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
        elif self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
        elif self.config.webhook_type == "pagerduty":
            # Events API takes one event per request
            results = [await self._deliver_single(alert) for alert in alerts]
            return all(results)
        else:
            payload = {"alerts": [alert.to_dict() for alert in alerts]}

        return await self._http_post(payload)

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        """Format alert based on webhook type."""
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
            "pagerduty": WebhookFormatter.format_pagerduty,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        """Send HTTP POST to webhook URL."""
        if not self.config.webhook_url:
            return False

        async with aiohttp.ClientSession() as session:
            for attempt in range(retries + 1):
                try:
                    async with session.post(
                        self.config.webhook_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=10),
                    ) as resp:
                        if resp.status < 300:
                            logger.debug("Alert delivered successfully")
                            return True
                        logger.warning(f"Alert delivery failed: HTTP {resp.status}")
                except asyncio.TimeoutError:
                    logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
                except aiohttp.ClientError as e:
                    logger.warning(f"Alert delivery error: {e}")

                if attempt < retries:
                    await asyncio.sleep(1 * (attempt + 1))  # Backoff

        return False

    # ─────────────────────────────────────────────────────────────────────
    # Convenience Methods for Common Alerts
    # ─────────────────────────────────────────────────────────────────────

    async def alert_drift_detected(self, account: str, drifts: List[Dict[str, Any]], balance_ratio: float) -> bool:
        """Drift summary for one account; the orchestrator applies the hourly cooldown."""
        lines = [f"{d['coin']}: {d['type']} ({d['diff_pct']:.1f}%)" for d in drifts[:10]]
        return await self.send_alert(Alert(
            alert_type=AlertType.DRIFT_DETECTED,
            severity=AlertSeverity.WARNING,
            title="Position Drift Detected",
            message="\n".join(lines) or "drift detected",
            account=account,
            details={"drifts": len(drifts), "balance_ratio": round(balance_ratio, 4)},
        ))

    async def alert_stream_exhausted(self, wallet: str, failures: int) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STREAM_RECONNECT_EXHAUSTED,
            severity=AlertSeverity.CRITICAL,
            title="Fill Stream Down",
            message=f"Gave up reconnecting after {failures} consecutive failures",
            account=wallet,
            details={"wallet": wallet, "failures": failures},
        ))

    async def alert_take_profit(self, account: str, coin: str, profit_pct: float, source: str) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.TAKE_PROFIT,
            severity=AlertSeverity.INFO,
            title="Take Profit",
            message=f"Closed {coin} at {profit_pct:.2f}% profit ({source})",
            account=account,
            coin=coin,
            details={"profit_pct": round(profit_pct, 2), "source": source},
        ))

    async def alert_trade_failed(self, account: str, coin: str, error: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.TRADE_FAILED,
            severity=AlertSeverity.WARNING,
            title="Sync Trade Failed",
            message=error,
            account=account,
            coin=coin,
            details=details,
        ))

    async def alert_startup(self, accounts: List[str], **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Copy Sync Started",
            message=f"{self.config.bot_name} syncing {', '.join(accounts)}",
            details={"accounts": accounts, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Copy Sync Shutdown",
            message=f"{self.config.bot_name} shutting down: {reason}",
            details=details,
        ))


# Global alert manager instance
_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get the global alert manager instance."""
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def configure_alerts(
    webhook_url: Optional[str] = None,
    webhook_type: str = "generic",
    min_severity: AlertSeverity = AlertSeverity.INFO,
    enabled: bool = True,
    bot_name: str = "CopySync",
) -> AlertManager:
    """
    Configure the global alert manager.

    Args:
        webhook_url: URL to send alerts to
        webhook_type: Type of webhook (generic, slack, discord, pagerduty)
        min_severity: Minimum severity to send
        enabled: Whether alerting is enabled
        bot_name: Name to use in alerts

    Returns:
        Configured AlertManager
    """
    global _alert_manager
    _alert_manager = AlertManager(AlertConfig(
        webhook_url=webhook_url,
        webhook_type=webhook_type,
        min_severity=min_severity,
        enabled=enabled,
        bot_name=bot_name,
    ))
    return _alert_manager

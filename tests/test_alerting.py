"""
Tests for webhook alerting: filtering, rate limiting, formatting and batching.
"""

from unittest.mock import AsyncMock

import pytest

from src.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    WebhookFormatter,
    configure_alerts,
    get_alert_manager,
)


def _manager(**overrides):
    cfg = AlertConfig(**{"webhook_url": "https://hooks.example/x", "batch_window_ms": 0, **overrides})
    mgr = AlertManager(cfg)
    mgr._http_post = AsyncMock(return_value=True)
    return mgr


class TestFiltering:

    @pytest.mark.asyncio
    async def test_disabled_or_no_webhook_sends_nothing(self):
        assert not await AlertManager(AlertConfig(enabled=False, webhook_url="https://x")).alert_shutdown()
        assert not await AlertManager(AlertConfig(webhook_url=None)).alert_shutdown()

    @pytest.mark.asyncio
    async def test_min_severity(self):
        mgr = _manager(min_severity=AlertSeverity.WARNING)
        assert not await mgr.alert_take_profit("main", "BTC", 12.0, "take-profit")
        assert await mgr.alert_stream_exhausted("0xabc", 10)
        await mgr.flush()

    @pytest.mark.asyncio
    async def test_rate_limit_is_per_account(self):
        mgr = _manager()
        assert await mgr.alert_trade_failed("a", "BTC", "boom")
        assert not await mgr.alert_trade_failed("a", "ETH", "boom")
        assert await mgr.alert_trade_failed("b", "BTC", "boom")
        await mgr.flush()


class TestDelivery:

    @pytest.mark.asyncio
    async def test_single_alert_delivered(self):
        mgr = _manager()
        await mgr.alert_drift_detected("main", [{"coin": "BTC", "type": "missing", "diff_pct": 12.5}], 0.1)
        await mgr.flush()

        mgr._http_post.assert_awaited_once()
        payload = mgr._http_post.call_args.args[0]
        assert payload["type"] == "DRIFT_DETECTED"
        assert payload["account"] == "main"
        assert "BTC: missing (12.5%)" in payload["message"]

    @pytest.mark.asyncio
    async def test_batched_generic_alerts(self):
        mgr = _manager(batch_window_ms=20)
        await mgr.alert_trade_failed("a", "BTC", "boom")
        await mgr.alert_trade_failed("b", "ETH", "boom")
        await mgr.flush()

        mgr._http_post.assert_awaited_once()
        payload = mgr._http_post.call_args.args[0]
        assert [a["account"] for a in payload["alerts"]] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_pagerduty_batch_sends_each_event(self):
        mgr = _manager(batch_window_ms=20, webhook_type="pagerduty")
        await mgr.alert_trade_failed("a", "BTC", "boom")
        await mgr.alert_trade_failed("b", "ETH", "boom")
        await mgr.flush()
        assert mgr._http_post.await_count == 2


class TestFormatting:

    def _alert(self):
        return Alert(
            alert_type=AlertType.TAKE_PROFIT,
            severity=AlertSeverity.INFO,
            title="Take Profit",
            message="Closed BTC",
            account="main",
            coin="BTC",
            details={"profit_pct": 12.0},
        )

    def test_slack_fields(self):
        payload = WebhookFormatter.format_slack(self._alert(), AlertConfig())
        fields = {f["title"]: f["value"] for f in payload["attachments"][0]["fields"]}
        assert fields["Account"] == "main"
        assert fields["Coin"] == "BTC"
        assert fields["profit_pct"] == "12.0"

    def test_discord_embed(self):
        payload = WebhookFormatter.format_discord(self._alert(), AlertConfig())
        assert payload["embeds"][0]["title"] == "Take Profit"

    def test_pagerduty_dedup_key_includes_account(self):
        payload = WebhookFormatter.format_pagerduty(self._alert(), AlertConfig(webhook_url="key"))
        assert payload["dedup_key"] == "CopySync-TAKE_PROFIT-main"
        assert payload["payload"]["severity"] == "info"


class TestGlobalManager:

    def test_configure_replaces_global(self):
        mgr = configure_alerts(webhook_url="https://x", webhook_type="slack")
        assert get_alert_manager() is mgr
        assert mgr.config.webhook_type == "slack"

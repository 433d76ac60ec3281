"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

MAINNET_API_URL = "https://api.hyperliquid.xyz"
TESTNET_API_URL = "https://api.hyperliquid-testnet.xyz"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def ws_url_for(base_url: str) -> str:
    return base_url.rstrip("/").replace("https://", "wss://").replace("http://", "ws://") + "/ws"


@dataclass(frozen=True)
class Settings:
    base_url: str
    ws_url: str
    testnet: bool
    private_key: str | None
    accounts_config: str
    poll_interval_sec: float
    min_order_value: float
    drift_threshold_pct: float
    min_balance_to_trade: float
    slippage_base_pct: float
    slippage_step_pct: float
    slippage_max_pct: float
    order_max_attempts: int
    order_resting_timeout_sec: float
    meta_refresh_sec: float
    http_timeout: float
    order_timeout: float
    state_dir: str
    fill_queue_size: int
    drift_alert_cooldown_sec: float
    close_and_pause_hours: float
    metrics_port: int
    log_file: str | None
    log_level: str
    # Alerting configuration
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord, pagerduty
    alert_enabled: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (secrets masked)."""
        data = self.__dict__.copy()
        if data.get("private_key"):
            data["private_key"] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        testnet = env_bool("HL_TESTNET", False)
        base_url = os.getenv("HL_BASE_URL") or (TESTNET_API_URL if testnet else MAINNET_API_URL)
        cfg = cls(
            base_url=base_url,
            ws_url=os.getenv("HL_WS_URL") or ws_url_for(base_url),
            testnet=testnet,
            private_key=os.getenv("HL_PRIVATE_KEY") or None,
            accounts_config=os.getenv("HL_ACCOUNTS_CONFIG", "configs/accounts.yaml"),
            poll_interval_sec=_float_env("HL_POLL_INTERVAL_SEC", 60.0),
            min_order_value=_float_env("HL_MIN_ORDER_VALUE", 10.0),
            drift_threshold_pct=_float_env("HL_DRIFT_THRESHOLD_PCT", 5.0),
            min_balance_to_trade=_float_env("HL_MIN_BALANCE_TO_TRADE", 10.0),
            slippage_base_pct=_float_env("HL_SLIPPAGE_BASE_PCT", 0.5),
            slippage_step_pct=_float_env("HL_SLIPPAGE_STEP_PCT", 0.5),
            slippage_max_pct=_float_env("HL_SLIPPAGE_MAX_PCT", 3.0),
            order_max_attempts=_int_env("HL_ORDER_MAX_ATTEMPTS", 3),
            order_resting_timeout_sec=_float_env("HL_ORDER_RESTING_TIMEOUT_SEC", 2.0),
            meta_refresh_sec=_float_env("HL_META_REFRESH_SEC", 3600.0),
            http_timeout=_float_env("HL_HTTP_TIMEOUT", 5.0),
            order_timeout=_float_env("HL_ORDER_TIMEOUT", 10.0),
            state_dir=os.getenv("HL_STATE_DIR", "state"),
            fill_queue_size=_int_env("HL_FILL_QUEUE_SIZE", 1000),
            drift_alert_cooldown_sec=_float_env("HL_DRIFT_ALERT_COOLDOWN_SEC", 3600.0),
            close_and_pause_hours=_float_env("HL_CLOSE_AND_PAUSE_HOURS", 4.0),
            metrics_port=_int_env("HL_METRICS_PORT", 0),
            log_file=os.getenv("HL_LOG_FILE", "copybot.log") or None,
            log_level=os.getenv("HL_LOG_LEVEL", "INFO").upper(),
            alert_webhook_url=os.getenv("HL_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("HL_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("HL_ALERT_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        raise RuntimeError("Missing credentials: set HL_PRIVATE_KEY")

    def _validate(self) -> None:
        if self.poll_interval_sec <= 0:
            raise ValueError("HL_POLL_INTERVAL_SEC must be > 0")
        if self.min_order_value < 0:
            raise ValueError("HL_MIN_ORDER_VALUE must be >= 0")
        if self.drift_threshold_pct < 0:
            raise ValueError("HL_DRIFT_THRESHOLD_PCT must be >= 0")
        if self.min_balance_to_trade < 0:
            raise ValueError("HL_MIN_BALANCE_TO_TRADE must be >= 0")
        if self.slippage_base_pct <= 0 or self.slippage_step_pct < 0:
            raise ValueError("Slippage percentages must be positive")
        if self.order_max_attempts < 1:
            raise ValueError("HL_ORDER_MAX_ATTEMPTS must be >= 1")
        if self.order_resting_timeout_sec < 0:
            raise ValueError("HL_ORDER_RESTING_TIMEOUT_SEC must be >= 0")
        max_ladder = self.slippage_base_pct + (self.order_max_attempts - 1) * self.slippage_step_pct
        if self.slippage_max_pct < max_ladder:
            raise ValueError(
                f"HL_SLIPPAGE_MAX_PCT={self.slippage_max_pct} must be >= the last retry slippage ({max_ladder})"
            )
        if self.fill_queue_size <= 0:
            raise ValueError("HL_FILL_QUEUE_SIZE must be > 0")
        if self.meta_refresh_sec <= 0:
            raise ValueError("HL_META_REFRESH_SEC must be > 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord", "pagerduty"}:
            raise ValueError(f"Unknown HL_ALERT_WEBHOOK_TYPE: {self.alert_webhook_type}")

        logger = logging.getLogger("copybot")
        if not self.private_key:
            logger.warning(
                "WARNING: HL_PRIVATE_KEY not set. Running read-only; every sync trade will fail."
            )
        if self.slippage_max_pct > 5.0:
            logger.warning(
                f"WARNING: HL_SLIPPAGE_MAX_PCT is {self.slippage_max_pct}%. "
                "Fallback orders may fill far from the mark."
            )
        if self.drift_threshold_pct < 1.0:
            logger.warning(
                f"WARNING: HL_DRIFT_THRESHOLD_PCT is {self.drift_threshold_pct}%. "
                "Small thresholds trade on noise."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("copybot")
    payload = {
        "event": "config_loaded",
        "base_url": cfg.base_url,
        "testnet": cfg.testnet,
        "poll_interval_sec": cfg.poll_interval_sec,
        "drift_threshold_pct": cfg.drift_threshold_pct,
        "min_order_value": cfg.min_order_value,
        "slippage": [cfg.slippage_base_pct, cfg.slippage_step_pct, cfg.slippage_max_pct],
    }
    logger.info(json.dumps(payload))

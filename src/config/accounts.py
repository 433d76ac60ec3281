"""Load copy-trading account definitions from YAML.

Optional file path via env `HL_ACCOUNTS_CONFIG`, default `configs/accounts.yaml`.

    accounts:
      - id: main
        name: Main copy
        tracked_wallet: "0xabc..."
        user_wallet: "0xdef..."
        vault_address: "0x123..."    # optional sub-account to trade
        min_order_value: 12          # optional, else HL_MIN_ORDER_VALUE
        drift_threshold_percent: 3   # optional, else HL_DRIFT_THRESHOLD_PCT
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass(frozen=True)
class AccountConfig:
    id: str
    tracked_wallet: str
    user_wallet: str
    name: str = ""
    vault_address: Optional[str] = None
    enabled: bool = True
    min_order_value: Optional[float] = None
    drift_threshold_percent: Optional[float] = None

    @property
    def trading_address(self) -> str:
        """Address whose positions are synced: the vault when set, else the user wallet."""
        return self.vault_address or self.user_wallet

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def effective_min_order_value(self, default: float) -> float:
        return self.min_order_value if self.min_order_value is not None else default

    def effective_drift_threshold(self, default: float) -> float:
        return self.drift_threshold_percent if self.drift_threshold_percent is not None else default

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AccountConfig":
        account_id = str(raw.get("id") or "").strip()
        if not account_id:
            raise ValueError("account entry missing 'id'")
        tracked = str(raw.get("tracked_wallet") or "").strip()
        user = str(raw.get("user_wallet") or "").strip()
        if not tracked:
            raise ValueError(f"account {account_id}: missing 'tracked_wallet'")
        if not user:
            raise ValueError(f"account {account_id}: missing 'user_wallet'")
        min_value = raw.get("min_order_value")
        threshold = raw.get("drift_threshold_percent")
        cfg = cls(
            id=account_id,
            name=str(raw.get("name") or ""),
            tracked_wallet=tracked,
            user_wallet=user,
            vault_address=(str(raw["vault_address"]).strip() or None) if raw.get("vault_address") else None,
            enabled=bool(raw.get("enabled", True)),
            min_order_value=float(min_value) if min_value is not None else None,
            drift_threshold_percent=float(threshold) if threshold is not None else None,
        )
        if cfg.min_order_value is not None and cfg.min_order_value < 0:
            raise ValueError(f"account {account_id}: min_order_value must be >= 0")
        if cfg.drift_threshold_percent is not None and cfg.drift_threshold_percent < 0:
            raise ValueError(f"account {account_id}: drift_threshold_percent must be >= 0")
        return cfg


def load_accounts(path: str | None = None, include_disabled: bool = False) -> List[AccountConfig]:
    if path is None:
        path = os.getenv("HL_ACCOUNTS_CONFIG", "configs/accounts.yaml")
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"accounts file not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    entries = data.get("accounts", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"{p}: 'accounts' must be a list")

    accounts: List[AccountConfig] = []
    seen = set()
    for raw in entries:
        if not isinstance(raw, dict):
            raise ValueError(f"{p}: account entries must be mappings")
        cfg = AccountConfig.from_dict(raw)
        if cfg.id in seen:
            raise ValueError(f"{p}: duplicate account id {cfg.id}")
        seen.add(cfg.id)
        if cfg.enabled or include_disabled:
            accounts.append(cfg)
    return accounts

"""
Exchange gateway errors.

UnknownCoinError and ClientNotInitializedError are raised before any network
call. OrderRejectedError carries the exchange's error text verbatim.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for order placement failures."""


class UnknownCoinError(GatewayError):
    def __init__(self, coin: str) -> None:
        super().__init__(f"Coin {coin} not found in market metadata")
        self.coin = coin


class ClientNotInitializedError(GatewayError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"No signing client for account {account_id}")
        self.account_id = account_id


class InvalidOrderError(GatewayError):
    pass


class OrderRejectedError(GatewayError):
    def __init__(self, coin: str, exchange_error: str, attempts: int = 1, fallback_used: bool = False) -> None:
        super().__init__(f"{coin}: {exchange_error}")
        self.coin = coin
        self.exchange_error = exchange_error
        self.attempts = attempts
        self.fallback_used = fallback_used


def status_error(status: Optional[dict]) -> Optional[str]:
    if isinstance(status, dict) and "error" in status:
        return str(status["error"])
    return None

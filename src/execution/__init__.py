"""
Execution layer.

- ExchangeGateway: quantized order placement with slippage escalation
- errors: typed placement failures
"""

from src.execution.errors import (
    ClientNotInitializedError,
    GatewayError,
    InvalidOrderError,
    OrderRejectedError,
    UnknownCoinError,
)
from src.execution.execution_gateway import ExchangeGateway, ExchangeGatewayConfig, OrderResult

__all__ = [
    "ClientNotInitializedError",
    "GatewayError",
    "InvalidOrderError",
    "OrderRejectedError",
    "UnknownCoinError",
    "ExchangeGateway",
    "ExchangeGatewayConfig",
    "OrderResult",
]

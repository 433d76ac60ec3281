"""
Infrastructure package.

This package contains infrastructure components including async execution,
the async info client and logging configuration.
"""

from src.infra.async_execution import AsyncExchange
from src.infra.async_info import AsyncInfo
from src.infra.logging_cfg import build_logger, log_event

__all__ = [
    "AsyncExchange",
    "AsyncInfo",
    "build_logger",
    "log_event",
]

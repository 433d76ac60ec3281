"""
Configuration package.

Environment settings plus the YAML account list.
"""

from src.config.config import Settings
from src.config.accounts import AccountConfig, load_accounts

__all__ = [
    "Settings",
    "AccountConfig",
    "load_accounts",
]

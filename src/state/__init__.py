"""
State management package.

This package contains per-account control state and its persistence.
"""

from src.state.state_store import JsonStateFile, KeyedStateStore
from src.state.account_state import AccountState, AccountStateStore, TakeProfitSignal

__all__ = [
    "JsonStateFile",
    "KeyedStateStore",
    "AccountState",
    "AccountStateStore",
    "TakeProfitSignal",
]

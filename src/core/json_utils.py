"""
Fast JSON utilities for structured records and state files.

Usage:
    from src.core.json_utils import dumps, loads

    log.info(dumps({"event": "trade", "coin": "BTC", "px": 100.0}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented encode for files meant to be read by operators."""
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)

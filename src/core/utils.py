"""
Utility helpers.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any, Deque, Optional, Set


def now_ms() -> int:
    return int(time.time() * 1000)


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse an exchange numeric field (usually a string) into float."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class BoundedSet:
    """Dedup with bounded memory."""

    def __init__(self, maxlen: int = 5000) -> None:
        self.maxlen = maxlen
        self.deque: Deque[str] = deque(maxlen=maxlen)
        self.set: Set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self.set

    def __len__(self) -> int:
        return len(self.set)

    def add(self, key: str) -> bool:
        if key in self.set:
            return False
        if len(self.deque) == self.maxlen:
            old = self.deque.popleft()
            self.set.discard(old)
        self.deque.append(key)
        self.set.add(key)
        return True

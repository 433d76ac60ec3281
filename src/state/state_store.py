"""
State persistence helpers.

JsonStateFile does synchronous, atomic (tmp-then-replace) reads and writes of
one JSON object. KeyedStateStore wraps it for asyncio: file IO runs in an
executor and access is serialized with an asyncio.Lock so concurrent
accounts never interleave writes. Each save rewrites a single key, leaving
every other key as it was on disk.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from src.core.json_utils import dumps_pretty, loads
from src.infra.logging_cfg import log_event

log = logging.getLogger("copybot")


def _default_log(event: str, **kw: Any) -> None:
    log_event(log, event, **kw)


class JsonStateFile:
    def __init__(self, path: str | Path, log_event: Optional[Callable[..., None]] = None) -> None:
        self.path = Path(path)
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._log_event = log_event or _default_log

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            self._log_event("state_load_error", path=str(self.path), err=str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]) -> bool:
        try:
            self.tmp.write_bytes(dumps_pretty(data))
            self.tmp.replace(self.path)
            return True
        except (OSError, TypeError) as exc:
            self._log_event("state_save_error", path=str(self.path), err=str(exc))
            return False

    def update_key(self, key: str, value: Any) -> bool:
        data = self.load()
        data[key] = value
        return self.save(data)


class KeyedStateStore:
    """Async keyed JSON store; one file, independent entries per key."""

    def __init__(self, path: str | Path, log_event: Optional[Callable[..., None]] = None) -> None:
        self._file = JsonStateFile(path, log_event=log_event)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._file.path

    async def load_all(self) -> Dict[str, Any]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._file.load)

    async def load(self, key: str) -> Optional[Any]:
        data = await self.load_all()
        return data.get(key)

    async def save(self, key: str, value: Any) -> bool:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, lambda: self._file.update_key(key, value))

"""
Structured trade and snapshot records.

Records are emitted as single-line JSON on the `copybot.records` logger;
the file handler installed by build_logger makes them ingestible downstream.
Emission is fire-and-forget: a serialization problem is logged and never
interrupts the sync cycle that produced the record.
"""

from __future__ import annotations

import logging
from typing import Optional

import orjson

from src.core.models import SnapshotRecord, TradeRecord

log = logging.getLogger("copybot")


class RecordSink:
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("copybot.records")

    def trade(self, record: TradeRecord) -> None:
        self._emit("trade", record.to_dict())

    def snapshot(self, record: SnapshotRecord) -> None:
        self._emit("snapshot", record.to_dict())

    def _emit(self, kind: str, payload: dict) -> None:
        try:
            line = orjson.dumps({"event": kind, **payload}).decode("utf-8")
        except TypeError as exc:
            log.warning(orjson.dumps({"event": "record_emit_error", "kind": kind, "err": str(exc)}).decode("utf-8"))
            return
        self._logger.info(line)

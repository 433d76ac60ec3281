"""
Market data package.

Exchange metadata caches and the tracked-wallet fill stream.
"""

from src.market_data.fill_stream import FillStreamConfig, FillStreamConnector, StreamState, TrackedFill
from src.market_data.meta_cache import MetaCache, TickSizeCache

__all__ = [
    "FillStreamConfig",
    "FillStreamConnector",
    "StreamState",
    "TrackedFill",
    "MetaCache",
    "TickSizeCache",
]

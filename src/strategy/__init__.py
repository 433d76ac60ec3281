"""
Strategy package - drift detection between tracked and user accounts.
"""

from src.strategy.drift_detector import DUST_NOTIONAL, DriftDetector, detect

__all__ = [
    "DUST_NOTIONAL",
    "DriftDetector",
    "detect",
]

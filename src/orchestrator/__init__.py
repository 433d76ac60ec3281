"""
Orchestrator package - per-account poll loop and control surface.
"""

from src.orchestrator.sync_orchestrator import (
    CycleResult,
    SyncOrchestrator,
    SyncOrchestratorConfig,
)

__all__ = [
    "CycleResult",
    "SyncOrchestrator",
    "SyncOrchestratorConfig",
]

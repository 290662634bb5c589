"""
Reconciliation module: scheduled driver of pending on-chain updates.
"""

from .loop import (
    PendingUpdateTask,
    ReconciliationLoop,
    ReconciliationReport,
    ReconciliationSettings,
)

__all__ = [
    "PendingUpdateTask",
    "ReconciliationLoop",
    "ReconciliationReport",
    "ReconciliationSettings",
]

"""Orchestrator package - drives items from the store to the remote."""
from .core import MigrationOrchestrator
from .item_upload import ItemUploader
from .models import CycleResult, ItemOutcome, StatusReport
from .worker_pool import PoolResult, WorkerPool

__all__ = [
    "MigrationOrchestrator",
    "ItemUploader",
    "CycleResult",
    "ItemOutcome",
    "StatusReport",
    "PoolResult",
    "WorkerPool",
]

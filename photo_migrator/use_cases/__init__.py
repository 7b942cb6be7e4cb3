"""Application use cases for migration workflows."""

from .deduplication import (
    DedupDecision,
    DedupOutcome,
    DeduplicationEngine,
    ResolveDedupActionUseCase,
)
from .planning import BatchPlanner, SpaceBudget, select_within_limit

__all__ = [
    "DedupDecision",
    "DedupOutcome",
    "DeduplicationEngine",
    "ResolveDedupActionUseCase",
    "BatchPlanner",
    "SpaceBudget",
    "select_within_limit",
]

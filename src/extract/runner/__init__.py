"""
Extraction runner: fetching, batching, applying and scheduling.
"""

from .applier import ApplyOutcome, TransactionalApplier, is_recoverable, is_store_failure
from .batcher import find_consecutive_subsets, group_blocks, is_close_to_tip
from .fetcher import DependencyAwareFetcher
from .reader import get_extractor_data
from .scheduler import ExtractionScheduler, SchedulerConfig, SchedulerMetrics, SchedulerState

__all__ = [
    "ApplyOutcome",
    "TransactionalApplier",
    "is_recoverable",
    "is_store_failure",
    "find_consecutive_subsets",
    "group_blocks",
    "is_close_to_tip",
    "DependencyAwareFetcher",
    "get_extractor_data",
    "ExtractionScheduler",
    "SchedulerConfig",
    "SchedulerMetrics",
    "SchedulerState",
]

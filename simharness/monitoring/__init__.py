"""
Statistics, progress reporting and metrics shared by the harness engines.
"""

from .aggregator import (
    DEFAULT_PERCENTILES,
    AggregatorSnapshot,
    LatencyAggregator,
    LatencySample,
    LiveStats,
    nearest_rank_percentile,
)
from .metrics import HarnessMetrics
from .progress import (
    LoggingProgressConsumer,
    ProgressReporter,
    ProgressSnapshot,
    ProgressSubscription,
)

__all__ = [
    'DEFAULT_PERCENTILES',
    'AggregatorSnapshot',
    'LatencyAggregator',
    'LatencySample',
    'LiveStats',
    'nearest_rank_percentile',
    'HarnessMetrics',
    'LoggingProgressConsumer',
    'ProgressReporter',
    'ProgressSnapshot',
    'ProgressSubscription',
]

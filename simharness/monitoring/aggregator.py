"""
Thread-safe latency aggregation for the test orchestrator and the load generator.

This module provides the statistics primitive shared by both harness engines. Producers
(test attempts, virtual-user workers) record success/failure outcomes and latencies
concurrently; observers read eventually-consistent snapshots without stalling them.

Key Features:
- Append-only retention of every latency sample for exact end-of-run percentiles
- Bounded recent window (oldest evicted) for cheap live display statistics
- Nearest-rank percentile computation over an ascending-sorted sample set
- Single fine-grained lock per aggregator; no global lock across the harness
- Finalization barrier: results arriving after the run is closed are dropped silently

Latency values are expressed in milliseconds as floats throughout.
"""

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW_SIZE = 100
DEFAULT_PERCENTILES: Tuple[float, ...] = (50.0, 90.0, 95.0, 99.0)


def nearest_rank_percentile(sorted_values: Sequence[float], percentile: float) -> float:
    """
    Select the nearest-rank percentile from an ascending-sorted sequence.

    The k-th percentile is ``sorted_values[ceil(k / 100 * N) - 1]`` with the
    index clamped to ``[0, N - 1]``.

    Args:
        sorted_values: Values sorted in ascending order
        percentile: Percentile in the closed range [0, 100]

    Returns:
        The selected value, or 0.0 for an empty sequence

    Raises:
        ValueError: When the percentile lies outside [0, 100]
    """
    if not 0.0 <= percentile <= 100.0:
        raise ValueError(f"Percentile must be within [0, 100], got {percentile}")

    count = len(sorted_values)
    if count == 0:
        return 0.0

    index = math.ceil(percentile / 100.0 * count) - 1
    index = min(max(index, 0), count - 1)
    return sorted_values[index]


@dataclass(frozen=True)
class LatencySample:
    """Single recorded outcome: success flag plus elapsed milliseconds."""

    success: bool
    elapsed_ms: float


@dataclass(frozen=True)
class LiveStats:
    """Display-oriented statistics computed from the recent window only."""

    completed: int
    success_count: int
    failure_count: int
    window_mean_latency_ms: float
    window_success_rate: float


@dataclass(frozen=True)
class AggregatorSnapshot:
    """
    Point-in-time copy of an aggregator.

    Counts and the mean are captured atomically under the aggregator lock.
    Percentiles are computed lazily from the copied latency values, so taking a
    snapshot never sorts while holding the lock.
    """

    count: int
    success_count: int
    failure_count: int
    mean_latency_ms: float
    min_latency_ms: float
    max_latency_ms: float
    latencies_ms: Tuple[float, ...] = field(default=(), repr=False)
    _sorted_cache: List[Tuple[float, ...]] = field(default_factory=list, repr=False, compare=False)

    @property
    def success_rate(self) -> float:
        """Percentage of successful outcomes (0-100); 0.0 when nothing was recorded."""
        if self.count == 0:
            return 0.0
        return self.success_count / self.count * 100.0

    def _sorted(self) -> Tuple[float, ...]:
        if not self._sorted_cache:
            self._sorted_cache.append(tuple(sorted(self.latencies_ms)))
        return self._sorted_cache[0]

    def percentile(self, p: float) -> float:
        """Nearest-rank percentile over every latency sample in the snapshot."""
        return nearest_rank_percentile(self._sorted(), p)

    def percentiles(self, ps: Iterable[float] = DEFAULT_PERCENTILES) -> Dict[str, float]:
        """Map ``p50``-style labels to nearest-rank percentile values."""
        return {percentile_label(p): self.percentile(p) for p in ps}


def percentile_label(p: float) -> str:
    return f"p{int(p)}" if float(p).is_integer() else f"p{p}"


class LatencyAggregator:
    """
    Concurrent sample collector and statistics calculator.

    All mutating operations take one short-lived lock that protects the counters,
    the running latency sum, the full sample list and the recent window together,
    which rules out lost updates and torn reads of aggregate sums. Readers copy
    under the same lock and do any expensive work (sorting) after releasing it.

    Example:
        aggregator = LatencyAggregator()
        aggregator.record_success(12.5)
        aggregator.record_failure()
        snapshot = aggregator.snapshot()
        snapshot.percentile(95)
    """

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE, name: str = "aggregator"):
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")

        self.name = name
        self.window_size = window_size
        self._lock = threading.Lock()
        self._samples: List[LatencySample] = []
        self._window: Deque[Tuple[bool, Optional[float]]] = deque(maxlen=window_size)
        self._success_count = 0
        self._failure_count = 0
        self._latency_sum = 0.0
        self._latency_count = 0
        self._min_latency: Optional[float] = None
        self._max_latency: Optional[float] = None
        self._finalized = False
        self._dropped_after_finalize = 0

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def dropped_after_finalize(self) -> int:
        """Number of results that arrived after :meth:`finalize` and were discarded."""
        return self._dropped_after_finalize

    def record_success(self, latency_ms: float) -> bool:
        """
        Record a successful outcome with its latency.

        Returns:
            True when recorded, False when the aggregator was already finalized
        """
        return self._record(True, latency_ms)

    def record_failure(self, latency_ms: Optional[float] = None) -> bool:
        """
        Record a failed outcome.

        A failure carries a latency sample only when one is supplied; failed
        load-generator operations are counted without polluting latency stats.

        Returns:
            True when recorded, False when the aggregator was already finalized
        """
        return self._record(False, latency_ms)

    def _record(self, success: bool, latency_ms: Optional[float]) -> bool:
        if latency_ms is not None and latency_ms < 0:
            raise ValueError(f"Latency cannot be negative: {latency_ms}")

        with self._lock:
            if self._finalized:
                self._dropped_after_finalize += 1
                return False

            if success:
                self._success_count += 1
            else:
                self._failure_count += 1

            if latency_ms is None:
                self._window.append((success, None))
                return True

            latency = float(latency_ms)
            sample = LatencySample(success=success, elapsed_ms=latency)
            self._samples.append(sample)
            self._window.append((success, latency))
            self._latency_sum += latency
            self._latency_count += 1
            if self._min_latency is None or latency < self._min_latency:
                self._min_latency = latency
            if self._max_latency is None or latency > self._max_latency:
                self._max_latency = latency
            return True

    def finalize(self) -> "AggregatorSnapshot":
        """Close the aggregator to further writes and return the final snapshot."""
        with self._lock:
            self._finalized = True
        logger.debug(
            "Latency aggregator finalized",
            aggregator=self.name,
            samples=len(self._samples),
        )
        return self.snapshot()

    def snapshot(self) -> AggregatorSnapshot:
        """Copy counters and latency values; percentiles are computed on demand."""
        with self._lock:
            success = self._success_count
            failure = self._failure_count
            latency_sum = self._latency_sum
            latency_count = self._latency_count
            minimum = self._min_latency
            maximum = self._max_latency
            latencies = tuple(sample.elapsed_ms for sample in self._samples)

        return AggregatorSnapshot(
            count=success + failure,
            success_count=success,
            failure_count=failure,
            mean_latency_ms=latency_sum / latency_count if latency_count else 0.0,
            min_latency_ms=minimum if minimum is not None else 0.0,
            max_latency_ms=maximum if maximum is not None else 0.0,
            latencies_ms=latencies,
        )

    def live_stats(self) -> LiveStats:
        """Cheap statistics over the recent window, used for periodic display."""
        with self._lock:
            success = self._success_count
            failure = self._failure_count
            window = list(self._window)

        timed = [latency for _, latency in window if latency is not None]
        window_successes = sum(1 for success, _ in window if success)

        return LiveStats(
            completed=success + failure,
            success_count=success,
            failure_count=failure,
            window_mean_latency_ms=sum(timed) / len(timed) if timed else 0.0,
            window_success_rate=(window_successes / len(window) * 100.0) if window else 100.0,
        )

    def samples(self) -> Tuple[LatencySample, ...]:
        """Return a copy of every latency sample recorded so far."""
        with self._lock:
            return tuple(self._samples)

    def percentile(self, p: float) -> float:
        """Exact nearest-rank percentile over all samples (sorts a copy)."""
        return self.snapshot().percentile(p)

    @property
    def completed(self) -> int:
        with self._lock:
            return self._success_count + self._failure_count

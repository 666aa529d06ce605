"""
Run result collection and the final run summary.

``RunResultCollector`` accumulates per-test records or per-operation results
while a run is in flight; ``build()`` produces an immutable :class:`RunSummary`
that keeps the full latency sample list so rates and percentiles can be derived
on demand.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

import structlog

from ..monitoring.aggregator import (
    DEFAULT_PERCENTILES,
    LatencyAggregator,
    LatencySample,
    nearest_rank_percentile,
    percentile_label,
)

if TYPE_CHECKING:
    from ..orchestration.dependency_graph import OrderingWarning
    from ..orchestration.models import TestRecord

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OperationStats:
    """Per-operation-name breakdown for load runs."""

    name: str
    success_count: int = 0
    failure_count: int = 0
    total_latency_ms: float = 0.0
    last_error: Optional[str] = None

    @property
    def count(self) -> int:
        return self.success_count + self.failure_count

    @property
    def mean_latency_ms(self) -> float:
        if self.success_count == 0:
            return 0.0
        return self.total_latency_ms / self.success_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'count': self.count,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'mean_latency_ms': round(self.mean_latency_ms, 3),
            'last_error': self.last_error,
        }


@dataclass(frozen=True)
class RunSummary:
    """
    Final aggregate of one run.

    For test runs ``passed``/``failed``/``skipped`` count test cases (errored
    tests are included in ``failed`` and also reported as ``errored``). For
    load runs they count operations. ``error`` carries a harness-level failure
    when the run was aborted; the counts are then partial.
    """

    kind: str
    total: int
    passed: int
    failed: int
    skipped: int
    elapsed_seconds: float
    samples: Tuple[LatencySample, ...] = field(default=(), repr=False)
    errored: int = 0
    warnings: Tuple["OrderingWarning", ...] = ()
    error: Optional[BaseException] = None
    records: Tuple["TestRecord", ...] = field(default=(), repr=False)
    operations: Tuple[OperationStats, ...] = ()
    configuration: Dict[str, Any] = field(default_factory=dict)
    dropped_after_finalize: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _sorted_cache: List[Tuple[float, ...]] = field(default_factory=list, repr=False, compare=False)

    @property
    def completed(self) -> int:
        return self.passed + self.failed + self.skipped

    @property
    def success_count(self) -> int:
        return self.passed

    @property
    def failure_count(self) -> int:
        return self.failed

    @property
    def aborted(self) -> bool:
        return self.error is not None

    @property
    def success_rate(self) -> float:
        """Percentage of executed (non-skipped) items that succeeded."""
        executed = self.passed + self.failed
        if executed == 0:
            return 0.0
        return self.passed / executed * 100.0

    @property
    def latencies_ms(self) -> Tuple[float, ...]:
        return tuple(sample.elapsed_ms for sample in self.samples)

    def _sorted(self) -> Tuple[float, ...]:
        if not self._sorted_cache:
            self._sorted_cache.append(tuple(sorted(self.latencies_ms)))
        return self._sorted_cache[0]

    @property
    def mean_latency_ms(self) -> float:
        if not self.samples:
            return 0.0
        return sum(self.latencies_ms) / len(self.samples)

    @property
    def min_latency_ms(self) -> float:
        values = self._sorted()
        return values[0] if values else 0.0

    @property
    def max_latency_ms(self) -> float:
        values = self._sorted()
        return values[-1] if values else 0.0

    def percentile(self, p: float) -> float:
        return nearest_rank_percentile(self._sorted(), p)

    def percentiles(self, ps: Iterable[float] = DEFAULT_PERCENTILES) -> Dict[str, float]:
        return {percentile_label(p): self.percentile(p) for p in ps}

    @property
    def operations_per_second(self) -> float:
        """Successful items per wall-clock second since the run started."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.passed / self.elapsed_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'total': self.total,
            'completed': self.completed,
            'passed': self.passed,
            'failed': self.failed,
            'skipped': self.skipped,
            'errored': self.errored,
            'success_rate': round(self.success_rate, 2),
            'elapsed_seconds': round(self.elapsed_seconds, 3),
            'operations_per_second': round(self.operations_per_second, 3),
            'latency_ms': {
                'samples': len(self.samples),
                'mean': round(self.mean_latency_ms, 3),
                'min': round(self.min_latency_ms, 3),
                'max': round(self.max_latency_ms, 3),
                **{label: round(value, 3) for label, value in self.percentiles().items()},
            },
            'dropped_after_finalize': self.dropped_after_finalize,
            'operations': [stats.to_dict() for stats in self.operations],
            'tests': [record.to_dict() for record in self.records],
            'warnings': [warning.to_dict() for warning in self.warnings],
            'error': {
                'type': type(self.error).__name__,
                'message': str(self.error),
            } if self.error is not None else None,
            'configuration': self.configuration,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class RunResultCollector:
    """
    Accumulates outcomes for one run and builds its :class:`RunSummary`.

    Safe for concurrent callers; the test executor uses it from a single task
    while load workers may record from many.
    """

    def __init__(self, kind: str, configuration: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.configuration = dict(configuration or {})
        self._lock = threading.Lock()
        self._records: List["TestRecord"] = []
        self._operations: Dict[str, OperationStats] = {}
        self._warnings: List["OrderingWarning"] = []
        self._error: Optional[BaseException] = None
        self._started_at = datetime.now(timezone.utc)
        self._started_perf = time.perf_counter()

    def start(self) -> None:
        self._started_at = datetime.now(timezone.utc)
        self._started_perf = time.perf_counter()

    @property
    def elapsed_seconds(self) -> float:
        return time.perf_counter() - self._started_perf

    def record_test(self, record: "TestRecord") -> None:
        with self._lock:
            self._records.append(record)

    def record_operation(
        self,
        name: str,
        success: bool,
        latency_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._operations.get(name) or OperationStats(name=name)
            if success:
                stats = OperationStats(
                    name=name,
                    success_count=stats.success_count + 1,
                    failure_count=stats.failure_count,
                    total_latency_ms=stats.total_latency_ms + (latency_ms or 0.0),
                    last_error=stats.last_error,
                )
            else:
                stats = OperationStats(
                    name=name,
                    success_count=stats.success_count,
                    failure_count=stats.failure_count + 1,
                    total_latency_ms=stats.total_latency_ms,
                    last_error=error or stats.last_error,
                )
            self._operations[name] = stats

    def add_warning(self, warning: "OrderingWarning") -> None:
        with self._lock:
            self._warnings.append(warning)

    def add_warnings(self, warnings: Iterable["OrderingWarning"]) -> None:
        with self._lock:
            self._warnings.extend(warnings)

    def set_error(self, error: BaseException) -> None:
        with self._lock:
            if self._error is None:
                self._error = error

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def test_counts(self) -> Dict[str, int]:
        """Running passed/failed/skipped/errored counts over recorded tests."""
        with self._lock:
            records = list(self._records)
        counts = {'passed': 0, 'failed': 0, 'skipped': 0, 'errored': 0}
        for record in records:
            if record.status.value == "passed":
                counts['passed'] += 1
            elif record.status.value == "skipped":
                counts['skipped'] += 1
            else:
                counts['failed'] += 1
                if record.status.value == "error":
                    counts['errored'] += 1
        return counts

    def build(
        self,
        aggregator: Optional[LatencyAggregator] = None,
        total: Optional[int] = None,
        elapsed_seconds: Optional[float] = None,
    ) -> RunSummary:
        """
        Produce the immutable summary.

        Test runs take their counts from the recorded test records; load runs
        (no test records) take them from the aggregator, which is authoritative
        for what was accepted before finalization.
        """
        elapsed = self.elapsed_seconds if elapsed_seconds is None else elapsed_seconds
        samples: Tuple[LatencySample, ...] = aggregator.samples() if aggregator else ()
        dropped = aggregator.dropped_after_finalize if aggregator else 0

        with self._lock:
            records = tuple(self._records)
            operations = tuple(self._operations.values())
            warnings = tuple(self._warnings)
            error = self._error

        if records or aggregator is None:
            counts = self.test_counts()
            passed, failed, skipped, errored = (
                counts['passed'], counts['failed'], counts['skipped'], counts['errored'],
            )
        else:
            snapshot = aggregator.snapshot()
            passed, failed, skipped, errored = snapshot.success_count, snapshot.failure_count, 0, 0

        completed = passed + failed + skipped
        summary = RunSummary(
            kind=self.kind,
            total=total if total is not None else completed,
            passed=passed,
            failed=failed,
            skipped=skipped,
            errored=errored,
            elapsed_seconds=elapsed,
            samples=samples,
            warnings=warnings,
            error=error,
            records=records,
            operations=operations,
            configuration=dict(self.configuration),
            dropped_after_finalize=dropped,
            started_at=self._started_at,
            finished_at=datetime.now(timezone.utc),
        )

        logger.info(
            "Run summary built",
            kind=self.kind,
            total=summary.total,
            passed=passed,
            failed=failed,
            skipped=skipped,
            aborted=summary.aborted,
            elapsed_seconds=round(elapsed, 3),
        )
        return summary

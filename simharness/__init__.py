"""
simharness: functional and load testing harness for a simulated trading platform.

Two engines share one statistics and progress layer:

- :class:`~simharness.orchestration.executor.RetryingTestExecutor` runs
  registered tests in dependency order with per-attempt timeouts and retries.
- :class:`~simharness.loadgen.generator.ConcurrentLoadGenerator` drives
  virtual users issuing operations for a fixed count or a fixed duration.

Both return a :class:`~simharness.results.collector.RunSummary`.
"""

from .loadgen import ConcurrentLoadGenerator, LoadProfile, OperationContext, OperationResult
from .monitoring import LatencyAggregator, ProgressReporter, ProgressSnapshot
from .orchestration import (
    RetryingTestExecutor,
    RetryPolicy,
    TestOutcome,
    TestSuite,
    order_tests,
)
from .results import RunResultCollector, RunSummary

__version__ = "1.0.0"

__all__ = [
    'ConcurrentLoadGenerator',
    'LoadProfile',
    'OperationContext',
    'OperationResult',
    'LatencyAggregator',
    'ProgressReporter',
    'ProgressSnapshot',
    'RetryingTestExecutor',
    'RetryPolicy',
    'TestOutcome',
    'TestSuite',
    'order_tests',
    'RunResultCollector',
    'RunSummary',
    '__version__',
]

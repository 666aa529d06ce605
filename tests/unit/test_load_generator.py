"""
Unit tests for the concurrent virtual-user load generator.
"""

import asyncio
import time

import pytest

from simharness.loadgen.generator import (
    ConcurrentLoadGenerator,
    LoadProfile,
    OperationContext,
    OperationResult,
)
from simharness.monitoring.metrics import HarnessMetrics
from simharness.orchestration.exceptions import LoadProfileError, RunAbortedError


class InstantExecutor:
    """Always succeeds with a fixed latency."""

    def __init__(self, latency_ms=0.0):
        self.latency_ms = latency_ms
        self.contexts = []

    async def execute(self, context):
        self.contexts.append(context)
        return OperationResult(success=True, latency_ms=self.latency_ms)


class ConcurrencyTracker:
    """Tracks how many operations are in flight at once."""

    def __init__(self, hold_seconds=0.01):
        self.hold_seconds = hold_seconds
        self.in_flight = 0
        self.peak = 0

    async def execute(self, context):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.hold_seconds)
        finally:
            self.in_flight -= 1
        return OperationResult(success=True, latency_ms=self.hold_seconds * 1000.0)


@pytest.fixture
def generator(reporter):
    return ConcurrentLoadGenerator(reporter=reporter)


@pytest.mark.unit
class TestLoadProfile:

    @pytest.mark.parametrize("kwargs", [
        {'virtual_users': 0, 'operations_per_user': 1},
        {'virtual_users': 1},
        {'virtual_users': 1, 'operations_per_user': -1},
        {'virtual_users': 1, 'duration_seconds': 0},
        {'virtual_users': 1, 'operations_per_user': 1, 'concurrency': 0},
        {'virtual_users': 1, 'operations_per_user': 1, 'delay_range_ms': (10.0, 5.0)},
        {'virtual_users': 1, 'operations_per_user': 1, 'refresh_interval': 0},
        {'virtual_users': 1, 'operations_per_user': 1, 'drain_timeout': -1},
    ])
    def test_invalid_profiles_rejected(self, kwargs):
        with pytest.raises(LoadProfileError):
            LoadProfile(**kwargs)

    def test_planned_operations(self):
        assert LoadProfile(virtual_users=5, operations_per_user=10).planned_operations == 50
        assert LoadProfile(virtual_users=5, duration_seconds=1.0).planned_operations is None

    def test_effective_concurrency(self):
        assert LoadProfile(virtual_users=5, operations_per_user=1).effective_concurrency == 5
        assert LoadProfile(virtual_users=5, operations_per_user=1, concurrency=2).effective_concurrency == 2
        assert LoadProfile(virtual_users=5, operations_per_user=1, concurrency=50).effective_concurrency == 5


@pytest.mark.unit
@pytest.mark.asyncio
class TestCountBoundedRuns:

    async def test_throughput_accounting(self, generator):
        profile = LoadProfile(virtual_users=5, operations_per_user=10)

        summary = await generator.run(profile, InstantExecutor(latency_ms=0.0))

        assert summary.success_count == 50
        assert summary.failure_count == 0
        assert summary.mean_latency_ms == 0.0
        assert summary.total == 50
        assert summary.error is None
        assert summary.kind == "stress"

    async def test_failures_counted_without_latency_samples(self, generator):
        async def execute(context):
            if context.operation_index % 2:
                return OperationResult(success=False, latency_ms=500.0, error="HTTP 500")
            return OperationResult(success=True, latency_ms=10.0)

        summary = await generator.run(LoadProfile(virtual_users=2, operations_per_user=4), execute)

        assert summary.success_count == 4
        assert summary.failure_count == 4
        assert summary.latencies_ms == (10.0,) * 4
        assert summary.percentile(99) == 10.0
        assert summary.operations[0].last_error == "HTTP 500"

    async def test_executor_exception_is_a_failed_operation(self, generator):
        async def execute(context):
            raise ConnectionResetError("peer went away")

        summary = await generator.run(LoadProfile(virtual_users=2, operations_per_user=3), execute)

        assert summary.failure_count == 6
        assert summary.error is None
        assert "ConnectionResetError" in summary.operations[0].last_error

    async def test_users_are_assigned_round_robin(self, generator):
        executor = InstantExecutor()

        await generator.run(
            LoadProfile(virtual_users=4, operations_per_user=1),
            executor,
            users=["alice", "bob"],
        )

        assigned = {context.user_index: context.user for context in executor.contexts}
        assert assigned == {0: "alice", 1: "bob", 2: "alice", 3: "bob"}

    async def test_operation_indexes_are_sequential_per_user(self, generator):
        executor = InstantExecutor()

        await generator.run(LoadProfile(virtual_users=2, operations_per_user=3), executor)

        for user_index in (0, 1):
            indexes = [c.operation_index for c in executor.contexts if c.user_index == user_index]
            assert indexes == [0, 1, 2]

    async def test_concurrency_ceiling(self, generator):
        tracker = ConcurrencyTracker()

        await generator.run(LoadProfile(virtual_users=10, operations_per_user=3, concurrency=3), tracker)

        assert tracker.peak <= 3

    async def test_seeded_workers_draw_reproducible_values(self, reporter):
        draws = []

        async def execute(context: OperationContext):
            draws.append((context.user_index, context.operation_index, context.rng.random()))
            return OperationResult(success=True, latency_ms=0.0)

        profile = LoadProfile(virtual_users=3, operations_per_user=2, seed=42)
        await ConcurrentLoadGenerator(reporter=reporter).run(profile, execute)
        first = sorted(draws)
        draws.clear()
        await ConcurrentLoadGenerator().run(profile, execute)

        assert sorted(draws) == first

    async def test_zero_operations(self, generator):
        summary = await generator.run(LoadProfile(virtual_users=3, operations_per_user=0), InstantExecutor())

        assert summary.completed == 0
        assert summary.success_rate == 0.0

    async def test_non_executor_rejected(self, generator):
        with pytest.raises(TypeError):
            await generator.run(LoadProfile(virtual_users=1, operations_per_user=1), object())


@pytest.mark.unit
@pytest.mark.asyncio
class TestDurationBoundedRuns:

    async def test_stops_near_deadline(self, generator):
        profile = LoadProfile(virtual_users=3, duration_seconds=0.3, delay_range_ms=(5.0, 10.0))

        started = time.perf_counter()
        summary = await generator.run(profile, InstantExecutor())
        elapsed = time.perf_counter() - started

        assert elapsed < 1.5
        assert summary.success_count > 0
        assert summary.total == summary.completed

    async def test_drain_zero_abandons_in_flight_operations(self, generator):
        async def slow(context):
            await asyncio.sleep(5)
            return OperationResult(success=True, latency_ms=5000.0)

        profile = LoadProfile(virtual_users=2, duration_seconds=0.1, drain_timeout=0)

        started = time.perf_counter()
        summary = await generator.run(profile, slow)

        assert time.perf_counter() - started < 2.0
        assert summary.completed == 0

    async def test_default_drain_waits_for_in_flight_operations(self, generator):
        async def slow(context):
            await asyncio.sleep(0.2)
            return OperationResult(success=True, latency_ms=200.0)

        summary = await generator.run(LoadProfile(virtual_users=2, duration_seconds=0.05), slow)

        assert summary.success_count == 2

    async def test_count_and_duration_stop_at_first_limit(self, generator):
        summary = await generator.run(
            LoadProfile(virtual_users=2, operations_per_user=3, duration_seconds=5.0),
            InstantExecutor(),
        )

        assert summary.success_count == 6


@pytest.mark.unit
@pytest.mark.asyncio
class TestProgressMetricsAndAbort:

    async def test_final_snapshot_closes_progress(self, generator, reporter, recorder):
        async def execute(context):
            await asyncio.sleep(0.01)
            return OperationResult(success=True, latency_ms=10.0)

        profile = LoadProfile(virtual_users=2, operations_per_user=10, refresh_interval=0.02)
        await generator.run(profile, execute)

        assert reporter.wait_closed(timeout=2.0)
        assert recorder.last.is_final
        assert sum(1 for s in recorder.snapshots if s.is_final) == 1
        assert recorder.last.completed == 20
        assert recorder.last.percentage == 100.0

    async def test_second_run_delivers_its_own_final_snapshot(self, generator, reporter, recorder):
        first = await generator.run(LoadProfile(virtual_users=2, operations_per_user=2), InstantExecutor(latency_ms=1.0))
        second = await generator.run(LoadProfile(virtual_users=2, operations_per_user=2), InstantExecutor(latency_ms=2.0))

        assert first.success_count == second.success_count == 4
        assert second.latencies_ms == (2.0, 2.0, 2.0, 2.0)
        assert generator.aggregator.dropped_after_finalize == 0
        assert reporter.wait_closed(timeout=2.0)
        finals = [s for s in recorder.snapshots if s.is_final]
        assert len(finals) == 2
        assert recorder.last.is_final
        assert recorder.last.completed == 4

    async def test_cancellation_returns_partial_summary(self, generator, recorder, reporter):
        async def execute(context):
            await asyncio.sleep(0.01)
            return OperationResult(success=True, latency_ms=10.0)

        task = asyncio.ensure_future(generator.run(LoadProfile(virtual_users=2, duration_seconds=30.0), execute))
        await asyncio.sleep(0.2)
        task.cancel()
        summary = await task

        assert isinstance(summary.error, RunAbortedError)
        assert summary.success_count > 0
        assert reporter.wait_closed(timeout=2.0)
        assert recorder.last.message == "Load run aborted"

    async def test_metrics_observed(self, reporter):
        metrics = HarnessMetrics(run_kind="stress")
        generator = ConcurrentLoadGenerator(reporter=reporter, metrics=metrics)

        await generator.run(LoadProfile(virtual_users=2, operations_per_user=5), InstantExecutor(latency_ms=3.0))

        assert metrics.sample_value("simharness_operations_total", outcome="success") == 10.0
        assert metrics.sample_value("simharness_operation_latency_seconds_count") == 10.0
        assert metrics.sample_value("simharness_active_virtual_users") == 0.0

    async def test_operation_stats_by_name(self, generator):
        async def execute(context):
            return OperationResult(success=True, latency_ms=4.0, operation="create_order")

        summary = await generator.run(LoadProfile(virtual_users=1, operations_per_user=2), execute)

        stats = summary.operations[0]
        assert stats.name == "create_order"
        assert stats.count == 2
        assert stats.mean_latency_ms == 4.0

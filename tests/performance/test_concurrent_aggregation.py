"""
Performance tests for concurrent aggregation, progress fan-out and large
count-bounded load runs.

These tests exercise the thread-safety guarantees under contention and keep
loose wall-clock bounds so that regressions to serialised execution show up.
"""

import asyncio
import threading
import time

import pytest

from simharness.loadgen.generator import ConcurrentLoadGenerator, LoadProfile, OperationResult
from simharness.monitoring.aggregator import LatencyAggregator
from simharness.monitoring.progress import ProgressReporter, ProgressSnapshot

THREADS = 8
PER_THREAD = 2500


@pytest.mark.performance
class TestThreadedAggregation:

    def test_no_lost_updates_under_contention(self):
        aggregator = LatencyAggregator(name="contention")
        start = threading.Barrier(THREADS)

        def worker(index):
            start.wait()
            for i in range(PER_THREAD):
                if i % 10 == 0:
                    aggregator.record_failure()
                else:
                    aggregator.record_success(float(index))

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = aggregator.finalize()
        assert snapshot.count == THREADS * PER_THREAD
        assert snapshot.failure_count == THREADS * PER_THREAD // 10
        assert snapshot.success_count == THREADS * PER_THREAD * 9 // 10
        assert len(snapshot.latencies_ms) == snapshot.success_count
        assert snapshot.min_latency_ms == 0.0
        assert snapshot.max_latency_ms == float(THREADS - 1)

    def test_snapshots_while_recording_are_consistent(self):
        aggregator = LatencyAggregator(name="readers")
        stop = threading.Event()
        inconsistent = []

        def reader():
            while not stop.is_set():
                snapshot = aggregator.snapshot()
                if snapshot.success_count + snapshot.failure_count != snapshot.count:
                    inconsistent.append(snapshot)
                if len(snapshot.latencies_ms) != snapshot.success_count:
                    inconsistent.append(snapshot)

        readers = [threading.Thread(target=reader) for _ in range(2)]
        for thread in readers:
            thread.start()
        for i in range(20000):
            if i % 3:
                aggregator.record_success(1.0)
            else:
                aggregator.record_failure()
        stop.set()
        for thread in readers:
            thread.join()

        assert not inconsistent

    def test_late_records_are_dropped_after_finalize(self):
        aggregator = LatencyAggregator(name="late")
        for _ in range(100):
            aggregator.record_success(5.0)

        final = aggregator.finalize()
        threads = [threading.Thread(target=aggregator.record_success, args=(1.0,)) for _ in range(THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert aggregator.snapshot().count == final.count == 100
        assert aggregator.dropped_after_finalize == THREADS


@pytest.mark.performance
@pytest.mark.asyncio
class TestAsyncAggregation:

    async def test_many_tasks_share_one_aggregator(self):
        aggregator = LatencyAggregator(name="tasks")

        async def task(index):
            for _ in range(100):
                aggregator.record_success(float(index % 7))
                await asyncio.sleep(0)

        await asyncio.gather(*(task(index) for index in range(200)))

        snapshot = aggregator.finalize()
        assert snapshot.count == 20000
        assert snapshot.percentile(100) == 6.0


class SteadyExecutor:
    """Succeeds with a per-user latency after yielding to the loop."""

    async def execute(self, context):
        await asyncio.sleep(0)
        return OperationResult(success=True, latency_ms=float(context.user_index % 5 + 1))


@pytest.mark.performance
@pytest.mark.asyncio
class TestLargeLoadRuns:

    async def test_fifty_users_hundred_orders(self, reporter, recorder):
        profile = LoadProfile(virtual_users=50, operations_per_user=100, refresh_interval=0.05, seed=3)

        started = time.perf_counter()
        summary = await ConcurrentLoadGenerator(reporter=reporter).run(profile, SteadyExecutor())
        elapsed = time.perf_counter() - started
        reporter.shutdown()

        assert summary.success_count == 5000
        assert summary.failure_count == 0
        assert len(summary.samples) == 5000
        assert summary.percentile(50) == 3.0
        assert summary.max_latency_ms == 5.0
        assert elapsed < 30.0
        assert recorder.last.is_final
        assert recorder.last.completed == 5000

    async def test_limited_concurrency_completes_quota(self, reporter):
        profile = LoadProfile(virtual_users=40, operations_per_user=25, concurrency=4, refresh_interval=0.05)

        summary = await ConcurrentLoadGenerator(reporter=reporter).run(profile, SteadyExecutor())

        assert summary.success_count == 1000
        assert summary.total == 1000


@pytest.mark.performance
class TestProgressFanOut:

    def test_concurrent_producers_deliver_final_last(self):
        reporter = ProgressReporter(buffer_size=THREADS * 200 + 1)
        consumers = [[] for _ in range(3)]
        for received in consumers:
            reporter.subscribe(received.append)

        def producer(index):
            for i in range(200):
                reporter.report(ProgressSnapshot(f"producer-{index}", 0.0, i, 200))

        threads = [threading.Thread(target=producer, args=(index,)) for index in range(THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        reporter.report(ProgressSnapshot("Done", 100.0, THREADS * 200, THREADS * 200, is_final=True))

        assert reporter.wait_closed(timeout=10)
        reporter.shutdown()

        first = [snapshot.message + str(snapshot.completed) for snapshot in consumers[0]]
        for received in consumers:
            assert len(received) == THREADS * 200 + 1
            assert received[-1].is_final
            assert [snapshot.message + str(snapshot.completed) for snapshot in received] == first
            for index in range(THREADS):
                own = [s.completed for s in received if s.message == f"producer-{index}"]
                assert own == list(range(200))

    def test_slow_consumer_does_not_block_producers(self):
        reporter = ProgressReporter(buffer_size=4)
        release = threading.Event()
        reporter.subscribe(lambda snapshot: release.wait(5))

        started = time.perf_counter()
        for i in range(1000):
            reporter.report(ProgressSnapshot("Running", 0.0, i, 1000))
        elapsed = time.perf_counter() - started

        release.set()
        reporter.report(ProgressSnapshot("Done", 100.0, 1000, 1000, is_final=True))
        reporter.shutdown()

        assert elapsed < 2.0

"""
Unit tests for the push-based progress channel.
"""

import threading

import pytest

from simharness.monitoring.progress import (
    LoggingProgressConsumer,
    ProgressReporter,
    ProgressSnapshot,
)


def snapshot(completed, total=10, is_final=False):
    return ProgressSnapshot(
        message=f"{completed}/{total}",
        percentage=completed / total * 100.0,
        completed=completed,
        total=total,
        is_final=is_final,
    )


@pytest.mark.unit
class TestProgressReporter:

    def test_snapshots_delivered_in_order_and_final_last(self, reporter, recorder):
        for n in range(5):
            reporter.report(snapshot(n))
        reporter.report(snapshot(5, is_final=True))

        assert reporter.wait_closed(timeout=2.0)
        assert [s.completed for s in recorder.snapshots] == [0, 1, 2, 3, 4, 5]
        assert recorder.last.is_final

    def test_nothing_delivered_after_final(self, reporter, recorder):
        reporter.report(snapshot(10, is_final=True))

        assert reporter.report(snapshot(11)) is False
        assert reporter.report(snapshot(12, is_final=True)) is False
        assert reporter.wait_closed(timeout=2.0)
        assert len(recorder.snapshots) == 1
        assert reporter.finalized
        assert reporter.reported == 1

    def test_subscriber_after_final_receives_nothing(self, reporter):
        reporter.report(snapshot(1, is_final=True))
        late = []

        subscription = reporter.subscribe(late.append)
        subscription.join(timeout=1.0)

        assert late == []
        assert not subscription.active

    def test_reopen_delivers_next_run_to_existing_subscribers(self, reporter, recorder):
        reporter.report(snapshot(10, is_final=True))
        assert reporter.wait_closed(timeout=2.0)

        reporter.reopen()
        assert not reporter.finalized
        assert reporter.last_snapshot is None
        reporter.report(snapshot(1, total=2))
        reporter.report(snapshot(2, total=2, is_final=True))

        assert reporter.wait_closed(timeout=2.0)
        assert [(s.completed, s.is_final) for s in recorder.snapshots] == [(10, True), (1, False), (2, True)]
        assert reporter.report(snapshot(3, total=2)) is False

    def test_reopen_while_open_is_a_no_op(self, reporter, recorder):
        reporter.report(snapshot(1))

        reporter.reopen()
        reporter.report(snapshot(2, is_final=True))

        assert reporter.wait_closed(timeout=2.0)
        assert [s.completed for s in recorder.snapshots] == [1, 2]

    def test_failing_consumer_does_not_stop_delivery(self, reporter, recorder):
        def broken(_):
            raise RuntimeError("display crashed")

        subscription = reporter.subscribe(broken, name="broken")
        reporter.report(snapshot(1))
        reporter.report(snapshot(2, is_final=True))

        assert reporter.wait_closed(timeout=2.0)
        assert subscription.consumer_errors == 2
        assert len(recorder.snapshots) == 2

    def test_overflow_evicts_oldest_pending_snapshot(self):
        progress = ProgressReporter(buffer_size=1)
        started = threading.Event()
        release = threading.Event()
        received = []

        def slow(s):
            started.set()
            release.wait(timeout=5.0)
            received.append(s.completed)

        subscription = progress.subscribe(slow)
        progress.report(snapshot(1))
        assert started.wait(timeout=2.0)

        progress.report(snapshot(2))
        progress.report(snapshot(3, is_final=True))
        release.set()

        assert progress.wait_closed(timeout=2.0)
        assert received == [1, 3]
        assert subscription.dropped == 1
        progress.shutdown(timeout=1.0)

    def test_report_never_blocks_on_slow_consumer(self):
        progress = ProgressReporter(buffer_size=2)
        release = threading.Event()
        progress.subscribe(lambda s: release.wait(timeout=5.0))

        for n in range(100):
            assert progress.report(snapshot(n, total=100))

        release.set()
        progress.shutdown(timeout=1.0)

    def test_unsubscribe_stops_delivery(self, reporter, recorder):
        extra = []
        subscription = reporter.subscribe(extra.append)
        reporter.unsubscribe(subscription)
        reporter.report(snapshot(1, is_final=True))

        assert reporter.wait_closed(timeout=2.0)
        assert extra == []
        assert len(recorder.snapshots) == 1

    def test_last_snapshot_tracked(self, reporter):
        reporter.report(snapshot(3))

        assert reporter.last_snapshot.completed == 3

    def test_invalid_buffer_size(self):
        with pytest.raises(ValueError):
            ProgressReporter(buffer_size=0)

    def test_snapshot_to_dict(self):
        data = snapshot(2).to_dict()

        assert data['completed'] == 2
        assert data['percentage'] == 20.0
        assert isinstance(data['timestamp'], str)


@pytest.mark.unit
class TestLoggingProgressConsumer:

    def test_throttles_intermediate_but_logs_final(self, captured_logs):
        consumer = LoggingProgressConsumer(every=3)
        for n in range(1, 5):
            consumer(snapshot(n))
        consumer(snapshot(5, is_final=True))

        events = [entry['event'] for entry in captured_logs]
        assert events == ["Run progress", "Run finished"]
        assert captured_logs[-1]['completed'] == 5

"""
Unit tests for per-run Prometheus metrics.
"""

import threading
from unittest.mock import patch

import pytest

from simharness.monitoring.metrics import HarnessMetrics


@pytest.mark.unit
class TestHarnessMetrics:

    def test_registries_are_private_per_instance(self):
        first = HarnessMetrics(run_kind="unit")
        second = HarnessMetrics(run_kind="unit")

        first.observe_test("passed", attempts=1)

        assert first.sample_value("simharness_tests_total", status="passed") == 1.0
        assert second.sample_value("simharness_tests_total", status="passed") is None

    def test_skipped_test_adds_no_attempts(self):
        metrics = HarnessMetrics()

        metrics.observe_test("skipped", attempts=0)

        assert metrics.sample_value("simharness_tests_total", status="skipped") == 1.0
        assert metrics.sample_value("simharness_test_attempts_total") is None

    def test_failed_operation_has_no_latency_observation(self):
        metrics = HarnessMetrics(run_kind="stress")

        metrics.observe_operation(True, latency_ms=20.0)
        metrics.observe_operation(False, latency_ms=900.0)

        assert metrics.sample_value("simharness_operations_total", outcome="success") == 1.0
        assert metrics.sample_value("simharness_operations_total", outcome="failure") == 1.0
        assert metrics.sample_value("simharness_operation_latency_seconds_count") == 1.0
        assert metrics.sample_value("simharness_operation_latency_seconds_sum") == pytest.approx(0.02)

    def test_active_user_gauge(self):
        metrics = HarnessMetrics(run_kind="stress")

        metrics.user_started()
        metrics.user_started()
        metrics.user_finished()

        assert metrics.sample_value("simharness_active_virtual_users") == 1.0

    def test_exposition(self):
        metrics = HarnessMetrics(run_kind="unit")
        metrics.observe_test("failed", attempts=3)

        text = metrics.exposition().decode("utf-8")

        assert 'simharness_tests_total{run_kind="unit",status="failed"} 1.0' in text

    def test_push_uses_private_registry(self):
        metrics = HarnessMetrics(run_kind="stress")

        with patch("simharness.monitoring.metrics.push_to_gateway") as push:
            metrics.push("localhost:9091")

        push.assert_called_once_with("localhost:9091", job="simharness", registry=metrics.registry)

    def test_active_user_gauge_under_concurrent_updates(self):
        metrics = HarnessMetrics(run_kind="stress")
        start = threading.Barrier(8)

        def user():
            start.wait()
            for _ in range(500):
                metrics.user_started()
                metrics.user_finished()
            metrics.user_started()

        threads = [threading.Thread(target=user) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.sample_value("simharness_active_virtual_users") == 8.0

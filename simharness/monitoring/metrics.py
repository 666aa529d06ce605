"""
Prometheus metrics for harness runs.

Each run owns a private ``CollectorRegistry`` so repeated runs in one process
never collide on metric registration. Engines accept an optional
:class:`HarnessMetrics` instance and call its ``observe_*`` hooks; the CLI can
push the registry to a Prometheus push gateway when a run finishes.
"""

from typing import Optional

import structlog
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    push_to_gateway,
)

logger = structlog.get_logger(__name__)

LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0)


class HarnessMetrics:
    """
    Prometheus collectors for the test orchestrator and the load generator.

    Args:
        registry: Optional registry; a fresh one is created when omitted
        run_kind: Label value distinguishing ``unit`` and ``stress`` runs
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, run_kind: str = "unit"):
        self.registry = registry or CollectorRegistry()
        self.run_kind = run_kind
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self) -> None:
        self.tests_total = Counter(
            'simharness_tests_total',
            'Completed test cases by terminal status',
            ['run_kind', 'status'],
            registry=self.registry
        )

        self.test_attempts_total = Counter(
            'simharness_test_attempts_total',
            'Test attempts including retries',
            ['run_kind'],
            registry=self.registry
        )

        self.operations_total = Counter(
            'simharness_operations_total',
            'Load generator operations by outcome',
            ['run_kind', 'outcome'],
            registry=self.registry
        )

        self.operation_latency = Histogram(
            'simharness_operation_latency_seconds',
            'Latency of successful load generator operations',
            ['run_kind'],
            registry=self.registry,
            buckets=LATENCY_BUCKETS
        )

        self.active_virtual_users = Gauge(
            'simharness_active_virtual_users',
            'Virtual users currently issuing operations',
            ['run_kind'],
            registry=self.registry
        )

    def observe_test(self, status: str, attempts: int) -> None:
        self.tests_total.labels(run_kind=self.run_kind, status=status).inc()
        if attempts:
            self.test_attempts_total.labels(run_kind=self.run_kind).inc(attempts)

    def observe_operation(self, success: bool, latency_ms: Optional[float] = None) -> None:
        outcome = "success" if success else "failure"
        self.operations_total.labels(run_kind=self.run_kind, outcome=outcome).inc()
        if success and latency_ms is not None:
            self.operation_latency.labels(run_kind=self.run_kind).observe(latency_ms / 1000.0)

    def user_started(self) -> None:
        self.active_virtual_users.labels(run_kind=self.run_kind).inc()

    def user_finished(self) -> None:
        self.active_virtual_users.labels(run_kind=self.run_kind).dec()

    def sample_value(self, name: str, **labels: str) -> Optional[float]:
        """Read one sample from the registry (``None`` when absent)."""
        return self.registry.get_sample_value(name, {"run_kind": self.run_kind, **labels})

    def exposition(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def push(self, gateway_url: str, job: str = "simharness") -> None:
        """Push the run's metrics to a Prometheus push gateway."""
        push_to_gateway(gateway_url, job=job, registry=self.registry)
        logger.info("Metrics pushed to gateway", gateway=gateway_url, job=job, run_kind=self.run_kind)

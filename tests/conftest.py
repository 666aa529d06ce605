"""
Shared pytest configuration for the simharness test suite.

Registers the test markers and provides fixtures used across the unit,
integration and performance packages: a progress reporter with a recording
consumer, a no-op sleep for retry backoff, and a log-capturing structlog setup.
"""

import asyncio
import logging
import threading
from typing import List

import pytest
import structlog

from simharness.monitoring.progress import ProgressReporter, ProgressSnapshot


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "unit: Isolated component tests"
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests exercising HTTP collaborators through a mock transport"
    )
    config.addinivalue_line(
        "markers",
        "performance: Concurrency and throughput tests"
    )


class RecordingConsumer:
    """Progress consumer that keeps every snapshot it receives."""

    def __init__(self):
        self.snapshots: List[ProgressSnapshot] = []
        self._lock = threading.Lock()

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            self.snapshots.append(snapshot)

    @property
    def last(self) -> ProgressSnapshot:
        return self.snapshots[-1]


@pytest.fixture
def recorder():
    return RecordingConsumer()


@pytest.fixture
def reporter(recorder):
    """Reporter with a recording consumer; dispatchers are stopped on teardown."""
    progress = ProgressReporter(name="test-progress")
    progress.subscribe(recorder, name="recorder")
    yield progress
    progress.shutdown(timeout=2.0)


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement recording requested backoff delays."""
    delays: List[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.sleep(0)

    sleep.delays = delays
    return sleep


@pytest.fixture
def captured_logs():
    """Capture structlog events emitted during a test."""
    with structlog.testing.capture_logs() as logs:
        yield logs


@pytest.fixture
def restore_logging():
    """Undo handler and structlog configuration installed during a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()

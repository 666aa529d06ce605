"""
Push-based progress channel between harness producers and display consumers.

Producers (the test executor after every test, the load generator's periodic monitor)
call :meth:`ProgressReporter.report`; every subscribed consumer receives the snapshots
in report order on its own dispatcher thread. Delivery is best-effort and never blocks
a producer: each subscription buffers into a bounded deque that drops the oldest
pending snapshot on overflow. The snapshot flagged ``is_final`` closes the channel.
"""

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

ProgressConsumer = Callable[["ProgressSnapshot"], None]

DEFAULT_BUFFER_SIZE = 256


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Point-in-time, eventually-consistent view of an in-flight run.

    Fields that do not apply to the producing engine are left as ``None``
    (for example ``skipped`` during a load run).
    """

    message: str
    percentage: float
    completed: int
    total: int
    passed: Optional[int] = None
    failed: Optional[int] = None
    skipped: Optional[int] = None
    average_latency_ms: Optional[float] = None
    success_rate: Optional[float] = None
    operations_per_second: Optional[float] = None
    log_message: str = ""
    is_final: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class ProgressSubscription:
    """
    One consumer's delivery lane: a bounded buffer plus a dispatcher thread.

    The dispatcher runs until the subscription is cancelled, so one
    subscription can follow several runs of a reopened reporter.
    """

    def __init__(self, consumer: ProgressConsumer, buffer_size: int, name: str):
        self.consumer = consumer
        self.name = name
        self._buffer: Deque[ProgressSnapshot] = deque(maxlen=buffer_size)
        self._condition = threading.Condition()
        self._cancelled = False
        self._final_delivered = threading.Event()
        self.delivered = 0
        self.dropped = 0
        self.consumer_errors = 0
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            name=f"progress-{name}",
            daemon=True,
        )
        self._thread.start()

    @property
    def active(self) -> bool:
        return self._thread.is_alive()

    def offer(self, snapshot: ProgressSnapshot) -> None:
        """Enqueue without blocking; evicts the oldest pending snapshot when full."""
        with self._condition:
            if self._cancelled:
                return
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(snapshot)
            self._condition.notify()

    def cancel(self) -> None:
        with self._condition:
            self._cancelled = True
            self._buffer.clear()
            self._condition.notify()

    def wait_final(self, timeout: Optional[float] = None) -> bool:
        """Block until the final snapshot was handed to the consumer."""
        return self._final_delivered.wait(timeout)

    def rearm(self) -> None:
        """Forget the delivered final snapshot before the next run starts."""
        self._final_delivered.clear()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _dispatch_loop(self) -> None:
        while True:
            with self._condition:
                while not self._buffer and not self._cancelled:
                    self._condition.wait()
                if self._cancelled:
                    return
                snapshot = self._buffer.popleft()

            try:
                self.consumer(snapshot)
                self.delivered += 1
            except Exception as e:
                # Consumer errors are counted, never propagated
                self.consumer_errors += 1
                logger.warning(
                    "Progress consumer raised",
                    subscription=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            if snapshot.is_final:
                self._final_delivered.set()


class ProgressReporter:
    """
    Fan-out sink for :class:`ProgressSnapshot` values.

    Thread-safe: producers on any thread may report concurrently. Snapshots are
    appended to every subscription under one lock so that all consumers observe
    the same relative order. After a snapshot with ``is_final=True`` is reported
    the reporter is closed and later reports are ignored until :meth:`reopen`
    starts the next run.

    Example:
        reporter = ProgressReporter()
        reporter.subscribe(lambda snap: print(snap.percentage))
        reporter.report(ProgressSnapshot("Running", 50.0, 1, 2))
        reporter.report(ProgressSnapshot("Done", 100.0, 2, 2, is_final=True))
        reporter.wait_closed(timeout=5)
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE, name: str = "progress"):
        if buffer_size <= 0:
            raise ValueError(f"buffer_size must be positive, got {buffer_size}")
        self.buffer_size = buffer_size
        self.name = name
        self._lock = threading.Lock()
        self._subscriptions: List[ProgressSubscription] = []
        self._finalized = False
        self._reported = 0
        self._last_snapshot: Optional[ProgressSnapshot] = None

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def reported(self) -> int:
        return self._reported

    @property
    def last_snapshot(self) -> Optional[ProgressSnapshot]:
        return self._last_snapshot

    def subscribe(self, consumer: ProgressConsumer, name: Optional[str] = None) -> ProgressSubscription:
        """
        Register a consumer callable.

        Consumers subscribed after the final snapshot receive nothing.
        """
        with self._lock:
            subscription = ProgressSubscription(
                consumer,
                buffer_size=self.buffer_size,
                name=name or f"{self.name}-{len(self._subscriptions)}",
            )
            if self._finalized:
                subscription.cancel()
            else:
                self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.cancel()

    def report(self, snapshot: ProgressSnapshot) -> bool:
        """
        Publish a snapshot to every subscriber without blocking.

        Returns:
            False when the reporter was already closed by a final snapshot
        """
        with self._lock:
            if self._finalized:
                logger.debug("Progress snapshot ignored after final", reporter=self.name)
                return False
            if snapshot.is_final:
                self._finalized = True
            self._reported += 1
            self._last_snapshot = snapshot
            for subscription in self._subscriptions:
                subscription.offer(snapshot)
        return True

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Wait until every subscriber has received the final snapshot."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        return all(subscription.wait_final(timeout) for subscription in subscriptions)

    def reopen(self, timeout: float = 5.0) -> None:
        """
        Start a new run on a reporter closed by a final snapshot.

        Existing subscriptions stay attached and receive the next run's
        snapshots after the previous final one. No-op while the reporter is open.
        """
        if not self._finalized:
            return
        if not self.wait_closed(timeout):
            logger.warning("Previous final snapshot still pending on reopen", reporter=self.name)
        with self._lock:
            for subscription in self._subscriptions:
                subscription.rearm()
            self._finalized = False
            self._last_snapshot = None
        logger.debug("Progress reporter reopened", reporter=self.name)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Let pending deliveries finish (when final) and stop every dispatcher."""
        if self._finalized:
            self.wait_closed(timeout)
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.cancel()
            subscription.join(timeout)


class LoggingProgressConsumer:
    """
    Consumer that writes snapshots to the structured log stream.

    Intermediate snapshots are throttled to every ``every`` calls; the final
    snapshot is always logged.
    """

    def __init__(self, logger_name: str = "simharness.progress", every: int = 1):
        self.log = structlog.get_logger(logger_name)
        self.every = max(1, every)
        self._seen = 0

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        self._seen += 1
        if not snapshot.is_final and self._seen % self.every:
            return

        event = "Run finished" if snapshot.is_final else "Run progress"
        self.log.info(
            event,
            message=snapshot.message,
            percentage=round(snapshot.percentage, 1),
            completed=snapshot.completed,
            total=snapshot.total,
            passed=snapshot.passed,
            failed=snapshot.failed,
            skipped=snapshot.skipped,
            average_latency_ms=snapshot.average_latency_ms,
            success_rate=snapshot.success_rate,
            operations_per_second=snapshot.operations_per_second,
            detail=snapshot.log_message or None,
        )

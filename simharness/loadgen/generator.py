"""
Concurrent virtual-user load generator.

Each virtual user is an asyncio task that issues operations sequentially
through an injected :class:`OperationExecutor`, while users run concurrently
with each other up to a concurrency ceiling. Outcomes flow into a shared
:class:`~simharness.monitoring.aggregator.LatencyAggregator`; a periodic
monitor task pushes live progress snapshots to the reporter.

Key Features:
- Operation-count and wall-clock stop conditions (either or both)
- Worker-local random generators for inter-operation delays
- Cooperative shared deadline observed between operations
- Configurable drain behavior for in-flight operations at the deadline
- Results arriving after finalization are dropped, never counted
"""

import asyncio
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import structlog

from ..monitoring.aggregator import LatencyAggregator
from ..monitoring.metrics import HarnessMetrics
from ..monitoring.progress import ProgressReporter, ProgressSnapshot
from ..orchestration.exceptions import LoadProfileError, RunAbortedError
from ..results.collector import RunResultCollector, RunSummary

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LoadProfile:
    """
    Shape of one load run.

    At least one of ``operations_per_user`` and ``duration_seconds`` must be
    set; when both are, each user stops at whichever comes first.

    Attributes:
        virtual_users: Number of simulated users
        operations_per_user: Operation quota per user
        duration_seconds: Wall-clock limit for the whole run
        concurrency: Maximum users active at once (defaults to ``virtual_users``)
        delay_range_ms: Inclusive random delay window between a user's operations
        refresh_interval: Seconds between live progress snapshots
        seed: Base seed for worker-local random generators
        drain_timeout: Seconds to wait for in-flight operations after the
            deadline; ``None`` waits for all, ``0`` abandons them at once
    """

    virtual_users: int
    operations_per_user: Optional[int] = None
    duration_seconds: Optional[float] = None
    concurrency: Optional[int] = None
    delay_range_ms: Tuple[float, float] = (0.0, 0.0)
    refresh_interval: float = 0.25
    seed: Optional[int] = None
    drain_timeout: Optional[float] = None

    def __post_init__(self):
        if self.virtual_users < 1:
            raise LoadProfileError(f"virtual_users must be at least 1, got {self.virtual_users}")
        if self.operations_per_user is None and self.duration_seconds is None:
            raise LoadProfileError("Either operations_per_user or duration_seconds is required")
        if self.operations_per_user is not None and self.operations_per_user < 0:
            raise LoadProfileError(f"operations_per_user cannot be negative, got {self.operations_per_user}")
        if self.duration_seconds is not None and self.duration_seconds <= 0:
            raise LoadProfileError(f"duration_seconds must be positive, got {self.duration_seconds}")
        if self.concurrency is not None and self.concurrency < 1:
            raise LoadProfileError(f"concurrency must be at least 1, got {self.concurrency}")
        low, high = self.delay_range_ms
        if low < 0 or high < low:
            raise LoadProfileError(f"Invalid delay window {self.delay_range_ms}")
        if self.refresh_interval <= 0:
            raise LoadProfileError(f"refresh_interval must be positive, got {self.refresh_interval}")
        if self.drain_timeout is not None and self.drain_timeout < 0:
            raise LoadProfileError(f"drain_timeout cannot be negative, got {self.drain_timeout}")

    @property
    def duration_bounded(self) -> bool:
        return self.duration_seconds is not None

    @property
    def planned_operations(self) -> Optional[int]:
        if self.operations_per_user is None or self.duration_bounded:
            return None
        return self.virtual_users * self.operations_per_user

    @property
    def effective_concurrency(self) -> int:
        return min(self.concurrency or self.virtual_users, self.virtual_users)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['delay_range_ms'] = list(self.delay_range_ms)
        data['concurrency'] = self.effective_concurrency
        return data


@dataclass
class OperationContext:
    """Per-operation input handed to an executor."""

    user_index: int
    operation_index: int
    user: Any = None
    rng: random.Random = field(default_factory=random.Random, repr=False)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operation; latency excludes any inter-operation delay."""

    success: bool
    latency_ms: float
    error: Optional[str] = None
    operation: str = "operation"


class OperationExecutor(Protocol):
    """Performs one operation against a target and reports its outcome."""

    async def execute(self, context: OperationContext) -> OperationResult:
        ...


ExecutorLike = Union[OperationExecutor, Callable[[OperationContext], Awaitable[OperationResult]]]


class ConcurrentLoadGenerator:
    """
    Drives virtual users against an :class:`OperationExecutor`.

    Args:
        reporter: Progress sink for live and final snapshots
        metrics: Optional Prometheus collectors
        aggregator_factory: Builds the per-run aggregator
    """

    def __init__(
        self,
        reporter: Optional[ProgressReporter] = None,
        metrics: Optional[HarnessMetrics] = None,
        aggregator_factory: Callable[[], LatencyAggregator] = lambda: LatencyAggregator(name="load"),
    ):
        self.reporter = reporter or ProgressReporter(name="load-progress")
        self.metrics = metrics
        self.aggregator_factory = aggregator_factory
        self.aggregator: Optional[LatencyAggregator] = None

    async def run(
        self,
        profile: LoadProfile,
        executor: ExecutorLike,
        users: Optional[Sequence[Any]] = None,
        collector: Optional[RunResultCollector] = None,
    ) -> RunSummary:
        """
        Run the profile to completion and return the summary.

        Executor failures count as failed operations. Cancellation of the run
        returns a partial summary whose ``error`` is a :class:`RunAbortedError`.
        """
        execute = self._resolve_executor(executor)
        aggregator = self.aggregator_factory()
        self.aggregator = aggregator
        self.reporter.reopen()
        collector = collector or RunResultCollector(kind="stress", configuration=profile.to_dict())

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        deadline = loop.time() + profile.duration_seconds if profile.duration_bounded else None
        semaphore = asyncio.Semaphore(profile.effective_concurrency)
        users = list(users or ())

        logger.info(
            "Load run starting",
            virtual_users=profile.virtual_users,
            operations_per_user=profile.operations_per_user,
            duration_seconds=profile.duration_seconds,
            concurrency=profile.effective_concurrency,
        )

        collector.start()
        started = time.perf_counter()
        workers: List[asyncio.Future] = [
            asyncio.ensure_future(self._worker(
                index,
                users[index % len(users)] if users else None,
                profile,
                execute,
                aggregator,
                collector,
                semaphore,
                stop,
                deadline,
            ))
            for index in range(profile.virtual_users)
        ]
        monitor = asyncio.ensure_future(self._monitor(profile, aggregator, started, stop))

        try:
            if profile.duration_bounded:
                _, pending = await asyncio.wait(workers, timeout=profile.duration_seconds)
                stop.set()
                if pending and profile.drain_timeout != 0:
                    await asyncio.wait(pending, timeout=profile.drain_timeout)
            else:
                await asyncio.gather(*workers)
        except asyncio.CancelledError:
            logger.warning("Load run cancelled", completed=aggregator.completed)
            collector.set_error(RunAbortedError("Load run cancelled", completed=aggregator.completed))
        except Exception as e:
            logger.error("Load run aborted by harness error", error=str(e), exc_info=e)
            aborted = RunAbortedError(f"Harness error: {e}", completed=aggregator.completed)
            aborted.__cause__ = e
            collector.set_error(aborted)

        stop.set()
        elapsed = time.perf_counter() - started
        aggregator.finalize()

        abandoned = [worker for worker in workers if not worker.done()]
        for worker in abandoned:
            worker.cancel()
        monitor.cancel()
        await asyncio.gather(*workers, monitor, return_exceptions=True)
        if abandoned:
            logger.info("In-flight operations abandoned at deadline", workers=len(abandoned))

        summary = collector.build(
            aggregator,
            total=profile.planned_operations,
            elapsed_seconds=elapsed,
        )
        self._report(profile, aggregator, elapsed, is_final=True, error=summary.error)
        logger.info(
            "Load run finished",
            success_count=summary.success_count,
            failure_count=summary.failure_count,
            operations_per_second=round(summary.operations_per_second, 2),
            dropped_after_finalize=summary.dropped_after_finalize,
        )
        return summary

    @staticmethod
    def _resolve_executor(executor: ExecutorLike) -> Callable[[OperationContext], Awaitable[OperationResult]]:
        execute = getattr(executor, "execute", None)
        if callable(execute):
            return execute
        if callable(executor):
            return executor
        raise TypeError(f"{type(executor).__name__} is not an operation executor")

    async def _worker(
        self,
        index: int,
        user: Any,
        profile: LoadProfile,
        execute: Callable[[OperationContext], Awaitable[OperationResult]],
        aggregator: LatencyAggregator,
        collector: RunResultCollector,
        semaphore: asyncio.Semaphore,
        stop: asyncio.Event,
        deadline: Optional[float],
    ) -> int:
        rng = random.Random(None if profile.seed is None else profile.seed + index)
        loop = asyncio.get_running_loop()
        issued = 0

        async with semaphore:
            if stop.is_set():
                return issued
            if self.metrics is not None:
                self.metrics.user_started()
            try:
                while self._should_continue(profile, issued, stop, deadline, loop):
                    context = OperationContext(
                        user_index=index,
                        operation_index=issued,
                        user=user,
                        rng=rng,
                    )
                    result = await self._execute_once(execute, context)
                    issued += 1
                    self._record(result, aggregator, collector)

                    if self._should_continue(profile, issued, stop, deadline, loop):
                        await self._delay(profile, rng, stop)
            finally:
                if self.metrics is not None:
                    self.metrics.user_finished()
        return issued

    @staticmethod
    def _should_continue(
        profile: LoadProfile,
        issued: int,
        stop: asyncio.Event,
        deadline: Optional[float],
        loop: asyncio.AbstractEventLoop,
    ) -> bool:
        if stop.is_set():
            return False
        if deadline is not None and loop.time() >= deadline:
            return False
        if profile.operations_per_user is not None and issued >= profile.operations_per_user:
            return False
        return True

    @staticmethod
    async def _execute_once(
        execute: Callable[[OperationContext], Awaitable[OperationResult]],
        context: OperationContext,
    ) -> OperationResult:
        started = time.perf_counter()
        try:
            return await execute(context)
        except Exception as e:
            latency_ms = (time.perf_counter() - started) * 1000.0
            logger.debug(
                "Operation executor raised",
                user_index=context.user_index,
                operation_index=context.operation_index,
                error=str(e),
            )
            return OperationResult(
                success=False,
                latency_ms=latency_ms,
                error=f"{type(e).__name__}: {e}",
            )

    @staticmethod
    async def _delay(profile: LoadProfile, rng: random.Random, stop: asyncio.Event) -> None:
        low, high = profile.delay_range_ms
        if high <= 0:
            return
        delay_seconds = rng.uniform(low, high) / 1000.0
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    def _record(
        self,
        result: OperationResult,
        aggregator: LatencyAggregator,
        collector: RunResultCollector,
    ) -> None:
        if result.success:
            accepted = aggregator.record_success(result.latency_ms)
        else:
            accepted = aggregator.record_failure()
        if not accepted:
            return

        collector.record_operation(result.operation, result.success, result.latency_ms, result.error)
        if self.metrics is not None:
            self.metrics.observe_operation(result.success, result.latency_ms)

    async def _monitor(
        self,
        profile: LoadProfile,
        aggregator: LatencyAggregator,
        started: float,
        stop: asyncio.Event,
    ) -> None:
        while not stop.is_set():
            await asyncio.sleep(profile.refresh_interval)
            self._report(profile, aggregator, time.perf_counter() - started)

    def _report(
        self,
        profile: LoadProfile,
        aggregator: LatencyAggregator,
        elapsed: float,
        is_final: bool = False,
        error: Optional[BaseException] = None,
    ) -> None:
        live = aggregator.live_stats()
        planned = profile.planned_operations

        if is_final:
            percentage = 100.0
        elif planned:
            percentage = min(live.completed / planned * 100.0, 100.0)
        elif profile.duration_seconds:
            percentage = min(elapsed / profile.duration_seconds * 100.0, 100.0)
        else:
            percentage = 0.0

        if is_final:
            message = "Load run aborted" if error is not None else "Load run completed"
        else:
            message = "Load run in progress"

        self.reporter.report(ProgressSnapshot(
            message=message,
            percentage=percentage,
            completed=live.completed,
            total=planned if planned is not None else live.completed,
            passed=live.success_count,
            failed=live.failure_count,
            average_latency_ms=live.window_mean_latency_ms,
            success_rate=live.window_success_rate,
            operations_per_second=live.success_count / elapsed if elapsed > 0 else 0.0,
            log_message=str(error) if error is not None else "",
            is_final=is_final,
        ))

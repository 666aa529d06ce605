"""
Sequential, retrying test executor.

Runs an ordered suite one test at a time. Each attempt is bounded by a hard
deadline; failed or timed-out attempts are retried with a linearly increasing
backoff until the retry budget is spent. Retry scheduling is delegated to
tenacity's ``AsyncRetrying`` with a result-based retry predicate, so failing
attempts are modelled as values rather than exceptions.

Key Features:
- Synchronous and coroutine test bodies; synchronous bodies run on a daemon
  thread so a hung body can be abandoned at its deadline
- Root-cause unwrapping of exceptions raised by test bodies
- One retained outcome (the last attempt's) per test
- Progress snapshot after every test, final snapshot when the run ends
- Harness-level failures produce a partial summary instead of propagating
"""

import asyncio
import inspect
import threading
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_incrementing

from ..monitoring.aggregator import LatencyAggregator
from ..monitoring.metrics import HarnessMetrics
from ..monitoring.progress import ProgressReporter, ProgressSnapshot
from ..results.collector import RunResultCollector, RunSummary
from .dependency_graph import ExecutionOrder, order_tests
from .exceptions import InstantiationError, RunAbortedError, TestTimeoutError
from .models import FailureKind, RetryPolicy, TestAction, TestCase, TestOutcome, TestRecord, TestStatus

logger = structlog.get_logger(__name__)

SleepFunction = Callable[[float], Awaitable[Any]]


def root_cause(error: BaseException) -> BaseException:
    """Follow ``__cause__`` (then ``__context__``) to the innermost exception."""
    seen = {id(error)}
    current = error
    while True:
        inner = current.__cause__ or current.__context__
        if inner is None or id(inner) in seen:
            return current
        seen.add(id(inner))
        current = inner


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


def _resolve_future(future: "asyncio.Future", result: Any = None, error: Optional[BaseException] = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


def _discard_result(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


class RetryingTestExecutor:
    """
    Executes an :class:`ExecutionOrder` under a :class:`RetryPolicy`.

    Args:
        reporter: Progress sink receiving a snapshot after every test
        aggregator_factory: Builds the per-run aggregator collecting test durations
        metrics: Optional Prometheus collectors
        sleep: Awaitable sleep used between attempts (injectable for tests)
    """

    def __init__(
        self,
        reporter: Optional[ProgressReporter] = None,
        aggregator_factory: Callable[[], LatencyAggregator] = lambda: LatencyAggregator(name="test-durations"),
        metrics: Optional[HarnessMetrics] = None,
        sleep: SleepFunction = asyncio.sleep,
    ):
        self.reporter = reporter or ProgressReporter(name="unit-progress")
        self.aggregator_factory = aggregator_factory
        self.aggregator: Optional[LatencyAggregator] = None
        self.metrics = metrics
        self._sleep = sleep

    async def run(
        self,
        order: Union[ExecutionOrder, Iterable[TestCase]],
        policy: Optional[RetryPolicy] = None,
        collector: Optional[RunResultCollector] = None,
    ) -> RunSummary:
        """
        Run every test in order and return the summary.

        Never raises for test failures. A harness-level exception, or
        cancellation of the run, stops execution and returns a partial summary
        whose ``error`` is a :class:`RunAbortedError`.
        """
        policy = policy or RetryPolicy()
        if not isinstance(order, ExecutionOrder):
            order = order_tests(order)

        aggregator = self.aggregator_factory()
        self.aggregator = aggregator
        self.reporter.reopen()
        collector = collector or RunResultCollector(kind="unit")
        collector.start()
        collector.add_warnings(order.warnings)
        total = len(order)

        logger.info(
            "Test run starting",
            tests=total,
            timeout_seconds=policy.timeout_seconds,
            max_attempts=policy.max_attempts,
            warnings=len(order.warnings),
        )
        self._report(collector, aggregator, total, message="Starting test run")

        completed = 0
        try:
            for case in order:
                record = await self._run_case(case, policy)
                completed += 1
                self._record(collector, aggregator, record)
                self._report(
                    collector,
                    aggregator,
                    total,
                    message=f"{record.status.value.upper()}: {case.identifier}",
                    log_message=record.outcome.message if record.outcome else (case.skip_reason or ""),
                )
        except asyncio.CancelledError:
            logger.warning("Test run cancelled", completed=completed, total=total)
            collector.set_error(RunAbortedError("Test run cancelled", completed=completed))
        except Exception as e:
            logger.error(
                "Test run aborted by harness error",
                completed=completed,
                total=total,
                error=str(e),
                exc_info=e,
            )
            aborted = RunAbortedError(f"Harness error: {e}", completed=completed)
            aborted.__cause__ = e
            collector.set_error(aborted)

        aggregator.finalize()
        summary = collector.build(aggregator, total=total)
        self._report(
            collector,
            aggregator,
            total,
            message="Test run aborted" if summary.aborted else "Test run completed",
            log_message=str(summary.error) if summary.error else "",
            is_final=True,
        )
        return summary

    async def _run_case(self, case: TestCase, policy: RetryPolicy) -> TestRecord:
        if case.skip:
            logger.info("Test skipped", test_id=case.identifier, reason=case.skip_reason)
            return TestRecord(case=case, status=TestStatus.SKIPPED, attempts=0)

        started = time.perf_counter()
        try:
            action = case.bind()
        except InstantiationError as e:
            logger.error("Test could not be instantiated", test_id=case.identifier, error=str(e))
            outcome = TestOutcome.failed(
                str(e),
                error=root_cause(e),
                duration_ms=_elapsed_ms(started),
                failure_kind=FailureKind.INSTANTIATION_ERROR,
            )
            return TestRecord(case=case, status=TestStatus.ERROR, outcome=outcome, attempts=0)

        attempts = 0

        async def attempt() -> TestOutcome:
            nonlocal attempts
            attempts += 1
            return await self._attempt(case, action, policy, attempts)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_incrementing(
                start=policy.backoff_base_seconds,
                increment=policy.backoff_base_seconds,
            ),
            retry=retry_if_result(lambda outcome: not outcome.success),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            before_sleep=self._before_sleep(case),
            sleep=self._sleep,
        )
        outcome = await retrying(attempt)

        status = TestStatus.PASSED if outcome.success else TestStatus.FAILED
        if outcome.success:
            logger.info(
                "Test passed",
                test_id=case.identifier,
                attempts=attempts,
                duration_ms=round(outcome.duration_ms, 3),
            )
        else:
            logger.warning(
                "Test failed",
                test_id=case.identifier,
                attempts=attempts,
                failure_kind=outcome.failure_kind.value if outcome.failure_kind else None,
                message=outcome.message,
            )
        return TestRecord(case=case, status=status, outcome=outcome, attempts=attempts)

    async def _attempt(
        self,
        case: TestCase,
        action: TestAction,
        policy: RetryPolicy,
        attempt_number: int,
    ) -> TestOutcome:
        started = time.perf_counter()
        task = asyncio.ensure_future(self._invoke(action))
        try:
            done, _ = await asyncio.wait({task}, timeout=policy.timeout_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            task.add_done_callback(_discard_result)
            error = TestTimeoutError(case.identifier, policy.timeout_seconds, attempt=attempt_number)
            return TestOutcome.failed(
                str(error),
                error=error,
                duration_ms=_elapsed_ms(started),
                failure_kind=FailureKind.TIMEOUT,
            )

        duration_ms = _elapsed_ms(started)
        error = task.exception()
        if error is not None:
            cause = root_cause(error)
            return TestOutcome.failed(
                f"{type(cause).__name__}: {cause}",
                error=cause,
                duration_ms=duration_ms,
            )
        return self._coerce(task.result(), duration_ms)

    async def _invoke(self, action: TestAction) -> Any:
        if inspect.iscoroutinefunction(action):
            return await action()

        result = await self._run_in_thread(action)
        if inspect.isawaitable(result):
            return await result
        return result

    async def _run_in_thread(self, action: TestAction) -> Any:
        """Run a synchronous body on a daemon thread that can be abandoned."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def target() -> None:
            try:
                result = action()
            except BaseException as e:
                result, error = None, e
            else:
                error = None
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve_future, future, result, error)

        threading.Thread(target=target, name="simharness-test-body", daemon=True).start()
        return await future

    @staticmethod
    def _coerce(result: Any, duration_ms: float) -> TestOutcome:
        if isinstance(result, TestOutcome):
            if not result.success and result.failure_kind is None:
                return TestOutcome.failed(result.message, result.error, duration_ms)
            return result.with_duration(duration_ms)
        if result is False:
            return TestOutcome.failed("Test returned False", duration_ms=duration_ms)
        return TestOutcome.passed(duration_ms=duration_ms)

    def _before_sleep(self, case: TestCase) -> Callable:
        def log_retry(retry_state) -> None:
            outcome = retry_state.outcome.result()
            logger.warning(
                "Test attempt failed, backing off",
                test_id=case.identifier,
                attempt_number=retry_state.attempt_number,
                backoff_seconds=getattr(retry_state.next_action, 'sleep', 0),
                failure_kind=outcome.failure_kind.value if outcome.failure_kind else None,
                message=outcome.message,
            )
        return log_retry

    def _record(self, collector: RunResultCollector, aggregator: LatencyAggregator, record: TestRecord) -> None:
        collector.record_test(record)
        if record.outcome is not None:
            if record.status is TestStatus.PASSED:
                aggregator.record_success(record.outcome.duration_ms)
            else:
                aggregator.record_failure(record.outcome.duration_ms)
        if self.metrics is not None:
            self.metrics.observe_test(record.status.value, record.attempts)

    def _report(
        self,
        collector: RunResultCollector,
        aggregator: LatencyAggregator,
        total: int,
        message: str,
        log_message: str = "",
        is_final: bool = False,
    ) -> None:
        counts = collector.test_counts()
        completed = counts['passed'] + counts['failed'] + counts['skipped']
        live = aggregator.live_stats()
        self.reporter.report(ProgressSnapshot(
            message=message,
            percentage=(completed / total * 100.0) if total else 100.0,
            completed=completed,
            total=total,
            passed=counts['passed'],
            failed=counts['failed'],
            skipped=counts['skipped'],
            average_latency_ms=live.window_mean_latency_ms,
            success_rate=live.window_success_rate,
            operations_per_second=None,
            log_message=log_message,
            is_final=is_final,
        ))

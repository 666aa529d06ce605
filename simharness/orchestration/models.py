"""
Data model for ordered test orchestration.

Test cases are immutable once registered; outcomes are created once per attempt
and only the last attempt's outcome is kept on the resulting ``TestRecord``.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .exceptions import InstantiationError


class TestStatus(Enum):
    """Terminal state of one test case."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class FailureKind(Enum):
    """Why a test or a run did not succeed."""

    LOGICAL_FAILURE = "logical_failure"
    TIMEOUT = "timeout"
    INSTANTIATION_ERROR = "instantiation_error"
    HARNESS_ERROR = "harness_error"


@dataclass(frozen=True)
class TestOutcome:
    """Result of a single attempt."""

    __test__ = False

    success: bool
    message: str = ""
    error: Optional[BaseException] = None
    duration_ms: float = 0.0
    failure_kind: Optional[FailureKind] = None

    @classmethod
    def passed(cls, message: str = "Passed", duration_ms: float = 0.0) -> "TestOutcome":
        return cls(success=True, message=message, duration_ms=duration_ms)

    @classmethod
    def failed(
        cls,
        message: str,
        error: Optional[BaseException] = None,
        duration_ms: float = 0.0,
        failure_kind: FailureKind = FailureKind.LOGICAL_FAILURE,
    ) -> "TestOutcome":
        return cls(
            success=False,
            message=message,
            error=error,
            duration_ms=duration_ms,
            failure_kind=failure_kind,
        )

    def with_duration(self, duration_ms: float) -> "TestOutcome":
        return replace(self, duration_ms=duration_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'error_type': type(self.error).__name__ if self.error is not None else None,
            'error': str(self.error) if self.error is not None else None,
            'duration_ms': round(self.duration_ms, 3),
            'failure_kind': self.failure_kind.value if self.failure_kind else None,
        }


TestAction = Callable[[], Any]


@dataclass(frozen=True)
class TestCase:
    """
    One registered test.

    A test is either a plain zero-argument callable (``action``) or a method
    bound on demand from an owner object built by ``owner_factory``. The body
    may be synchronous or a coroutine function, and may return ``None``
    (pass), a ``bool`` or a :class:`TestOutcome`; raising means failure.
    """

    __test__ = False

    identifier: str
    action: Optional[TestAction] = field(default=None, repr=False, compare=False)
    description: str = ""
    skip: bool = False
    skip_reason: Optional[str] = None
    dependencies: Tuple[str, ...] = ()
    owner_factory: Optional[Callable[[], Any]] = field(default=None, repr=False, compare=False)
    method_name: Optional[str] = None

    @property
    def short_name(self) -> str:
        """Trailing ``Class.Method`` form used for loose dependency lookup."""
        parts = self.identifier.split(".")
        return ".".join(parts[-2:])

    def bind(self) -> TestAction:
        """
        Produce the zero-argument callable for one run of this test.

        Raises:
            InstantiationError: When the owner cannot be built or lacks the method
        """
        if self.owner_factory is not None:
            try:
                owner = self.owner_factory()
            except Exception as e:
                raise InstantiationError(
                    f"Could not construct test owner: {e}",
                    test_id=self.identifier,
                ) from e

            method = getattr(owner, self.method_name or "", None)
            if not callable(method):
                raise InstantiationError(
                    f"Test owner {type(owner).__name__} has no callable '{self.method_name}'",
                    test_id=self.identifier,
                )
            return method

        if self.action is None or not callable(self.action):
            raise InstantiationError("Test has no callable body", test_id=self.identifier)
        return self.action


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-test deadline and retry budget.

    Between attempts the executor waits ``backoff_base_seconds * attempt``.
    """

    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff_base_seconds < 0:
            raise ValueError(f"backoff_base_seconds cannot be negative, got {self.backoff_base_seconds}")


@dataclass(frozen=True)
class TestRecord:
    """Terminal status of a test with its retained (last) outcome."""

    __test__ = False

    case: TestCase
    status: TestStatus
    outcome: Optional[TestOutcome] = None
    attempts: int = 0

    @property
    def identifier(self) -> str:
        return self.case.identifier

    def to_dict(self) -> Dict[str, Any]:
        return {
            'test_id': self.case.identifier,
            'description': self.case.description,
            'status': self.status.value,
            'attempts': self.attempts,
            'skip_reason': self.case.skip_reason if self.status is TestStatus.SKIPPED else None,
            'outcome': self.outcome.to_dict() if self.outcome else None,
        }

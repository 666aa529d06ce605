"""
Harness-level exception hierarchy.

These exceptions describe failures of the harness itself (binding a test,
enforcing a deadline, validating configuration) as opposed to failures of the
system under test. Per-test failures never escape the executor; only
``RunAbortedError`` is surfaced through a run's error channel.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class HarnessError(Exception):
    """
    Base exception for all harness failures.

    Attributes:
        test_id: Identifier of the test involved, when there is one
        error_context: Additional context for structured logging
        timestamp: When the error was raised
    """

    def __init__(self, message: str, test_id: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.test_id = test_id
        self.error_context: Dict[str, Any] = dict(context)
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.__class__.__name__,
            'message': super().__str__(),
            'test_id': self.test_id,
            'error_context': self.error_context,
            'timestamp': self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        base_msg = super().__str__()
        if self.test_id:
            return f"{base_msg} (test={self.test_id})"
        return base_msg


class InstantiationError(HarnessError):
    """The harness could not construct or bind a test's callable."""


class TestTimeoutError(HarnessError):
    """A test attempt exceeded its deadline and was abandoned."""

    __test__ = False

    def __init__(self, test_id: str, timeout_seconds: float, attempt: int = 1):
        super().__init__(
            f"Test exceeded timeout of {timeout_seconds:g}s",
            test_id=test_id,
            timeout_seconds=timeout_seconds,
            attempt=attempt,
        )
        self.timeout_seconds = timeout_seconds
        self.attempt = attempt


class RunAbortedError(HarnessError):
    """An exception outside any per-test boundary stopped the run."""

    def __init__(self, message: str, completed: int = 0, **context: Any):
        super().__init__(message, completed=completed, **context)
        self.completed = completed


class ConfigurationError(HarnessError):
    """Settings failed validation."""

    def __init__(self, message: str, key: Optional[str] = None, **context: Any):
        super().__init__(message, key=key, **context)
        self.key = key


class LoadProfileError(ValueError):
    """A load profile combined values that cannot describe a run."""

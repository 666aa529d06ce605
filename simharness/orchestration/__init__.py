"""
Ordered, retrying test orchestration.
"""

from .dependency_graph import (
    DependencyGraph,
    DependencyResolver,
    ExecutionOrder,
    OrderingWarning,
    WarningKind,
    order_tests,
)
from .exceptions import (
    ConfigurationError,
    HarnessError,
    InstantiationError,
    LoadProfileError,
    RunAbortedError,
    TestTimeoutError,
)
from .executor import RetryingTestExecutor, root_cause
from .models import FailureKind, RetryPolicy, TestCase, TestOutcome, TestRecord, TestStatus
from .suite import TestSuite

__all__ = [
    'DependencyGraph',
    'DependencyResolver',
    'ExecutionOrder',
    'OrderingWarning',
    'WarningKind',
    'order_tests',
    'ConfigurationError',
    'HarnessError',
    'InstantiationError',
    'LoadProfileError',
    'RunAbortedError',
    'TestTimeoutError',
    'RetryingTestExecutor',
    'root_cause',
    'FailureKind',
    'RetryPolicy',
    'TestCase',
    'TestOutcome',
    'TestRecord',
    'TestStatus',
    'TestSuite',
]

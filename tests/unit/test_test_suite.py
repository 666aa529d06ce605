"""
Unit tests for the explicit test registry and test case binding.
"""

import pytest

from simharness.orchestration.exceptions import InstantiationError
from simharness.orchestration.models import RetryPolicy, TestCase, TestOutcome, TestStatus
from simharness.orchestration.suite import TestSuite


class Greeter:
    def __init__(self):
        self.greeting = "hello"

    def Hello(self):
        return self.greeting


class BrokenOwner:
    def __init__(self):
        raise RuntimeError("no database")


@pytest.mark.unit
class TestTestSuite:

    def test_add_qualifies_with_namespace(self):
        suite = TestSuite(namespace="platform")

        registered = suite.add("Health.Ping", lambda: True, dependencies=["Other.Test"])

        assert registered.identifier == "platform.Health.Ping"
        assert registered.dependencies == ("Other.Test",)
        assert registered.short_name == "Health.Ping"
        assert len(suite) == 1

    def test_add_method_uses_class_name(self):
        suite = TestSuite()

        registered = suite.add_method(Greeter, "Hello")

        assert registered.identifier == "Greeter.Hello"
        assert registered.bind()() == "hello"

    def test_add_method_with_explicit_class_name(self):
        suite = TestSuite(namespace="ns")

        registered = suite.add_method(lambda: Greeter(), "Hello", class_name="Greeter")

        assert registered.identifier == "ns.Greeter.Hello"

    def test_each_bind_builds_a_fresh_owner(self):
        registered = TestSuite().add_method(Greeter, "Hello")

        first, second = registered.bind(), registered.bind()

        assert first.__self__ is not second.__self__

    def test_duplicate_registration_ignored(self):
        suite = TestSuite()
        original = suite.add("A", lambda: True, description="first")
        suite.add("A", lambda: False, description="second")

        assert suite.cases() == (original,)
        assert len(suite.warnings) == 1

    def test_skip_flags(self):
        registered = TestSuite().add("A", lambda: None, skip=True, skip_reason="not ready")

        assert registered.skip
        assert registered.skip_reason == "not ready"


@pytest.mark.unit
class TestTestCaseBinding:

    def test_owner_construction_failure(self):
        registered = TestCase(identifier="X.Y", owner_factory=BrokenOwner, method_name="Y")

        with pytest.raises(InstantiationError) as exc_info:
            registered.bind()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.test_id == "X.Y"

    def test_missing_method(self):
        registered = TestCase(identifier="Greeter.Missing", owner_factory=Greeter, method_name="Missing")

        with pytest.raises(InstantiationError, match="Missing"):
            registered.bind()

    def test_missing_action(self):
        with pytest.raises(InstantiationError):
            TestCase(identifier="Empty").bind()


@pytest.mark.unit
class TestModels:

    def test_retry_policy_defaults(self):
        policy = RetryPolicy()

        assert policy.timeout_seconds == 30.0
        assert policy.max_attempts == 3
        assert policy.backoff_base_seconds == 0.5

    @pytest.mark.parametrize("kwargs", [
        {'timeout_seconds': 0},
        {'max_attempts': 0},
        {'backoff_base_seconds': -0.1},
    ])
    def test_retry_policy_validation(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_outcome_to_dict(self):
        outcome = TestOutcome.failed("boom", error=ValueError("bad"), duration_ms=1.23456)

        assert outcome.to_dict() == {
            'success': False,
            'message': 'boom',
            'error_type': 'ValueError',
            'error': 'bad',
            'duration_ms': 1.235,
            'failure_kind': 'logical_failure',
        }

    def test_status_values(self):
        assert [status.value for status in TestStatus] == ["passed", "failed", "skipped", "error"]

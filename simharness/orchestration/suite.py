"""
Explicit test registry.

Callers populate a :class:`TestSuite` at startup instead of relying on runtime
discovery. Registration order is the discovery order used to break ties when
the suite is ordered.
"""

from typing import Any, Callable, Iterable, List, Optional, Tuple

import structlog

from .dependency_graph import OrderingWarning, WarningKind
from .models import TestAction, TestCase

logger = structlog.get_logger(__name__)


class TestSuite:
    """
    Builder collecting :class:`TestCase` registrations.

    Example:
        suite = TestSuite(namespace="platform")
        suite.add("Health.Ping", ping)
        suite.add_method(IdentityTests, "Login", dependencies=["IdentityTests.Register"])
    """

    __test__ = False

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace
        self._cases: List[TestCase] = []
        self._identifiers = set()
        self.warnings: List[OrderingWarning] = []

    def __len__(self) -> int:
        return len(self._cases)

    def __iter__(self):
        return iter(self._cases)

    def _qualify(self, identifier: str) -> str:
        if self.namespace:
            return f"{self.namespace}.{identifier}"
        return identifier

    def register(self, case: TestCase) -> TestCase:
        """Add a prepared case; duplicate identifiers are ignored with a warning."""
        if case.identifier in self._identifiers:
            warning = OrderingWarning(
                kind=WarningKind.DUPLICATE_IDENTIFIER,
                test_id=case.identifier,
                message=f"Duplicate test identifier '{case.identifier}' ignored",
            )
            self.warnings.append(warning)
            logger.warning("Duplicate test registration ignored", test_id=case.identifier)
            return case

        self._identifiers.add(case.identifier)
        self._cases.append(case)
        return case

    def add(
        self,
        identifier: str,
        action: TestAction,
        dependencies: Iterable[str] = (),
        description: str = "",
        skip: bool = False,
        skip_reason: Optional[str] = None,
    ) -> TestCase:
        return self.register(TestCase(
            identifier=self._qualify(identifier),
            action=action,
            description=description or identifier,
            skip=skip,
            skip_reason=skip_reason,
            dependencies=tuple(dependencies),
        ))

    def add_method(
        self,
        owner_factory: Callable[[], Any],
        method_name: str,
        dependencies: Iterable[str] = (),
        description: str = "",
        skip: bool = False,
        skip_reason: Optional[str] = None,
        class_name: Optional[str] = None,
    ) -> TestCase:
        """
        Register a method invoked on a fresh owner built per run.

        The identifier is ``[namespace.]ClassName.method_name``; ``class_name``
        overrides the factory's ``__name__`` when it is not a class.
        """
        owner_name = class_name or getattr(owner_factory, "__name__", type(owner_factory).__name__)
        identifier = self._qualify(f"{owner_name}.{method_name}")
        return self.register(TestCase(
            identifier=identifier,
            description=description or f"{owner_name}.{method_name}",
            skip=skip,
            skip_reason=skip_reason,
            dependencies=tuple(dependencies),
            owner_factory=owner_factory,
            method_name=method_name,
        ))

    def cases(self) -> Tuple[TestCase, ...]:
        return tuple(self._cases)

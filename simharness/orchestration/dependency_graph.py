"""
Dependency-ordered test scheduling.

Builds a graph from every test identifier to the prerequisites it declares and
produces an execution order in which each resolvable prerequisite runs before
its dependents. Ordering is best effort: unresolvable dependency names and
edges that would close a cycle are dropped and reported as warnings, never
raised.

Key Features:
- Two-tier name resolution: exact identifier first, then the trailing
  ``ClassName.MethodName`` short form
- Iterative depth-first postorder walk with an active-path set for cycle
  detection (no recursion depth limit on long dependency chains)
- Stable output: independent tests keep their registration order
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from .models import TestCase

logger = structlog.get_logger(__name__)


class WarningKind(Enum):
    DEPENDENCY_UNRESOLVED = "dependency_unresolved"
    CYCLE_DETECTED = "cycle_detected"
    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    DEPENDENCY_AMBIGUOUS = "dependency_ambiguous"


@dataclass(frozen=True)
class OrderingWarning:
    """Non-fatal problem found while ordering a suite."""

    kind: WarningKind
    test_id: str
    message: str
    dependency: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'kind': self.kind.value,
            'test_id': self.test_id,
            'dependency': self.dependency,
            'message': self.message,
        }

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


@dataclass(frozen=True)
class ExecutionOrder:
    """Ordered test cases plus the warnings raised while ordering them."""

    cases: Tuple[TestCase, ...]
    warnings: Tuple[OrderingWarning, ...] = field(default=())

    @property
    def identifiers(self) -> Tuple[str, ...]:
        return tuple(case.identifier for case in self.cases)

    def index_of(self, identifier: str) -> int:
        return self.identifiers.index(identifier)

    def __len__(self) -> int:
        return len(self.cases)

    def __iter__(self) -> Iterator[TestCase]:
        return iter(self.cases)


def short_name(identifier: str) -> str:
    """Reduce a qualified name to its trailing ``Class.Method`` parts."""
    return ".".join(identifier.split(".")[-2:])


class DependencyResolver:
    """
    Maps declared dependency strings onto known test identifiers.

    Lookup is exact first, then by short ``Class.Method`` form. When several
    tests share a short form, the earliest registered one wins.
    """

    def __init__(self, identifiers: Iterable[str]):
        self._exact: Dict[str, str] = {}
        self._short: Dict[str, List[str]] = {}
        for identifier in identifiers:
            self._exact.setdefault(identifier, identifier)
            self._short.setdefault(short_name(identifier), []).append(identifier)

    def candidates(self, dependency: str) -> Tuple[str, ...]:
        """Identifiers a dependency could name, in registration order."""
        if dependency in self._exact:
            return (self._exact[dependency],)
        return tuple(self._short.get(short_name(dependency), ()))

    def resolve(self, dependency: str) -> Optional[str]:
        candidates = self.candidates(dependency)
        return candidates[0] if candidates else None


class DependencyGraph:
    """
    Read-only mapping from test identifier to resolved prerequisite identifiers.

    Built once per run from the registered cases; unresolved dependency names
    are recorded as warnings at build time.
    """

    def __init__(self, cases: Iterable[TestCase]):
        self.warnings: List[OrderingWarning] = []
        self._cases: Dict[str, TestCase] = {}

        for case in cases:
            if case.identifier in self._cases:
                self.warnings.append(OrderingWarning(
                    kind=WarningKind.DUPLICATE_IDENTIFIER,
                    test_id=case.identifier,
                    message=f"Duplicate test identifier '{case.identifier}' ignored",
                ))
                continue
            self._cases[case.identifier] = case

        self.resolver = DependencyResolver(self._cases)
        self._edges: Dict[str, Tuple[str, ...]] = {}

        for identifier, case in self._cases.items():
            resolved: List[str] = []
            for dependency in case.dependencies:
                target = self.resolver.resolve(dependency)
                if target is None:
                    self.warnings.append(OrderingWarning(
                        kind=WarningKind.DEPENDENCY_UNRESOLVED,
                        test_id=identifier,
                        dependency=dependency,
                        message=f"Dependency '{dependency}' of '{identifier}' not found; treated as satisfied",
                    ))
                    logger.warning(
                        "Unresolved test dependency dropped",
                        test_id=identifier,
                        dependency=dependency,
                    )
                    continue
                ambiguous = self.resolver.candidates(dependency)
                if len(ambiguous) > 1:
                    self.warnings.append(OrderingWarning(
                        kind=WarningKind.DEPENDENCY_AMBIGUOUS,
                        test_id=identifier,
                        dependency=dependency,
                        message=(
                            f"Dependency '{dependency}' of '{identifier}' matches {len(ambiguous)} tests; "
                            f"using '{target}'"
                        ),
                    ))
                    logger.warning(
                        "Ambiguous test dependency resolved to first registration",
                        test_id=identifier,
                        dependency=dependency,
                        candidates=list(ambiguous),
                    )
                if target not in resolved:
                    resolved.append(target)
            self._edges[identifier] = tuple(resolved)

    @property
    def identifiers(self) -> Tuple[str, ...]:
        return tuple(self._cases)

    def case(self, identifier: str) -> TestCase:
        return self._cases[identifier]

    def dependencies_of(self, identifier: str) -> Tuple[str, ...]:
        return self._edges.get(identifier, ())

    def order(self) -> ExecutionOrder:
        """
        Topologically order the graph.

        Each node is emitted after all of its resolved prerequisites. An edge
        pointing at a node still on the active path (including a self-edge)
        closes a cycle; it is dropped with a warning and not followed.
        """
        warnings = list(self.warnings)
        visited = set()
        active = set()
        ordered: List[str] = []

        for root in self._cases:
            if root in visited:
                continue

            stack = [(root, iter(self._edges[root]))]
            active.add(root)

            while stack:
                node, pending = stack[-1]
                advanced = False

                for dependency in pending:
                    if dependency == node or dependency in active:
                        warnings.append(OrderingWarning(
                            kind=WarningKind.CYCLE_DETECTED,
                            test_id=node,
                            dependency=dependency,
                            message=f"Cycle detected: edge '{node}' -> '{dependency}' dropped",
                        ))
                        logger.warning(
                            "Dependency cycle edge dropped",
                            test_id=node,
                            dependency=dependency,
                        )
                        continue
                    if dependency in visited:
                        continue

                    active.add(dependency)
                    stack.append((dependency, iter(self._edges[dependency])))
                    advanced = True
                    break

                if not advanced:
                    stack.pop()
                    active.discard(node)
                    visited.add(node)
                    ordered.append(node)

        return ExecutionOrder(
            cases=tuple(self._cases[identifier] for identifier in ordered),
            warnings=tuple(warnings),
        )


def order_tests(cases: Iterable[TestCase]) -> ExecutionOrder:
    """
    Order test cases so every resolvable prerequisite runs first.

    Accepts any iterable of cases, including a ``TestSuite``; registration-time
    warnings carried by a suite are included in the result.
    """
    graph = DependencyGraph(cases)
    order = graph.order()

    suite_warnings = tuple(getattr(cases, "warnings", ()))
    if suite_warnings:
        order = ExecutionOrder(cases=order.cases, warnings=suite_warnings + order.warnings)

    logger.info(
        "Execution order built",
        tests=len(order),
        warnings=len(order.warnings),
    )
    return order

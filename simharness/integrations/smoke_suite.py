"""
API smoke suite for the simulated trading platform.

Tests share a :class:`SuiteContext` and rely on the executor running them in
dependency order: registration and login establish the user whose token the
account and trading checks use, the symbol listing picks the symbol that order
checks trade, and order creation records the id later checks read and cancel.
Dependencies are declared with short ``Class.Method`` names.
"""

import random
from dataclasses import dataclass
from functools import partial
from typing import Any, Optional, Sequence

import structlog

from ..loadgen.strategies import DEFAULT_SYMBOLS, random_limit_order
from ..orchestration.models import TestOutcome
from ..orchestration.suite import TestSuite
from .envelopes import get_field, unwrap
from .http_client import ServiceClient, ServiceClientFactory
from .identity import UserCredential, UserProvisioner

logger = structlog.get_logger(__name__)

SUITE_NAMESPACE = "platform"


@dataclass
class SuiteContext:
    """State handed from earlier tests to later ones."""

    credential: Optional[UserCredential] = None
    symbol: str = DEFAULT_SYMBOLS[0]
    order_id: Optional[str] = None

    def require_user(self) -> UserCredential:
        if self.credential is None:
            raise RuntimeError("No authenticated user; registration or login did not succeed")
        return self.credential

    def require_order(self) -> str:
        if not self.order_id:
            raise RuntimeError("No order id; order creation did not succeed")
        return self.order_id


class PlatformTests:
    """Shared plumbing for the smoke test groups."""

    service_name = ""

    def __init__(self, factory: ServiceClientFactory, context: SuiteContext):
        self.factory = factory
        self.context = context

    def client(self, authenticated: bool = True) -> ServiceClient:
        if authenticated:
            return self.factory.for_user(self.context.require_user().user_id, self.service_name)
        return self.factory.service(self.service_name)

    async def fetch(
        self,
        method: str,
        path: str,
        required_keys: Sequence[str] = (),
        authenticated: bool = True,
        **kwargs: Any
    ) -> Any:
        body = await self.client(authenticated).request_json(method, path, **kwargs)
        return unwrap(body, required_keys, service_name=self.service_name)


class IdentityTests(PlatformTests):
    service_name = "identity"

    async def Register(self) -> TestOutcome:
        credential = await UserProvisioner(self.factory).register()
        self.context.credential = credential
        return TestOutcome.passed(f"Registered {credential.username}")

    async def Login(self) -> TestOutcome:
        registered = self.context.require_user()
        credential = await UserProvisioner(self.factory).login(
            registered.email,
            registered.password,
            username=registered.username,
        )
        self.context.credential = credential
        return TestOutcome.passed(f"Logged in as {credential.username}")

    async def GetCurrentUser(self) -> TestOutcome:
        user = await self.fetch("GET", "/auth/user")
        email = get_field(user, "email")
        expected = self.context.require_user().email
        if email is not None and email != expected:
            return TestOutcome.failed(f"Current user email {email!r} does not match {expected!r}")
        return TestOutcome.passed("Current user returned")


class MarketDataTests(PlatformTests):
    service_name = "market-data"

    async def GetSymbols(self) -> TestOutcome:
        symbols = await self.fetch("GET", "/market/symbols", authenticated=False)
        if not isinstance(symbols, list) or not symbols:
            return TestOutcome.failed("Symbol list is empty")

        first = symbols[0]
        name = first if isinstance(first, str) else (get_field(first, "symbol") or get_field(first, "name"))
        if name:
            self.context.symbol = str(name)
        return TestOutcome.passed(f"{len(symbols)} symbols listed")

    async def GetTicker(self) -> TestOutcome:
        ticker = await self.fetch(
            "GET",
            "/market/ticker",
            authenticated=False,
            params={'symbol': self.context.symbol},
        )
        if not isinstance(ticker, dict):
            return TestOutcome.failed("Ticker is not an object")
        return TestOutcome.passed(f"Ticker for {self.context.symbol}")

    async def GetMarketSummary(self) -> TestOutcome:
        await self.fetch("GET", "/market/summary", authenticated=False)
        return TestOutcome.passed("Market summary returned")


class AccountTests(PlatformTests):
    service_name = "account"

    async def GetBalance(self) -> TestOutcome:
        balances = await self.fetch("GET", "/account/balance")
        return TestOutcome.passed(f"Balance returned ({type(balances).__name__})")


class TradingTests(PlatformTests):
    service_name = "trading"

    async def CreateOrder(self) -> TestOutcome:
        order = random_limit_order(self.context.symbol, rng=random.Random())
        created = await self.fetch("POST", "/order", json=order.to_payload())
        order_id = get_field(created, "id") or get_field(created, "orderId")
        if not order_id:
            return TestOutcome.failed("Created order has no id")
        self.context.order_id = str(order_id)
        return TestOutcome.passed(f"Order {order_id} created")

    async def GetOrderDetails(self) -> TestOutcome:
        order_id = self.context.require_order()
        details = await self.fetch("GET", f"/order/{order_id}")
        returned = get_field(details, "id") or get_field(details, "orderId")
        if returned is not None and str(returned) != order_id:
            return TestOutcome.failed(f"Order details returned id {returned}, expected {order_id}")
        return TestOutcome.passed(f"Order {order_id} retrieved")

    async def CancelOrder(self) -> TestOutcome:
        order_id = self.context.require_order()
        response = await self.client().delete(f"/order/{order_id}")
        if not response.is_success:
            return TestOutcome.failed(f"Cancel returned HTTP {response.status_code}")
        return TestOutcome.passed(f"Order {order_id} cancelled")


PLATFORM_TESTS = (
    (IdentityTests, "Register", (), "Register a new user"),
    (IdentityTests, "Login", ("IdentityTests.Register",), "Log in with valid credentials"),
    (IdentityTests, "GetCurrentUser", ("IdentityTests.Login",), "Fetch the authenticated user"),
    (MarketDataTests, "GetSymbols", (), "List tradable symbols"),
    (MarketDataTests, "GetTicker", ("MarketDataTests.GetSymbols",), "Fetch a ticker"),
    (MarketDataTests, "GetMarketSummary", (), "Fetch the market summary"),
    (AccountTests, "GetBalance", ("IdentityTests.Login",), "Fetch account balances"),
    (TradingTests, "CreateOrder", ("IdentityTests.Login", "MarketDataTests.GetSymbols"), "Place a limit order"),
    (TradingTests, "GetOrderDetails", ("TradingTests.CreateOrder",), "Fetch the placed order"),
    (TradingTests, "CancelOrder", ("TradingTests.CreateOrder",), "Cancel the placed order"),
)


def build_platform_suite(
    factory: ServiceClientFactory,
    context: Optional[SuiteContext] = None,
) -> TestSuite:
    """Register the platform smoke tests on a new suite."""
    context = context or SuiteContext()
    suite = TestSuite(namespace=SUITE_NAMESPACE)

    for cls, method_name, dependencies, description in PLATFORM_TESTS:
        suite.add_method(
            partial(cls, factory, context),
            method_name,
            dependencies=dependencies,
            description=description,
            class_name=cls.__name__,
        )

    logger.debug("Platform suite built", tests=len(suite))
    return suite

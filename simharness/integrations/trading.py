"""
Order submission executor for trading load runs.
"""

import time
from typing import Mapping, Optional, Sequence

import structlog

from ..loadgen.generator import OperationContext, OperationResult
from ..loadgen.strategies import DEFAULT_SYMBOLS, PriceRange, pick_symbol, strategy_for_mode
from .exceptions import IntegrationError
from .http_client import ServiceClient, ServiceClientFactory

logger = structlog.get_logger(__name__)

TRADING_SERVICE = "trading"
OPERATION_NAME = "create_order"


class OrderSubmissionExecutor:
    """
    Submits one generated order per operation with ``POST /order``.

    The virtual user's credential (``context.user``) selects an authenticated
    client; without one the shared trading client is used. Latency covers the
    HTTP exchange only.
    """

    def __init__(
        self,
        factory: ServiceClientFactory,
        mode: str = "random",
        symbols: Sequence[str] = DEFAULT_SYMBOLS,
        price_ranges: Optional[Mapping[str, PriceRange]] = None,
    ):
        self.factory = factory
        self.mode = mode
        self.symbols = tuple(symbols)
        self.strategy = strategy_for_mode(mode, price_ranges)

    def _client_for(self, context: OperationContext) -> ServiceClient:
        user_id = getattr(context.user, "user_id", None)
        if user_id:
            return self.factory.for_user(user_id, TRADING_SERVICE)
        return self.factory.service(TRADING_SERVICE)

    async def execute(self, context: OperationContext) -> OperationResult:
        order = self.strategy(pick_symbol(context.rng, self.symbols), context.rng)
        client = self._client_for(context)

        started = time.perf_counter()
        try:
            response = await client.post("/order", json=order.to_payload())
        except IntegrationError as e:
            return OperationResult(
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                error=str(e),
                operation=OPERATION_NAME,
            )
        latency_ms = (time.perf_counter() - started) * 1000.0

        if response.is_success:
            return OperationResult(success=True, latency_ms=latency_ms, operation=OPERATION_NAME)

        logger.debug(
            "Order rejected",
            user_index=context.user_index,
            status_code=response.status_code,
            symbol=order.symbol,
        )
        return OperationResult(
            success=False,
            latency_ms=latency_ms,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
            operation=OPERATION_NAME,
        )

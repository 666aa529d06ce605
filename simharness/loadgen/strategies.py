"""
Order generation strategies for trading load runs.

Every strategy takes the caller's ``random.Random`` so each virtual user draws
from its own generator.
"""

import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

PriceRange = Tuple[float, float]

DEFAULT_SYMBOLS: Tuple[str, ...] = ("BTC-USDT", "ETH-USDT", "BNB-USDT")

DEFAULT_PRICE_RANGES: Dict[str, PriceRange] = {
    "BTC-USDT": (1000.0, 100000.0),
    "ETH-USDT": (100.0, 10000.0),
    "BNB-USDT": (10.0, 1000.0),
}

FALLBACK_PRICE_RANGE: PriceRange = (90.0, 110.0)


@dataclass(frozen=True)
class OrderRequest:
    """Body of ``POST /order``."""

    symbol: str
    side: str
    type: str
    time_in_force: str
    quantity: float
    price: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'side': self.side,
            'type': self.type,
            'timeInForce': self.time_in_force,
            'quantity': self.quantity,
            'price': self.price,
        }


def _random_side(rng: random.Random) -> str:
    return "BUY" if rng.randrange(2) == 0 else "SELL"


def _random_quantity(rng: random.Random) -> float:
    return round(0.01 + rng.random() * 0.99, 2)


def random_limit_order(
    symbol: str,
    price_ranges: Optional[Mapping[str, PriceRange]] = None,
    rng: Optional[random.Random] = None,
) -> OrderRequest:
    """LIMIT/GTC order with a price drawn uniformly from the symbol's range."""
    rng = rng or random.Random()
    ranges = DEFAULT_PRICE_RANGES if price_ranges is None else price_ranges
    low, high = ranges.get(symbol, FALLBACK_PRICE_RANGE)
    price = round(low + rng.random() * (high - low), 2)

    return OrderRequest(
        symbol=symbol,
        side=_random_side(rng),
        type="LIMIT",
        time_in_force="GTC",
        quantity=_random_quantity(rng),
        price=price,
    )


def market_order(symbol: str, rng: Optional[random.Random] = None) -> OrderRequest:
    """MARKET/IOC order; the price is ignored by the matching engine."""
    rng = rng or random.Random()
    return OrderRequest(
        symbol=symbol,
        side=_random_side(rng),
        type="MARKET",
        time_in_force="IOC",
        quantity=_random_quantity(rng),
        price=0.0,
    )


OrderStrategy = Callable[[str, random.Random], OrderRequest]


def strategy_for_mode(
    mode: str,
    price_ranges: Optional[Mapping[str, PriceRange]] = None,
) -> OrderStrategy:
    """
    Resolve a simulation mode name to an order strategy.

    Raises:
        ValueError: For modes other than ``random`` and ``market``
    """
    if mode == "random":
        return lambda symbol, rng: random_limit_order(symbol, price_ranges, rng)
    if mode == "market":
        return market_order
    raise ValueError(f"Unknown simulation mode '{mode}' (expected 'random' or 'market')")


def pick_symbol(rng: random.Random, symbols: Sequence[str] = DEFAULT_SYMBOLS) -> str:
    return symbols[rng.randrange(len(symbols))]

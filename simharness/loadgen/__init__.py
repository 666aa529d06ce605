"""
Concurrent load generation.
"""

from .generator import (
    ConcurrentLoadGenerator,
    LoadProfile,
    OperationContext,
    OperationExecutor,
    OperationResult,
)
from .strategies import (
    DEFAULT_PRICE_RANGES,
    DEFAULT_SYMBOLS,
    OrderRequest,
    market_order,
    pick_symbol,
    random_limit_order,
    strategy_for_mode,
)

__all__ = [
    'ConcurrentLoadGenerator',
    'LoadProfile',
    'OperationContext',
    'OperationExecutor',
    'OperationResult',
    'DEFAULT_PRICE_RANGES',
    'DEFAULT_SYMBOLS',
    'OrderRequest',
    'market_order',
    'pick_symbol',
    'random_limit_order',
    'strategy_for_mode',
]

"""Strategy catalog and adaptive strategy selection."""

from paper_trading.strategies.catalog import (
    TREND_COMPATIBILITY,
    VOLATILITY_COMPATIBILITY,
    default_strategies,
)
from paper_trading.strategies.manager import AdaptiveStrategyManager, create_strategy_manager

__all__ = [
    "AdaptiveStrategyManager",
    "create_strategy_manager",
    "default_strategies",
    "TREND_COMPATIBILITY",
    "VOLATILITY_COMPATIBILITY",
]

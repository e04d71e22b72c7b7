"""Market data access and market condition classification."""

from paper_trading.market.classifier import MarketConditionClassifier
from paper_trading.market.gateway import (
    CcxtMarketDataGateway,
    MarketDataGateway,
    StaticMarketDataGateway,
    with_retry,
)

__all__ = [
    "MarketDataGateway",
    "StaticMarketDataGateway",
    "CcxtMarketDataGateway",
    "MarketConditionClassifier",
    "with_retry",
]

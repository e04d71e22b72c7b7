"""Pytest fixtures and utilities for the paper trading test suite."""
from decimal import Decimal
from typing import List

import pytest
import pytest_asyncio

from paper_trading.core.config import (
    AutoTradingConfig,
    PaperTradingConfig,
    StrategyConfig,
)
from paper_trading.core.engine import PaperTradingEngine
from paper_trading.market.classifier import MarketConditionClassifier
from paper_trading.market.gateway import StaticMarketDataGateway
from paper_trading.notifications import RecordingNotificationSink
from paper_trading.storage.memory import InMemoryLedger
from paper_trading.strategies.manager import AdaptiveStrategyManager


# =============================================================================
# Price Series Helpers
# =============================================================================

def linear_series(start: float, step: float, count: int = 50) -> List[float]:
    """Evenly spaced prices: start, start + step, ..."""
    return [start + step * i for i in range(count)]


def alternating_series(low: float, high: float, count: int = 50) -> List[float]:
    """Prices bouncing between two levels, starting at ``low``."""
    return [low if i % 2 == 0 else high for i in range(count)]


@pytest.fixture
def series():
    """Named price series of 50 samples each."""
    return {
        "uptrend": linear_series(100.0, 0.5),      # 100 -> 124.5
        "downtrend": linear_series(124.5, -0.5),   # 124.5 -> 100
        "flat": [100.0] * 50,
        "choppy": alternating_series(100.0, 110.0),
    }


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def paper_config():
    """Fee-free brokerage rules with a 50,000 starting balance."""
    return PaperTradingConfig(
        initial_balance=Decimal("50000"),
        fee_rate=Decimal("0"),
        flat_fee=Decimal("0"),
        max_position_size=Decimal("0.2"),
        max_leverage=Decimal("1"),
        max_positions=5,
        allowed_symbols_str="BTC/USD,ETH/USD,SOL/USD,AAPL",
        price_timeout_seconds=0.5,
    )


@pytest.fixture
def strategy_settings():
    """Classifier/selector settings with nothing active at start."""
    return StrategyConfig(
        series_window=50,
        short_window=5,
        long_window=20,
        active_strategies_str="",
        series_timeout_seconds=1.0,
    )


@pytest.fixture
def auto_config():
    """Fast auto-trading loop over BTC/USD only."""
    return AutoTradingConfig(
        interval_seconds=0.01,
        symbols_str="BTC/USD",
        min_confidence=0.6,
        enabled_on_start=False,
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def gateway():
    """Deterministic gateway with BTC at 50,000."""
    return StaticMarketDataGateway(
        prices={"BTC/USD": "50000", "ETH/USD": "3000", "SOL/USD": "100"}
    )


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest_asyncio.fixture
async def engine(gateway, ledger, paper_config, sink):
    """Initialized engine for user 'test-user'."""
    engine = PaperTradingEngine(
        gateway=gateway, ledger=ledger, config=paper_config, notifier=sink
    )
    await engine.initialize("test-user")
    yield engine
    await engine.close()


@pytest.fixture
def classifier(strategy_settings):
    return MarketConditionClassifier(strategy_settings)


@pytest.fixture
def manager(gateway, classifier, strategy_settings):
    """Strategy manager over the default catalog (all strategies paused)."""
    return AdaptiveStrategyManager(
        gateway=gateway, classifier=classifier, config=strategy_settings
    )

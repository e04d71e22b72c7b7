"""Default strategy catalog and the family compatibility matrices.

Compatibility values are in [0, 1]: how well a strategy family is expected to
work under a trend label and under a volatility label. The manager averages
the two entries for a condition.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from paper_trading.core.models import (
    RiskLevel,
    StrategyDefinition,
    StrategyFamily,
    StrategyParameters,
    StrategyPerformance,
    StrategyState,
    TrendLabel,
    VolatilityLabel,
)

TREND_COMPATIBILITY: Dict[StrategyFamily, Dict[TrendLabel, float]] = {
    StrategyFamily.MOMENTUM: {
        TrendLabel.UPTREND: 1.0,
        TrendLabel.DOWNTREND: 1.0,
        TrendLabel.SIDEWAYS: 0.2,
    },
    StrategyFamily.MEAN_REVERSION: {
        TrendLabel.UPTREND: 0.3,
        TrendLabel.DOWNTREND: 0.3,
        TrendLabel.SIDEWAYS: 1.0,
    },
    StrategyFamily.BREAKOUT: {
        TrendLabel.UPTREND: 0.8,
        TrendLabel.DOWNTREND: 0.8,
        TrendLabel.SIDEWAYS: 0.4,
    },
    StrategyFamily.VOLATILITY: {
        TrendLabel.UPTREND: 0.5,
        TrendLabel.DOWNTREND: 0.5,
        TrendLabel.SIDEWAYS: 0.6,
    },
    StrategyFamily.ADAPTIVE_COMPOSITE: {
        TrendLabel.UPTREND: 0.6,
        TrendLabel.DOWNTREND: 0.6,
        TrendLabel.SIDEWAYS: 0.6,
    },
}

VOLATILITY_COMPATIBILITY: Dict[StrategyFamily, Dict[VolatilityLabel, float]] = {
    StrategyFamily.MOMENTUM: {
        VolatilityLabel.LOW: 0.4,
        VolatilityLabel.MEDIUM: 1.0,
        VolatilityLabel.HIGH: 0.7,
        VolatilityLabel.EXTREME: 0.3,
    },
    StrategyFamily.MEAN_REVERSION: {
        VolatilityLabel.LOW: 1.0,
        VolatilityLabel.MEDIUM: 0.7,
        VolatilityLabel.HIGH: 0.3,
        VolatilityLabel.EXTREME: 0.1,
    },
    StrategyFamily.BREAKOUT: {
        VolatilityLabel.LOW: 0.3,
        VolatilityLabel.MEDIUM: 0.7,
        VolatilityLabel.HIGH: 1.0,
        VolatilityLabel.EXTREME: 0.6,
    },
    StrategyFamily.VOLATILITY: {
        VolatilityLabel.LOW: 0.1,
        VolatilityLabel.MEDIUM: 0.4,
        VolatilityLabel.HIGH: 0.8,
        VolatilityLabel.EXTREME: 1.0,
    },
    StrategyFamily.ADAPTIVE_COMPOSITE: {
        VolatilityLabel.LOW: 0.6,
        VolatilityLabel.MEDIUM: 0.6,
        VolatilityLabel.HIGH: 0.5,
        VolatilityLabel.EXTREME: 0.4,
    },
}

# Matrix entries at or above this value are reported as a match in explanations
STRONG_MATCH = 0.8


def _strategy(
    id: str,
    name: str,
    description: str,
    family: StrategyFamily,
    risk_level: RiskLevel,
    max_position_size: str,
    stop_loss_pct: str,
    take_profit_pct: str,
    timeframe: str,
    confidence: float,
    expected_return: float,
    max_drawdown: float,
    performance: tuple,
) -> StrategyDefinition:
    win_rate, avg_return, sharpe_ratio, perf_drawdown = performance
    return StrategyDefinition(
        id=id,
        name=name,
        description=description,
        family=family,
        parameters=StrategyParameters(
            risk_level=risk_level,
            max_position_size=Decimal(max_position_size),
            stop_loss_pct=Decimal(stop_loss_pct),
            take_profit_pct=Decimal(take_profit_pct),
            timeframe=timeframe,
        ),
        confidence=confidence,
        expected_return=expected_return,
        max_drawdown=max_drawdown,
        performance=StrategyPerformance(
            win_rate=win_rate,
            avg_return=avg_return,
            sharpe_ratio=sharpe_ratio,
            max_drawdown=perf_drawdown,
        ),
    )


def default_strategies(active_ids: Optional[Iterable[str]] = None) -> List[StrategyDefinition]:
    """
    Build a fresh copy of the default catalog.

    Args:
        active_ids: Strategy ids to start in the ACTIVE state (others are PAUSED)

    Returns:
        List of strategy definitions ordered by id
    """
    catalog = [
        _strategy(
            "momentum_breakout", "Momentum Breakout",
            "Identifies and trades breakouts with strong momentum confirmation",
            StrategyFamily.BREAKOUT, RiskLevel.MODERATE,
            max_position_size="5000", stop_loss_pct="0.05", take_profit_pct="0.08",
            timeframe="1h", confidence=0.85, expected_return=0.15, max_drawdown=0.08,
            performance=(0.65, 0.12, 1.8, 0.06),
        ),
        _strategy(
            "mean_reversion", "Mean Reversion",
            "Trades oversold/overbought conditions in ranging markets",
            StrategyFamily.MEAN_REVERSION, RiskLevel.LOW,
            max_position_size="4000", stop_loss_pct="0.03", take_profit_pct="0.04",
            timeframe="4h", confidence=0.75, expected_return=0.08, max_drawdown=0.04,
            performance=(0.72, 0.06, 1.5, 0.03),
        ),
        _strategy(
            "trend_following", "Trend Following",
            "Follows established trends with proper risk management",
            StrategyFamily.MOMENTUM, RiskLevel.MODERATE,
            max_position_size="5000", stop_loss_pct="0.06", take_profit_pct="0.12",
            timeframe="4h", confidence=0.80, expected_return=0.12, max_drawdown=0.06,
            performance=(0.68, 0.10, 1.6, 0.05),
        ),
        _strategy(
            "scalping", "High-Frequency Scalping",
            "Quick in-and-out trades on micro price movements",
            StrategyFamily.VOLATILITY, RiskLevel.HIGH,
            max_position_size="2500", stop_loss_pct="0.01", take_profit_pct="0.015",
            timeframe="1m", confidence=0.70, expected_return=0.20, max_drawdown=0.12,
            performance=(0.58, 0.18, 1.2, 0.10),
        ),
        _strategy(
            "volatility_arbitrage", "Volatility Arbitrage",
            "Exploits volatility discrepancies across timeframes",
            StrategyFamily.VOLATILITY, RiskLevel.MODERATE,
            max_position_size="3000", stop_loss_pct="0.04", take_profit_pct="0.06",
            timeframe="1h", confidence=0.82, expected_return=0.10, max_drawdown=0.05,
            performance=(0.70, 0.08, 1.9, 0.04),
        ),
        _strategy(
            "adaptive_composite", "Adaptive Composite",
            "Follows the trend when one exists and fades extremes in ranges",
            StrategyFamily.ADAPTIVE_COMPOSITE, RiskLevel.MODERATE,
            max_position_size="4000", stop_loss_pct="0.05", take_profit_pct="0.10",
            timeframe="1h", confidence=0.78, expected_return=0.11, max_drawdown=0.06,
            performance=(0.66, 0.09, 1.5, 0.05),
        ),
    ]

    active = set(active_ids or [])
    for strategy in catalog:
        if strategy.id in active:
            strategy.state = StrategyState.ACTIVE
    return sorted(catalog, key=lambda s: s.id)

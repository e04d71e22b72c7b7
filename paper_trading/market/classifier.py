"""
Market Condition Classification.

Labels a recent price/volume window with a trend, a volatility bucket and a
volume bucket. The classifier is a pure function of its input window so the
same samples always produce the same condition.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from paper_trading.core.config import StrategyConfig, strategy_config
from paper_trading.core.models import (
    MarketCondition,
    PriceSample,
    TrendLabel,
    VolatilityLabel,
    VolumeLabel,
)

EMPTY_WINDOW_TIMESTAMP = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MarketConditionClassifier:
    """Classify market conditions from an ordered sample window."""

    def __init__(self, config: Optional[StrategyConfig] = None):
        self.config = config or strategy_config

    def classify(
        self,
        symbol: str,
        samples: Sequence[PriceSample],
        as_of: Optional[datetime] = None,
    ) -> MarketCondition:
        """
        Classify a window of samples (oldest first).

        Args:
            symbol: Symbol the samples belong to
            samples: Ordered price samples
            as_of: Timestamp for an empty window (defaults to the Unix epoch)

        Returns:
            MarketCondition with labels and the metrics behind them
        """
        if len(samples) < 2:
            return self._flat_condition(symbol, samples, as_of)

        df = pd.DataFrame(
            [
                {
                    "timestamp": s.timestamp,
                    "price": float(s.price),
                    "volume": float(s.volume),
                }
                for s in samples
            ]
        )
        prices = df["price"]

        # Windows shorter than the long average use what is available
        short_ma = prices.tail(self.config.short_window).mean()
        long_ma = prices.tail(self.config.long_window).mean()
        ma_spread = (short_ma - long_ma) / long_ma if long_ma else 0.0

        gross_returns = (prices / prices.shift(1)).dropna()
        realized_volatility = self._coefficient_of_variation(gross_returns)

        first_price = prices.iloc[0]
        last_price = prices.iloc[-1]
        momentum_score = (last_price - first_price) / first_price

        mean_volume = df["volume"].mean()
        volume_ratio = df["volume"].iloc[-1] / mean_volume if mean_volume > 0 else 1.0

        return MarketCondition(
            symbol=symbol,
            timestamp=samples[-1].timestamp,
            trend=self._trend_label(ma_spread),
            volatility=self._volatility_label(realized_volatility),
            volume=self._volume_label(volume_ratio),
            last_price=float(last_price),
            short_ma=float(short_ma),
            long_ma=float(long_ma),
            ma_spread=float(ma_spread),
            realized_volatility=float(realized_volatility),
            momentum_score=float(momentum_score),
            volume_ratio=float(volume_ratio),
            sample_count=len(samples),
        )

    @staticmethod
    def _coefficient_of_variation(gross_returns: pd.Series) -> float:
        """Population std of gross returns over their mean."""
        if gross_returns.empty:
            return 0.0
        values = gross_returns.to_numpy()
        mean = np.mean(values)
        if mean == 0:
            return 0.0
        return float(np.std(values) / mean)

    def _trend_label(self, ma_spread: float) -> TrendLabel:
        if ma_spread > self.config.trend_threshold:
            return TrendLabel.UPTREND
        if ma_spread < -self.config.trend_threshold:
            return TrendLabel.DOWNTREND
        return TrendLabel.SIDEWAYS

    def _volatility_label(self, volatility: float) -> VolatilityLabel:
        if volatility < self.config.volatility_low:
            return VolatilityLabel.LOW
        if volatility < self.config.volatility_medium:
            return VolatilityLabel.MEDIUM
        if volatility < self.config.volatility_high:
            return VolatilityLabel.HIGH
        return VolatilityLabel.EXTREME

    def _volume_label(self, volume_ratio: float) -> VolumeLabel:
        if volume_ratio < self.config.volume_low_ratio:
            return VolumeLabel.LOW
        if volume_ratio > self.config.volume_high_ratio:
            return VolumeLabel.HIGH
        return VolumeLabel.NORMAL

    def _flat_condition(
        self, symbol: str, samples: Sequence[PriceSample], as_of: Optional[datetime]
    ) -> MarketCondition:
        last_price = float(samples[-1].price) if samples else 0.0
        return MarketCondition(
            symbol=symbol,
            timestamp=samples[-1].timestamp if samples else (as_of or EMPTY_WINDOW_TIMESTAMP),
            trend=TrendLabel.SIDEWAYS,
            volatility=VolatilityLabel.LOW,
            volume=VolumeLabel.NORMAL,
            last_price=last_price,
            sample_count=len(samples),
        )


"""Adaptive strategy manager.

Holds the strategy catalog, classifies the market for a symbol, ranks the
active strategies against that condition and turns the best fit into at most
one trade signal. The manager never places orders; signals are proposals.
"""
import asyncio
from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from paper_trading.core.config import StrategyConfig, strategy_config
from paper_trading.core.errors import ErrorKind, UpstreamUnavailableError
from paper_trading.core.models import (
    MarketCondition,
    OperationResult,
    OrderSide,
    Signal,
    StrategyDefinition,
    StrategyFamily,
    StrategyState,
    TrendLabel,
    utc_now,
)
from paper_trading.market.classifier import MarketConditionClassifier
from paper_trading.market.gateway import MarketDataGateway
from paper_trading.strategies.catalog import (
    STRONG_MATCH,
    TREND_COMPATIBILITY,
    VOLATILITY_COMPATIBILITY,
    default_strategies,
)

logger = structlog.get_logger(__name__)

QUANTITY_STEP = Decimal("0.00000001")

# Allowed state transitions (same-state requests are accepted as no-ops)
STATE_TRANSITIONS = {
    StrategyState.ACTIVE: {StrategyState.PAUSED, StrategyState.STOPPED},
    StrategyState.PAUSED: {StrategyState.ACTIVE, StrategyState.STOPPED},
    StrategyState.STOPPED: {StrategyState.ACTIVE},
}


class AdaptiveStrategyManager:
    """
    Catalog management, strategy scoring and signal generation.

    Scoring blends three parts, clamped to [0, 1]:
    - 60% market compatibility (mean of family x trend and family x volatility)
    - 30% recent performance (win rate, Sharpe-like ratio, drawdown)
    - 10% the strategy's own confidence
    """

    def __init__(
        self,
        gateway: MarketDataGateway,
        classifier: Optional[MarketConditionClassifier] = None,
        strategies: Optional[Sequence[StrategyDefinition]] = None,
        config: Optional[StrategyConfig] = None,
    ):
        self.gateway = gateway
        self.config = config or strategy_config
        self.classifier = classifier or MarketConditionClassifier(self.config)

        catalog = strategies if strategies is not None else default_strategies()
        self._strategies: Dict[str, StrategyDefinition] = {
            s.id: s.model_copy(deep=True) for s in catalog
        }
        self._conditions: Dict[str, MarketCondition] = {}

        for strategy_id in self.config.active_strategies:
            if strategy_id in self._strategies:
                self._strategies[strategy_id].state = StrategyState.ACTIVE
            else:
                logger.warning("strategy_manager.unknown_active_strategy", strategy_id=strategy_id)

        logger.info(
            "strategy_manager.initialized",
            strategies=list(self._strategies),
            active=[s.id for s in self._strategies.values() if s.is_active],
        )

    # =========================================================================
    # Catalog
    # =========================================================================

    def get_all_strategies(self) -> List[StrategyDefinition]:
        return [s.model_copy(deep=True) for s in self._strategies.values()]

    def get_active_strategies(self) -> List[StrategyDefinition]:
        return [s.model_copy(deep=True) for s in self._strategies.values() if s.is_active]

    def get_strategy(self, strategy_id: str) -> Optional[StrategyDefinition]:
        strategy = self._strategies.get(strategy_id)
        return strategy.model_copy(deep=True) if strategy else None

    def activate_strategy(self, strategy_id: str) -> OperationResult:
        return self._transition(strategy_id, StrategyState.ACTIVE)

    def deactivate_strategy(self, strategy_id: str) -> OperationResult:
        """Pause a strategy. Paused strategies can be re-activated."""
        return self._transition(strategy_id, StrategyState.PAUSED)

    def stop_strategy(self, strategy_id: str) -> OperationResult:
        return self._transition(strategy_id, StrategyState.STOPPED)

    def _transition(self, strategy_id: str, target: StrategyState) -> OperationResult:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            return OperationResult.failure(
                ErrorKind.NOT_FOUND, f"Unknown strategy: {strategy_id}", strategy_id=strategy_id
            )

        current = strategy.state
        if current == target:
            return OperationResult.success(strategy.model_copy(deep=True), changed=False)
        if target not in STATE_TRANSITIONS[current]:
            return OperationResult.failure(
                ErrorKind.VALIDATION,
                f"Strategy {strategy_id} cannot move from {current.value} to {target.value}",
                strategy_id=strategy_id,
            )

        strategy.state = target
        logger.info(
            "strategy_manager.state_changed",
            strategy_id=strategy_id,
            from_state=current.value,
            to_state=target.value,
        )
        return OperationResult.success(strategy.model_copy(deep=True), changed=True)

    # =========================================================================
    # Scoring
    # =========================================================================

    def compatibility(self, strategy: StrategyDefinition, condition: MarketCondition) -> float:
        """Mean of the trend and volatility matrix entries for the strategy family."""
        trend_fit = TREND_COMPATIBILITY[strategy.family][condition.trend]
        volatility_fit = VOLATILITY_COMPATIBILITY[strategy.family][condition.volatility]
        return (trend_fit + volatility_fit) / 2

    def score_strategy(self, strategy: StrategyDefinition, condition: MarketCondition) -> float:
        """Score a strategy against a condition, in [0, 1]."""
        performance = strategy.performance
        performance_weight = (
            performance.win_rate * 0.4
            + performance.sharpe_ratio / 3 * 0.3
            + (1 - performance.max_drawdown) * 0.3
        )
        score = (
            self.compatibility(strategy, condition) * 0.6
            + performance_weight * 0.3
            + strategy.confidence * 0.1
        )
        return min(1.0, max(0.0, score))

    def rank_strategies(
        self, condition: MarketCondition
    ) -> List[Tuple[StrategyDefinition, float]]:
        """Active strategies with scores, best first, ties broken by id."""
        scored = [
            (strategy, self.score_strategy(strategy, condition))
            for strategy in self._strategies.values()
            if strategy.is_active
        ]
        scored.sort(key=lambda item: (-item[1], item[0].id))
        return scored

    def select_optimal_strategies(
        self,
        condition: MarketCondition,
        max_strategies: Optional[int] = None,
        min_score: float = 0.0,
    ) -> List[StrategyDefinition]:
        """
        Active strategies ordered by descending score.

        Args:
            condition: Market condition to score against
            max_strategies: Keep at most this many (None keeps all)
            min_score: Drop strategies scoring below this value
        """
        ranked = [s for s, score in self.rank_strategies(condition) if score >= min_score]
        if max_strategies is not None:
            ranked = ranked[:max_strategies]
        return [s.model_copy(deep=True) for s in ranked]

    def get_strategy_explanation(
        self, strategy: StrategyDefinition, condition: MarketCondition
    ) -> str:
        score = self.score_strategy(strategy, condition)
        return (
            f"Selected {strategy.name} ({strategy.description}) with confidence score "
            f"{score * 100:.1f}%. {self._match_reason(strategy, condition)} "
            f"Expected return: {strategy.expected_return * 100:.1f}% with max drawdown of "
            f"{strategy.max_drawdown * 100:.1f}%."
        )

    def _match_reason(self, strategy: StrategyDefinition, condition: MarketCondition) -> str:
        matches = []
        if TREND_COMPATIBILITY[strategy.family][condition.trend] >= STRONG_MATCH:
            matches.append(f"trend: {condition.trend.value}")
        if VOLATILITY_COMPATIBILITY[strategy.family][condition.volatility] >= STRONG_MATCH:
            matches.append(f"volatility: {condition.volatility.value}")
        if not matches:
            return "General market compatibility."
        return f"Market shows {', '.join(matches)}."

    def should_switch_strategy(
        self, current_strategy_id: str, condition: MarketCondition, threshold: float = 0.2
    ) -> bool:
        """True when the best active strategy beats the current one by more than threshold."""
        current = self._strategies.get(current_strategy_id)
        if current is None:
            return True

        ranked = self.rank_strategies(condition)
        if not ranked:
            return False
        _, best_score = ranked[0]
        return best_score - self.score_strategy(current, condition) > threshold

    # =========================================================================
    # Market conditions
    # =========================================================================

    async def analyze_market_conditions(self, symbol: str) -> MarketCondition:
        """
        Fetch the recent series for a symbol and classify it.

        Raises:
            UpstreamUnavailableError: If the gateway fails or times out
        """
        try:
            samples = await asyncio.wait_for(
                self.gateway.recent_series(symbol, self.config.series_window),
                timeout=self.config.series_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(
                f"Series request for {symbol} timed out", {"symbol": symbol}
            ) from e

        condition = self.classifier.classify(symbol, samples, as_of=utc_now())
        self._conditions[symbol] = condition
        logger.debug(
            "strategy_manager.condition_classified",
            symbol=symbol,
            trend=condition.trend.value,
            volatility=condition.volatility.value,
            volume=condition.volume.value,
            ma_spread=round(condition.ma_spread, 6),
        )
        return condition

    def get_current_market_condition(self, symbol: str) -> Optional[MarketCondition]:
        return self._conditions.get(symbol)

    # =========================================================================
    # Signals
    # =========================================================================

    async def generate_signals(self, symbol: str, account_id: str) -> List[Signal]:
        """
        Turn the best-fit active strategy for ``symbol`` into at most one signal.

        Returns an empty list when the gateway is unavailable, no active
        strategy is eligible for the symbol, or the top strategy has no
        directional view.
        """
        try:
            condition = await self.analyze_market_conditions(symbol)
        except UpstreamUnavailableError as e:
            logger.warning("strategy_manager.market_data_unavailable", symbol=symbol, error=e.message)
            return []

        if condition.sample_count < 2 or condition.last_price <= 0:
            return []

        for strategy, score in self.rank_strategies(condition):
            if not strategy.allows_symbol(symbol):
                continue

            side = self._signal_side(strategy.family, condition)
            if side is None:
                logger.debug(
                    "strategy_manager.no_direction", strategy_id=strategy.id, symbol=symbol
                )
                return []

            signal = self._build_signal(strategy, score, side, condition, account_id)
            if signal is None:
                return []

            logger.info(
                "strategy_manager.signal_generated",
                strategy_id=strategy.id,
                symbol=symbol,
                side=side.value,
                quantity=str(signal.quantity),
                confidence=round(score, 4),
            )
            return [signal]

        return []

    def _signal_side(
        self, family: StrategyFamily, condition: MarketCondition
    ) -> Optional[OrderSide]:
        if family == StrategyFamily.MOMENTUM:
            return self._trend_side(condition.trend)
        if family == StrategyFamily.MEAN_REVERSION:
            return self._reversion_side(condition)
        if family == StrategyFamily.BREAKOUT:
            return self._sign_side(condition.momentum_score)
        if family == StrategyFamily.VOLATILITY:
            return self._sign_side(condition.ma_spread)
        # Adaptive composite: follow the trend, fade the range
        if condition.trend == TrendLabel.SIDEWAYS:
            return self._reversion_side(condition)
        return self._trend_side(condition.trend)

    @staticmethod
    def _trend_side(trend: TrendLabel) -> Optional[OrderSide]:
        if trend == TrendLabel.UPTREND:
            return OrderSide.BUY
        if trend == TrendLabel.DOWNTREND:
            return OrderSide.SELL
        return None

    @staticmethod
    def _reversion_side(condition: MarketCondition) -> Optional[OrderSide]:
        if condition.last_price < condition.long_ma:
            return OrderSide.BUY
        if condition.last_price > condition.long_ma:
            return OrderSide.SELL
        return None

    @staticmethod
    def _sign_side(value: float) -> Optional[OrderSide]:
        if value > 0:
            return OrderSide.BUY
        if value < 0:
            return OrderSide.SELL
        return None

    def _build_signal(
        self,
        strategy: StrategyDefinition,
        score: float,
        side: OrderSide,
        condition: MarketCondition,
        account_id: str,
    ) -> Optional[Signal]:
        params = strategy.parameters
        price = Decimal(str(condition.last_price))
        # Rounded down so quantity * price never exceeds the notional cap
        quantity = (params.max_position_size * Decimal(str(score)) / price).quantize(
            QUANTITY_STEP, rounding=ROUND_DOWN
        )
        if quantity <= 0:
            return None

        if side == OrderSide.BUY:
            stop_loss = price * (1 - params.stop_loss_pct)
            take_profit = price * (1 + params.take_profit_pct)
        else:
            stop_loss = price * (1 + params.stop_loss_pct)
            take_profit = max(price * (1 - params.take_profit_pct), QUANTITY_STEP)

        return Signal(
            symbol=condition.symbol,
            side=side,
            quantity=quantity,
            reference_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            account_id=account_id,
            confidence=score,
            explanation=self.get_strategy_explanation(strategy, condition),
            condition=condition,
        )

    # =========================================================================
    # Performance feedback
    # =========================================================================

    def record_trade_outcome(
        self, strategy_id: str, realized_pnl: Decimal, return_pct: float
    ) -> OperationResult:
        """
        Fold a closed trade into a strategy's performance and confidence.

        Args:
            strategy_id: Strategy that produced the trade
            realized_pnl: Realized profit of the closing fill
            return_pct: Trade return as a fraction of cost (0.02 = 2%)
        """
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            return OperationResult.failure(
                ErrorKind.NOT_FOUND, f"Unknown strategy: {strategy_id}", strategy_id=strategy_id
            )

        perf = strategy.performance
        returns = perf.returns + [float(return_pct)]
        trades = perf.trades + 1
        wins = perf.wins + (1 if realized_pnl > 0 else 0)

        values = np.array(returns, dtype=float)
        sharpe_ratio = perf.sharpe_ratio
        if len(values) >= 2 and values.std() > 0:
            sharpe_ratio = float(values.mean() / values.std())

        equity = np.cumprod(1 + values)
        peaks = np.maximum.accumulate(np.concatenate(([1.0], equity)))[1:]
        drawdown = float(np.max((peaks - equity) / peaks)) if len(equity) else 0.0

        strategy.performance = perf.model_copy(update={
            "trades": trades,
            "wins": wins,
            "win_rate": wins / trades,
            "avg_return": float(values.mean()),
            "sharpe_ratio": sharpe_ratio,
            "max_drawdown": max(0.0, drawdown),
            "returns": returns,
        })
        strategy.confidence = min(1.0, max(0.3,
            strategy.performance.win_rate * 0.5
            + strategy.performance.sharpe_ratio / 3 * 0.3
            + (1 - strategy.performance.max_drawdown) * 0.2
        ))

        logger.info(
            "strategy_manager.performance_updated",
            strategy_id=strategy_id,
            trades=trades,
            win_rate=round(strategy.performance.win_rate, 4),
            sharpe_ratio=round(sharpe_ratio, 4),
            confidence=round(strategy.confidence, 4),
        )
        return OperationResult.success(strategy.model_copy(deep=True))


def create_strategy_manager(
    gateway: MarketDataGateway, config: Optional[StrategyConfig] = None
) -> AdaptiveStrategyManager:
    """Factory function to create a manager with the default catalog."""
    config = config or strategy_config
    return AdaptiveStrategyManager(
        gateway=gateway,
        classifier=MarketConditionClassifier(config),
        strategies=default_strategies(config.active_strategies),
        config=config,
    )

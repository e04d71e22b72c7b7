"""Auto-trading loop.

Periodically closes positions whose stop loss or take profit has been crossed,
then asks the strategy manager for signals on the configured symbols and
submits the qualifying ones to the paper trading engine. The loop runs as
a supervised asyncio task: ``start()`` spawns it, ``stop()`` signals it and
waits for it to finish.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from paper_trading.core.config import AutoTradingConfig, auto_trading_config
from paper_trading.core.engine import PaperTradingEngine
from paper_trading.core.errors import InvariantViolationError
from paper_trading.core.models import FillReport, OrderSide, Position, Signal
from paper_trading.strategies.manager import AdaptiveStrategyManager

logger = structlog.get_logger(__name__)


@dataclass
class CycleReport:
    """Outcome of one auto-trading cycle."""
    exits: int = 0
    signals: int = 0
    submitted: int = 0
    filled: int = 0
    rejected: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "exits": self.exits,
            "signals": self.signals,
            "submitted": self.submitted,
            "filled": self.filled,
            "rejected": self.rejected,
            "skipped": self.skipped,
            "errors": len(self.errors),
        }


class AutoTrader:
    """
    Background loop feeding strategy signals into the engine.

    Each tick checks the engine's auto-trading gate, so disabling auto-trading
    takes effect at the next tick without interrupting a fill in progress.
    """

    def __init__(
        self,
        engine: PaperTradingEngine,
        manager: AdaptiveStrategyManager,
        config: Optional[AutoTradingConfig] = None,
    ):
        self.engine = engine
        self.manager = manager
        self.config = config or auto_trading_config

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.cycles = 0
        self.last_report: Optional[CycleReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Spawn the loop task. Calling start on a running trader is a no-op."""
        if self.is_running:
            return

        self._stop_event = asyncio.Event()
        if self.config.enabled_on_start:
            self.engine.enable_auto_trading()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "auto_trader.started",
            interval_seconds=self.config.interval_seconds,
            symbols=self.config.symbols,
            min_confidence=self.config.min_confidence,
        )

    async def stop(self):
        """Signal the loop to exit and wait for the current tick to finish."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("auto_trader.stopped", cycles=self.cycles)

    async def _run(self):
        while not self._stop_event.is_set():
            if self.engine.is_auto_trading_enabled:
                try:
                    self.last_report = await self.run_cycle()
                except InvariantViolationError as e:
                    logger.critical("auto_trader.invariant_violation", error=e.message)
                    self.engine.disable_auto_trading()
                    raise
                except Exception as e:
                    logger.error("auto_trader.cycle_error", error=str(e))

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.config.interval_seconds
                )
            except asyncio.TimeoutError:
                continue

    async def run_cycle(self) -> CycleReport:
        """Enforce exit levels, then generate and submit signals for every configured symbol."""
        report = CycleReport()
        account = await self.engine.get_account()
        if account is None:
            logger.warning("auto_trader.engine_not_initialized")
            return report

        await self._enforce_exits(report)

        for symbol in self.config.symbols:
            try:
                await self._trade_symbol(symbol, account.id, report)
            except InvariantViolationError:
                raise
            except Exception as e:
                report.errors.append(f"{symbol}: {e}")
                logger.error("auto_trader.symbol_error", symbol=symbol, error=str(e))

        self.cycles += 1
        logger.info("auto_trader.cycle_complete", cycle=self.cycles, **report.summary())
        return report

    async def _enforce_exits(self, report: CycleReport):
        result = await self.engine.check_exit_levels()
        if not result.ok:
            report.errors.append(f"exits: {result.error_reason}")
            return

        for symbol, reason in result.data["failed"].items():
            report.errors.append(f"{symbol}: {reason}")
        for exit_ in result.data["closed"]:
            position = exit_["position"]
            report.exits += 1
            logger.info(
                "auto_trader.position_exited",
                symbol=position.symbol,
                reason=exit_["reason"],
                strategy=position.strategy,
            )
            self._record_outcome(position, exit_["fill"], abs(position.quantity))

    async def _trade_symbol(self, symbol: str, account_id: str, report: CycleReport):
        signals = await self.manager.generate_signals(symbol, account_id)
        report.signals += len(signals)

        for signal in signals:
            await self._handle_signal(signal, report)

    async def _handle_signal(self, signal: Signal, report: CycleReport):
        if signal.confidence < self.config.min_confidence:
            logger.debug(
                "auto_trader.signal_skipped",
                symbol=signal.symbol,
                reason="low_confidence",
                confidence=signal.confidence,
            )
            report.skipped += 1
            return

        position = await self.engine.get_position(signal.symbol)
        quantity = signal.quantity

        if signal.side == OrderSide.BUY and position is not None:
            logger.debug("auto_trader.signal_skipped", symbol=signal.symbol, reason="position_open")
            report.skipped += 1
            return

        if signal.side == OrderSide.SELL:
            if position is None or position.quantity <= 0:
                logger.debug("auto_trader.signal_skipped", symbol=signal.symbol, reason="no_position")
                report.skipped += 1
                return
            quantity = min(quantity, position.quantity)

        opening = signal.side == OrderSide.BUY
        report.submitted += 1
        result = await self.engine.execute_order(
            symbol=signal.symbol,
            side=signal.side,
            quantity=quantity,
            strategy=signal.strategy_id,
            reasoning=signal.explanation,
            confidence=signal.confidence,
            stop_loss=signal.stop_loss if opening else None,
            take_profit=signal.take_profit if opening else None,
        )

        if not result.ok:
            report.rejected += 1
            logger.info(
                "auto_trader.order_rejected",
                symbol=signal.symbol,
                strategy_id=signal.strategy_id,
                kind=result.error_kind.value if result.error_kind else None,
                reason=result.error_reason,
            )
            return

        report.filled += 1
        if position is not None:
            self._record_outcome(position, result.data, quantity)

    def _record_outcome(self, position: Position, fill: FillReport, quantity: Decimal):
        """Credit a reducing fill to the strategy that opened the position."""
        if fill.realized_pnl is None:
            return
        cost = position.avg_cost * quantity
        return_pct = float(fill.realized_pnl / cost) if cost else 0.0
        outcome = self.manager.record_trade_outcome(
            position.strategy, fill.realized_pnl, return_pct
        )
        if not outcome.ok:
            logger.debug(
                "auto_trader.outcome_not_recorded",
                strategy=position.strategy,
                reason=outcome.error_reason,
            )

"""Pre-trade risk checks."""

from paper_trading.risk.risk_manager import OrderContext, OrderRiskManager, RiskCheck, RiskRule

__all__ = [
    "OrderContext",
    "OrderRiskManager",
    "RiskCheck",
    "RiskRule",
]

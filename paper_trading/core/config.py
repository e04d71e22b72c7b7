"""Configuration management for the paper trading engine."""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYMBOLS = (
    "BTC/USD,ETH/USD,ADA/USD,SOL/USD,MATIC/USD,DOT/USD,LINK/USD,UNI/USD,AAVE/USD,"
    "AAPL,GOOGL,MSFT,AMZN,TSLA,NVDA,META"
)


def _split_csv(value: str) -> List[str]:
    return [s.strip() for s in value.split(",") if s.strip()]


# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="APP_", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = "development"
    app_name: str = "Paper Trading Engine"
    app_version: str = "0.1.0"
    default_user_id: str = "demo-user"


# =============================================================================
# Paper Trading Engine Configuration
# =============================================================================


class PaperTradingConfig(BaseSettings):
    """Simulated brokerage rules for the paper trading engine."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="PAPER_", case_sensitive=False, extra="ignore"
    )

    # Balance used by initialize() when no explicit balance is given
    initial_balance: Decimal = Field(default=Decimal("50000"), gt=0)

    # Fee = flat_fee + fee_rate * notional
    fee_rate: Decimal = Field(default=Decimal("0"), ge=0, lt=1)
    flat_fee: Decimal = Field(default=Decimal("0"), ge=0)

    # Max resulting position value as a fraction of total equity
    max_position_size: Decimal = Field(default=Decimal("0.2"), gt=0, le=1)

    # Buying power = cash * max_leverage
    max_leverage: Decimal = Field(default=Decimal("1"))

    # Maximum number of concurrently open positions
    max_positions: int = Field(default=5, ge=1)

    # Allowed symbols (comma separated; empty allows every symbol)
    allowed_symbols_str: str = Field(default=DEFAULT_SYMBOLS)

    # Gateway timeout for market order pricing
    price_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("max_leverage")
    @classmethod
    def validate_leverage(cls, v):
        """Validate leverage does not exceed safe limits."""
        if v < 1 or v > 10:
            raise ValueError("Leverage must be between 1 and 10")
        return v

    @property
    def allowed_symbols(self) -> List[str]:
        """Parse allowed_symbols string into list."""
        return _split_csv(self.allowed_symbols_str)

    def is_symbol_allowed(self, symbol: str) -> bool:
        symbols = self.allowed_symbols
        return not symbols or symbol in symbols

    def fee_for(self, notional: Decimal) -> Decimal:
        """Fee charged on a fill of the given notional."""
        return self.flat_fee + self.fee_rate * notional


class PaperTradingConfigUpdate(BaseModel):
    """Recognised keys for ``PaperTradingEngine.update_config``.

    Accepts snake_case or camelCase keys. Unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    initial_balance: Optional[Decimal] = Field(
        default=None, gt=0, validation_alias=AliasChoices("initial_balance", "initialBalance")
    )
    fee_rate: Optional[Decimal] = Field(
        default=None, ge=0, lt=1, validation_alias=AliasChoices("fee_rate", "feeRate")
    )
    flat_fee: Optional[Decimal] = Field(
        default=None, ge=0, validation_alias=AliasChoices("flat_fee", "flatFee")
    )
    max_position_size: Optional[Decimal] = Field(
        default=None, gt=0, le=1,
        validation_alias=AliasChoices("max_position_size", "maxPositionSize"),
    )
    max_leverage: Optional[Decimal] = Field(
        default=None, ge=1, le=10, validation_alias=AliasChoices("max_leverage", "maxLeverage")
    )
    max_positions: Optional[int] = Field(
        default=None, ge=1, validation_alias=AliasChoices("max_positions", "maxPositions")
    )
    allowed_symbols: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("allowed_symbols", "allowedSymbols")
    )

    def to_config_changes(self) -> Dict[str, Any]:
        """Changes to apply to a PaperTradingConfig."""
        changes = self.model_dump(exclude_none=True)
        symbols = changes.pop("allowed_symbols", None)
        if symbols is not None:
            changes["allowed_symbols_str"] = ",".join(symbols)
        return changes


# =============================================================================
# Auto-Trading Configuration
# =============================================================================


class AutoTradingConfig(BaseSettings):
    """Auto-trading loop configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="AUTO_", case_sensitive=False, extra="ignore"
    )

    interval_seconds: float = Field(default=10.0, gt=0)
    symbols_str: str = Field(default="BTC/USD,ETH/USD,SOL/USD")
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    enabled_on_start: bool = False

    @property
    def symbols(self) -> List[str]:
        """Parse symbols string into list."""
        return _split_csv(self.symbols_str)


# =============================================================================
# Strategy Selection Configuration
# =============================================================================


class StrategyConfig(BaseSettings):
    """Market classification and strategy selection settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="STRATEGY_", case_sensitive=False, extra="ignore"
    )

    # Price window pulled from the gateway
    series_window: int = Field(default=50, ge=2)

    # Moving averages for trend detection
    short_window: int = Field(default=5, ge=1)
    long_window: int = Field(default=20, ge=2)
    trend_threshold: float = Field(default=0.01, gt=0)

    # Volatility buckets (coefficient of variation of gross returns)
    volatility_low: float = Field(default=0.005, gt=0)
    volatility_medium: float = Field(default=0.015, gt=0)
    volatility_high: float = Field(default=0.03, gt=0)

    # Volume buckets (last volume / window mean)
    volume_low_ratio: float = Field(default=0.7, gt=0)
    volume_high_ratio: float = Field(default=1.5, gt=0)

    # Strategies active at start (comma separated ids)
    active_strategies_str: str = Field(default="")

    # Gateway timeout for series fetches
    series_timeout_seconds: float = Field(default=10.0, gt=0)

    @property
    def active_strategies(self) -> List[str]:
        return _split_csv(self.active_strategies_str)


# =============================================================================
# Market Data Configuration
# =============================================================================


class MarketDataConfig(BaseSettings):
    """Live market data gateway configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="MARKET_", case_sensitive=False, extra="ignore"
    )

    exchange_id: str = Field(default="kraken")
    timeframe: str = Field(default="1m")
    timeout_ms: int = Field(default=10000, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    rate_limit_delay_seconds: float = Field(default=60.0, gt=0)


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Ledger persistence configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="DATABASE_", case_sensitive=False, extra="ignore"
    )

    backend: Literal["memory", "database"] = "database"
    url: str = Field(default="sqlite+aiosqlite:///./data/paper_trading.db")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="LOG_", case_sensitive=False, extra="ignore"
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = Field(default="logs/paper_trading.log")
    json_format: bool = True


# =============================================================================
# Validation
# =============================================================================


def validate_configuration(
    paper: Optional[PaperTradingConfig] = None,
    strategy: Optional[StrategyConfig] = None,
    auto: Optional[AutoTradingConfig] = None,
) -> dict:
    """
    Validate cross-field configuration rules.

    Returns:
        Dictionary with 'valid' boolean and 'issues' list
    """
    paper = paper or paper_trading_config
    strategy = strategy or strategy_config
    auto = auto or auto_trading_config
    issues = []

    if strategy.short_window >= strategy.long_window:
        issues.append("Short moving average window must be shorter than the long window")

    if not (
        strategy.volatility_low < strategy.volatility_medium < strategy.volatility_high
    ):
        issues.append("Volatility thresholds must be in ascending order")

    if strategy.volume_low_ratio >= strategy.volume_high_ratio:
        issues.append("Volume low ratio must be below the high ratio")

    if strategy.series_window < strategy.long_window:
        issues.append("Series window should cover the long moving average window")

    if paper.allowed_symbols:
        unknown = [s for s in auto.symbols if s not in paper.allowed_symbols]
        if unknown:
            issues.append(f"Auto-trading symbols not in allowed list: {', '.join(unknown)}")

    return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

system_config = SystemConfig()
paper_trading_config = PaperTradingConfig()
auto_trading_config = AutoTradingConfig()
strategy_config = StrategyConfig()
market_data_config = MarketDataConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()


__all__ = [
    "SystemConfig",
    "PaperTradingConfig",
    "PaperTradingConfigUpdate",
    "AutoTradingConfig",
    "StrategyConfig",
    "MarketDataConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "validate_configuration",
    "system_config",
    "paper_trading_config",
    "auto_trading_config",
    "strategy_config",
    "market_data_config",
    "database_config",
    "logging_config",
]

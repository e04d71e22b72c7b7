"""Market data gateways.

The engine and the strategy manager only see the ``MarketDataGateway``
interface:

- ``current_price(symbol)`` for pricing market orders and marking positions
- ``recent_series(symbol, window)`` for market condition classification

Any failure is raised as ``UpstreamUnavailableError`` so callers never have
to know which library sits behind the gateway.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set

import ccxt.async_support as ccxt
import structlog

from paper_trading.core.config import MarketDataConfig, market_data_config
from paper_trading.core.errors import UpstreamUnavailableError
from paper_trading.core.models import PriceSample, utc_now

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 0.5  # seconds
    DEFAULT_MAX_DELAY = 10.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    DEFAULT_RATE_LIMIT_DELAY = 60.0  # seconds
    MAX_RATE_LIMIT_DELAY = 300.0  # seconds


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    rate_limit_delay: float = RetryConfig.DEFAULT_RATE_LIMIT_DELAY,
    retryable_exceptions: tuple = (
        ccxt.RateLimitExceeded, ccxt.NetworkError, ccxt.ExchangeNotAvailable, ccxt.RequestTimeout
    ),
):
    """Decorator for adding retry logic with exponential backoff.

    Rate-limit errors back off from ``rate_limit_delay`` (capped at
    ``RetryConfig.MAX_RATE_LIMIT_DELAY``) instead of ``base_delay``. They are
    told apart inside one handler because ``ccxt.RateLimitExceeded`` is itself
    a ``ccxt.NetworkError``.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        rate_limit_delay: Initial delay after a rate-limit error in seconds
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt == max_retries:
                        logger.error(
                            f"{func.__name__}.max_retries_exceeded",
                            max_retries=max_retries,
                            last_error=str(e)
                        )
                        raise

                    rate_limited = isinstance(e, ccxt.RateLimitExceeded)
                    if rate_limited:
                        delay = min(
                            rate_limit_delay * (exponential_base ** attempt),
                            RetryConfig.MAX_RATE_LIMIT_DELAY
                        )
                    else:
                        delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        f"{func.__name__}.{'rate_limit_hit' if rate_limited else 'retry_attempt'}",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e)
                    )
                    await asyncio.sleep(delay)

        wrapper.__name__ = func.__name__
        return wrapper
    return decorator


class MarketDataGateway(ABC):
    """Source of current prices and recent price/volume series."""

    @abstractmethod
    async def current_price(self, symbol: str) -> Decimal:
        """Latest traded price.

        Raises:
            UpstreamUnavailableError: If no price can be obtained
        """
        pass

    @abstractmethod
    async def recent_series(self, symbol: str, window: int) -> List[PriceSample]:
        """Up to ``window`` most recent samples, oldest first.

        Raises:
            UpstreamUnavailableError: If the series cannot be obtained
        """
        pass

    async def close(self):
        """Release network resources."""


class StaticMarketDataGateway(MarketDataGateway):
    """Deterministic in-process gateway.

    Prices and series are set explicitly, which makes it the test double for
    the engine and the strategy manager as well as a replay source.
    """

    def __init__(
        self,
        prices: Optional[Dict[str, object]] = None,
        series: Optional[Dict[str, List[PriceSample]]] = None,
    ):
        self._prices: Dict[str, Decimal] = {
            symbol: Decimal(str(price)) for symbol, price in (prices or {}).items()
        }
        self._series: Dict[str, List[PriceSample]] = dict(series or {})
        self._unavailable: Set[str] = set()

    def set_price(self, symbol: str, price) -> None:
        self._prices[symbol] = Decimal(str(price))

    def set_series(
        self,
        symbol: str,
        prices: Sequence,
        volumes: Optional[Iterable] = None,
        start: Optional[datetime] = None,
        step: timedelta = timedelta(minutes=1),
    ) -> List[PriceSample]:
        """Install a series built from plain prices; the last price becomes current."""
        volumes = list(volumes) if volumes is not None else [1] * len(prices)
        start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        samples = [
            PriceSample(
                timestamp=start + step * i,
                price=Decimal(str(price)),
                volume=Decimal(str(volume)),
            )
            for i, (price, volume) in enumerate(zip(prices, volumes))
        ]
        self._series[symbol] = samples
        if samples:
            self._prices[symbol] = samples[-1].price
        return samples

    def set_unavailable(self, symbol: str, unavailable: bool = True) -> None:
        """Simulate an outage for one symbol."""
        if unavailable:
            self._unavailable.add(symbol)
        else:
            self._unavailable.discard(symbol)

    async def current_price(self, symbol: str) -> Decimal:
        self._check_available(symbol)
        price = self._prices.get(symbol)
        if price is None:
            raise UpstreamUnavailableError(f"No price available for {symbol}", {"symbol": symbol})
        return price

    async def recent_series(self, symbol: str, window: int) -> List[PriceSample]:
        self._check_available(symbol)
        samples = self._series.get(symbol)
        if samples is None:
            price = self._prices.get(symbol)
            if price is None:
                raise UpstreamUnavailableError(
                    f"No series available for {symbol}", {"symbol": symbol}
                )
            return [PriceSample(timestamp=utc_now(), price=price)]
        return list(samples[-window:])

    def _check_available(self, symbol: str):
        if symbol in self._unavailable:
            raise UpstreamUnavailableError(
                f"Market data for {symbol} is unavailable", {"symbol": symbol}
            )


class CcxtMarketDataGateway(MarketDataGateway):
    """Live public market data through ccxt (no credentials required)."""

    def __init__(self, config: Optional[MarketDataConfig] = None, exchange=None):
        self.config = config or market_data_config
        self._exchange = exchange

        retry = with_retry(
            max_retries=self.config.retry_attempts,
            rate_limit_delay=self.config.rate_limit_delay_seconds,
        )
        self._fetch_ticker = retry(self._fetch_ticker)
        self._fetch_ohlcv = retry(self._fetch_ohlcv)

    def _get_exchange(self):
        if self._exchange is None:
            exchange_class = getattr(ccxt, self.config.exchange_id, None)
            if exchange_class is None:
                raise UpstreamUnavailableError(
                    f"Unknown exchange: {self.config.exchange_id}"
                )
            self._exchange = exchange_class({
                'enableRateLimit': True,
                'timeout': self.config.timeout_ms,
            })
        return self._exchange

    async def _fetch_ticker(self, symbol: str) -> dict:
        return await self._get_exchange().fetch_ticker(symbol)

    async def _fetch_ohlcv(self, symbol: str, limit: int) -> list:
        return await self._get_exchange().fetch_ohlcv(
            symbol, timeframe=self.config.timeframe, limit=limit
        )

    async def current_price(self, symbol: str) -> Decimal:
        try:
            ticker = await self._fetch_ticker(symbol)
        except ccxt.BaseError as e:
            logger.error("gateway.ticker_error", symbol=symbol, error=str(e))
            raise UpstreamUnavailableError(
                f"Price fetch failed for {symbol}: {e}", {"symbol": symbol}
            ) from e

        price = ticker.get('last') or ticker.get('close')
        if not price:
            raise UpstreamUnavailableError(f"Ticker for {symbol} has no price", {"symbol": symbol})
        return Decimal(str(price))

    async def recent_series(self, symbol: str, window: int) -> List[PriceSample]:
        try:
            ohlcv = await self._fetch_ohlcv(symbol, window)
        except ccxt.BaseError as e:
            logger.error("gateway.ohlcv_error", symbol=symbol, error=str(e))
            raise UpstreamUnavailableError(
                f"Series fetch failed for {symbol}: {e}", {"symbol": symbol}
            ) from e

        # ccxt rows: [timestamp_ms, open, high, low, close, volume]
        return [
            PriceSample(
                timestamp=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
                price=Decimal(str(row[4])),
                volume=Decimal(str(row[5] or 0)),
            )
            for row in ohlcv
            if row[4]
        ]

    async def close(self):
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None

"""Unit tests for market data gateways."""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import ccxt.async_support as ccxt
import pytest

from paper_trading.core.config import MarketDataConfig
from paper_trading.core.errors import UpstreamUnavailableError
from paper_trading.market.gateway import CcxtMarketDataGateway, with_retry


@pytest.fixture
def exchange():
    """Stand-in for a ccxt async exchange."""
    mock = AsyncMock()
    mock.fetch_ticker.return_value = {"last": 50123.45, "close": 50000.0}
    mock.fetch_ohlcv.return_value = [
        [1704067200000, 100.0, 101.0, 99.0, 100.5, 12.0],
        [1704067260000, 100.5, 102.0, 100.0, 101.5, None],
    ]
    return mock


@pytest.fixture
def ccxt_gateway(exchange):
    return CcxtMarketDataGateway(MarketDataConfig(retry_attempts=0), exchange=exchange)


class TestStaticGateway:
    """Test the deterministic gateway."""

    @pytest.mark.asyncio
    async def test_current_price(self, gateway):
        assert await gateway.current_price("BTC/USD") == Decimal("50000")

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, gateway):
        with pytest.raises(UpstreamUnavailableError):
            await gateway.current_price("XRP/USD")
        with pytest.raises(UpstreamUnavailableError):
            await gateway.recent_series("XRP/USD", 10)

    @pytest.mark.asyncio
    async def test_series_window_and_price(self, gateway, series):
        gateway.set_series("BTC/USD", series["uptrend"])

        window = await gateway.recent_series("BTC/USD", 10)

        assert len(window) == 10
        assert window[-1].price == Decimal("124.5")
        assert window[0].timestamp < window[-1].timestamp
        assert await gateway.current_price("BTC/USD") == Decimal("124.5")

    @pytest.mark.asyncio
    async def test_price_without_series_is_one_sample(self, gateway):
        samples = await gateway.recent_series("ETH/USD", 50)

        assert [s.price for s in samples] == [Decimal("3000")]

    @pytest.mark.asyncio
    async def test_outage_can_be_cleared(self, gateway):
        gateway.set_unavailable("BTC/USD")
        with pytest.raises(UpstreamUnavailableError):
            await gateway.current_price("BTC/USD")

        gateway.set_unavailable("BTC/USD", False)
        assert await gateway.current_price("BTC/USD") == Decimal("50000")


class TestCcxtGateway:
    """Test the ccxt-backed gateway against a stand-in exchange."""

    @pytest.mark.asyncio
    async def test_current_price_uses_last(self, ccxt_gateway, exchange):
        price = await ccxt_gateway.current_price("BTC/USD")

        assert price == Decimal("50123.45")
        exchange.fetch_ticker.assert_awaited_once_with("BTC/USD")

    @pytest.mark.asyncio
    async def test_ticker_without_price(self, ccxt_gateway, exchange):
        exchange.fetch_ticker.return_value = {"last": None, "close": None}

        with pytest.raises(UpstreamUnavailableError):
            await ccxt_gateway.current_price("BTC/USD")

    @pytest.mark.asyncio
    async def test_exchange_errors_mapped(self, ccxt_gateway, exchange):
        exchange.fetch_ticker.side_effect = ccxt.ExchangeError("bad symbol")
        exchange.fetch_ohlcv.side_effect = ccxt.NetworkError("down")

        with pytest.raises(UpstreamUnavailableError):
            await ccxt_gateway.current_price("BTC/USD")
        with pytest.raises(UpstreamUnavailableError):
            await ccxt_gateway.recent_series("BTC/USD", 5)

    @pytest.mark.asyncio
    async def test_ohlcv_rows_become_samples(self, ccxt_gateway, exchange):
        samples = await ccxt_gateway.recent_series("BTC/USD", 2)

        assert [s.price for s in samples] == [Decimal("100.5"), Decimal("101.5")]
        assert samples[0].volume == Decimal("12.0")
        assert samples[1].volume == Decimal("0")
        assert samples[0].timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)
        exchange.fetch_ohlcv.assert_awaited_once_with("BTC/USD", timeframe="1m", limit=2)

    @pytest.mark.asyncio
    async def test_close_releases_exchange(self, ccxt_gateway, exchange):
        await ccxt_gateway.close()

        exchange.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_exchange(self):
        gateway = CcxtMarketDataGateway(MarketDataConfig(exchange_id="not_an_exchange"))

        with pytest.raises(UpstreamUnavailableError):
            await gateway.current_price("BTC/USD")


class TestRetry:
    """Test retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_retries_network_errors(self):
        calls = []

        @with_retry(max_retries=2, base_delay=0.001)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ccxt.NetworkError("blip")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = []

        @with_retry(max_retries=1, base_delay=0.001)
        async def down():
            calls.append(1)
            raise ccxt.RequestTimeout("slow")

        with pytest.raises(ccxt.RequestTimeout):
            await down()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        calls = []

        @with_retry(max_retries=3, base_delay=0.001)
        async def rejected():
            calls.append(1)
            raise ccxt.ExchangeError("bad request")

        with pytest.raises(ccxt.ExchangeError):
            await rejected()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_longer(self, monkeypatch):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr(asyncio, "sleep", record_sleep)
        calls = []

        @with_retry(max_retries=2, base_delay=0.001, rate_limit_delay=5.0)
        async def throttled():
            calls.append(1)
            if len(calls) == 1:
                raise ccxt.RateLimitExceeded("slow down")
            if len(calls) == 2:
                raise ccxt.NetworkError("blip")
            return "ok"

        assert await throttled() == "ok"
        assert delays == [pytest.approx(5.0), pytest.approx(0.002)]

    @pytest.mark.asyncio
    async def test_rate_limit_delay_capped(self, monkeypatch):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr(asyncio, "sleep", record_sleep)

        @with_retry(max_retries=3, rate_limit_delay=200.0)
        async def throttled():
            raise ccxt.RateLimitExceeded("slow down")

        with pytest.raises(ccxt.RateLimitExceeded):
            await throttled()
        assert delays == [200.0, 300.0, 300.0]

"""
ccxt market data: symbol resolution, mid prices, candles, orderbook.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from tradeloop.data.market_data import CcxtMarketData, market_base, market_for_symbol, resolve_symbol
from tradeloop.exceptions import DataAcquisitionError


def _exchange():
    exchange = MagicMock()
    exchange.markets = {
        "BTC/USDC": {"symbol": "BTC/USDC", "base": "BTC", "quote": "USDC", "spot": True},
        "BTC/USDC:USDC": {"symbol": "BTC/USDC:USDC", "base": "BTC", "quote": "USDC", "swap": True},
        "ETH/USDC:USDC": {"symbol": "ETH/USDC:USDC", "base": "ETH", "quote": "USDC", "swap": True},
    }
    exchange.load_markets = AsyncMock()
    exchange.close = AsyncMock()
    return exchange


def test_market_names():
    assert market_base("BTC-PERP") == "BTC"
    assert market_base("eth/usdc:usdc") == "ETH"
    assert market_for_symbol("SOL/USDC:USDC") == "SOL-PERP"
    assert market_for_symbol("SOL/USDC") == "SOL-SPOT"


@pytest.mark.asyncio
async def test_resolve_prefers_swap_unless_spot_requested():
    exchange = _exchange()

    perp = await resolve_symbol(exchange, "test-resolve", "BTC-PERP", "USDC")
    spot = await resolve_symbol(exchange, "test-resolve", "BTC-SPOT", "USDC")

    assert perp == "BTC/USDC:USDC"
    assert spot == "BTC/USDC"


@pytest.mark.asyncio
async def test_resolve_unknown_market():
    with pytest.raises(DataAcquisitionError):
        await resolve_symbol(_exchange(), "test-unknown", "DOGE-PERP", "USDC")


@pytest.mark.asyncio
async def test_mid_prices_skip_failures():
    exchange = _exchange()

    async def fetch_ticker(symbol):
        if symbol.startswith("ETH"):
            raise ccxt.NetworkError("timeout")
        return {"bid": 99.0, "ask": 101.0, "last": 100.5}

    exchange.fetch_ticker = AsyncMock(side_effect=fetch_ticker)
    data = CcxtMarketData("test-mids", exchange=exchange)

    prices = await data.get_mid_prices(["BTC-PERP", "ETH-PERP"])

    assert prices == {"BTC-PERP": Decimal("100")}


@pytest.mark.asyncio
async def test_mid_price_falls_back_to_last():
    exchange = _exchange()
    exchange.fetch_ticker = AsyncMock(return_value={"bid": None, "ask": None, "last": 42.5})
    data = CcxtMarketData("test-last", exchange=exchange)

    assert await data.get_mid_prices(["ETH-PERP"]) == {"ETH-PERP": Decimal("42.5")}


@pytest.mark.asyncio
async def test_candles_are_converted():
    exchange = _exchange()
    exchange.fetch_ohlcv = AsyncMock(return_value=[
        [1767225600000, 100, 102, 99, 101, 5],
        [1767225900000, 101, 103, 100, 102, 6],
    ])
    data = CcxtMarketData("test-candles", exchange=exchange)

    candles = await data.get_candles("BTC-PERP", "5m", 2)

    assert len(candles) == 2
    assert candles[-1].close == Decimal("102")
    assert candles[0].timestamp.tzinfo is not None
    exchange.fetch_ohlcv.assert_awaited_once_with("BTC/USDC:USDC", timeframe="5m", limit=2)


@pytest.mark.asyncio
async def test_orderbook_top():
    exchange = _exchange()
    exchange.fetch_order_book = AsyncMock(return_value={"bids": [[99.5, 1]], "asks": [[100.5, 2]]})
    data = CcxtMarketData("test-book", exchange=exchange)

    top = await data.get_orderbook_top("BTC-PERP")

    assert top.mid == Decimal("100")
    assert top.spread_pct == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_empty_orderbook_raises():
    exchange = _exchange()
    exchange.fetch_order_book = AsyncMock(return_value={"bids": [], "asks": []})
    data = CcxtMarketData("test-empty-book", exchange=exchange)

    with pytest.raises(DataAcquisitionError):
        await data.get_orderbook_top("BTC-PERP")

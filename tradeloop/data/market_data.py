"""
Market data over ccxt (public endpoints).

Markets are named like ``BTC-PERP`` (``-SPOT`` for spot pairs); unified ccxt
symbols (``BTC/USDC:USDC``) are accepted as-is. The market -> symbol lookup is
a process-wide cache shared by every session: entries are immutable facts, so
concurrent lazy population is safe.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import ccxt
import ccxt.async_support as ccxt_async

from tradeloop.domain.models import Candle, OrderbookTop
from tradeloop.exceptions import DataAcquisitionError
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

# (exchange_id, market) -> unified ccxt symbol
_SYMBOL_CACHE: Dict[Tuple[str, str], str] = {}


def market_base(market: str) -> str:
    """'BTC-PERP' -> 'BTC', 'ETH/USDC:USDC' -> 'ETH'."""
    if "/" in market:
        return market.split("/")[0].upper()
    for suffix in ("-PERP", "-SPOT", "-USD"):
        if market.upper().endswith(suffix):
            return market[: -len(suffix)].upper()
    return market.upper()


def market_for_symbol(symbol: str) -> str:
    """Unified ccxt symbol back to a market name. Spot pairs keep ``-SPOT``."""
    base = market_base(symbol)
    if ":" in symbol:
        return f"{base}-PERP"
    return f"{base}-SPOT"


async def resolve_symbol(exchange: Any, exchange_id: str, market: str, quote: str) -> str:
    """
    Resolve a market name to the venue's unified symbol.

    Perpetual swaps are preferred unless the market is explicitly ``-SPOT``.

    Raises:
        DataAcquisitionError: If the venue lists no matching market
    """
    key = (exchange_id, market)
    cached = _SYMBOL_CACHE.get(key)
    if cached:
        return cached

    if "/" in market:
        _SYMBOL_CACHE[key] = market
        return market

    if not exchange.markets:
        await exchange.load_markets()

    base = market_base(market)
    want_spot = market.upper().endswith("-SPOT")
    candidates = [
        m for m in exchange.markets.values()
        if m.get("base", "").upper() == base
        and m.get("quote", "").upper() == quote.upper()
        and m.get("active", True) is not False
    ]
    if not want_spot:
        swaps = [m for m in candidates if m.get("swap")]
        candidates = swaps or candidates
    else:
        candidates = [m for m in candidates if m.get("spot")] or candidates

    if not candidates:
        raise DataAcquisitionError(f"Market {market} not listed on {exchange_id} (quote {quote})")

    symbol = candidates[0]["symbol"]
    _SYMBOL_CACHE[key] = symbol
    logger.debug("SYMBOL_RESOLVED", exchange=exchange_id, market=market, symbol=symbol)
    return symbol


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except ArithmeticError:
        return None
    return result if result.is_finite() else None


class CcxtMarketData:
    """MarketDataProvider over a ccxt async exchange."""

    def __init__(
        self,
        exchange_id: str = "hyperliquid",
        quote_currency: str = "USDC",
        timeout_ms: int = 30000,
        exchange: Any = None,
    ):
        self.exchange_id = exchange_id
        self.quote_currency = quote_currency
        self.timeout_ms = timeout_ms
        self._exchange = exchange

    def _client(self):
        if self._exchange is None:
            exchange_cls = getattr(ccxt_async, self.exchange_id, None)
            if exchange_cls is None:
                raise DataAcquisitionError(f"Unknown ccxt exchange: {self.exchange_id}")
            self._exchange = exchange_cls({
                'enableRateLimit': True,
                'timeout': self.timeout_ms,
            })
        return self._exchange

    async def _symbol(self, market: str) -> str:
        return await resolve_symbol(self._client(), self.exchange_id, market, self.quote_currency)

    async def get_mid_prices(self, markets: Iterable[str]) -> Dict[str, Decimal]:
        """
        Mid prices for the given markets.

        Markets that fail are left out of the result; callers decide whether
        a partial result is usable.
        """
        wanted = list(dict.fromkeys(markets))
        results = await asyncio.gather(
            *(self._mid_price(market) for market in wanted),
            return_exceptions=True,
        )
        prices: Dict[str, Decimal] = {}
        for market, result in zip(wanted, results):
            if isinstance(result, Exception):
                logger.warning("MID_PRICE_FAILED", market=market, error=str(result))
                continue
            if result is not None:
                prices[market] = result
        return prices

    async def _mid_price(self, market: str) -> Optional[Decimal]:
        symbol = await self._symbol(market)
        try:
            ticker = await self._client().fetch_ticker(symbol)
        except ccxt.BaseError as e:
            raise DataAcquisitionError(f"Ticker fetch failed for {market}: {e}") from e

        bid = _to_decimal(ticker.get("bid"))
        ask = _to_decimal(ticker.get("ask"))
        if bid and ask and bid > 0 and ask > 0:
            return (bid + ask) / 2
        last = _to_decimal(ticker.get("last") or ticker.get("close"))
        if last and last > 0:
            return last
        return None

    async def get_candles(self, market: str, interval: str, count: int) -> List[Candle]:
        """Most recent ``count`` candles, oldest first."""
        symbol = await self._symbol(market)
        try:
            rows = await self._client().fetch_ohlcv(symbol, timeframe=interval, limit=count)
        except ccxt.BaseError as e:
            raise DataAcquisitionError(f"Candle fetch failed for {market}: {e}") from e

        candles = []
        for ts, o, h, l, c, v in rows:
            candles.append(Candle(
                timestamp=datetime.fromtimestamp(ts / 1000, tz=timezone.utc),
                market=market,
                timeframe=interval,
                open=Decimal(str(o)),
                high=Decimal(str(h)),
                low=Decimal(str(l)),
                close=Decimal(str(c)),
                volume=Decimal(str(v or 0)),
            ))
        return candles[-count:]

    async def get_orderbook_top(self, market: str) -> OrderbookTop:
        symbol = await self._symbol(market)
        try:
            book = await self._client().fetch_order_book(symbol, limit=5)
        except ccxt.BaseError as e:
            raise DataAcquisitionError(f"Orderbook fetch failed for {market}: {e}") from e

        if not book.get("bids") or not book.get("asks"):
            raise DataAcquisitionError(f"Empty orderbook for {market}")
        bid = Decimal(str(book["bids"][0][0]))
        ask = Decimal(str(book["asks"][0][0]))
        return OrderbookTop(bid=bid, ask=ask, mid=(bid + ask) / 2)

    async def close(self) -> None:
        """Cleanup resources."""
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None

"""
Exchange broker for live sessions.

Market orders are emulated as aggressive immediate-or-cancel limit orders
priced off top-of-book. Any request whose mode is not ``live`` is refused
with a ``skipped`` result before credentials are even looked up.

Venue errors never propagate: they come back as failed OrderResults carrying
the venue's response.
"""
import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import ccxt
import ccxt.async_support as ccxt_async
from sqlalchemy.exc import SQLAlchemyError

from tradeloop.data.market_data import market_for_symbol, resolve_symbol
from tradeloop.domain.models import (
    Account,
    OrderRequest,
    OrderResult,
    OrderbookTop,
    OrderSide,
    OrderStatus,
    Position,
    SessionMode,
    Side,
    Trade,
    TradeAction,
    TradingSession,
    utc_now,
)
from tradeloop.domain.protocols import (
    CredentialsProvider,
    OrderSubmitter,
    Storage,
    SubmitterFactory,
    VenueCredentials,
    VenueOrder,
)
from tradeloop.exceptions import DataAcquisitionError, InvariantError, OrderExecutionError
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

_BPS = Decimal("10000")


def _extract_venue_error(exc: Exception) -> Tuple[str, str]:
    """Extract venue error code and message from a ccxt exception. Returns (code, message)."""
    code, msg = "UNKNOWN", str(exc)
    s = str(exc)
    start, end = s.find("{"), s.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            data = json.loads(s[start:end])
        except ValueError:
            return (code, msg)
        if isinstance(data, dict):
            errs = data.get("errors") or data.get("error") or data.get("response")
            if isinstance(errs, list) and errs and isinstance(errs[0], dict):
                code = str(errs[0].get("code", code))
                msg = str(errs[0].get("message", msg))
            elif isinstance(errs, str):
                msg = errs
    return (code, msg)


def env_credentials(user_id: Optional[str], venue: str) -> Optional[VenueCredentials]:
    """
    Credentials from ``<VENUE>_API_KEY`` / ``_API_SECRET`` / ``_WALLET_ADDRESS``.

    Single-tenant default; multi-user deployments inject their own provider.
    """
    prefix = venue.upper()
    api_key = os.getenv(f"{prefix}_API_KEY")
    api_secret = os.getenv(f"{prefix}_API_SECRET")
    wallet = os.getenv(f"{prefix}_WALLET_ADDRESS")
    if not (api_key or api_secret or wallet):
        return None
    return VenueCredentials(venue=venue, api_key=api_key, api_secret=api_secret, wallet_address=wallet)


class CcxtOrderSubmitter:
    """Signs and submits orders through a ccxt async exchange."""

    def __init__(
        self,
        credentials: VenueCredentials,
        *,
        exchange_id: Optional[str] = None,
        quote_currency: str = "USDC",
        use_testnet: bool = False,
        timeout_ms: int = 30000,
        exchange: Any = None,
    ):
        self.credentials = credentials
        self.exchange_id = exchange_id or credentials.venue
        self.quote_currency = quote_currency
        self.use_testnet = use_testnet
        self.timeout_ms = timeout_ms
        self._exchange = exchange

    def _client(self):
        if self._exchange is None:
            exchange_cls = getattr(ccxt_async, self.exchange_id, None)
            if exchange_cls is None:
                raise OrderExecutionError(f"Unknown ccxt exchange: {self.exchange_id}")
            options: Dict[str, Any] = {
                'enableRateLimit': True,
                'timeout': self.timeout_ms,
            }
            if self.credentials.api_key:
                options['apiKey'] = self.credentials.api_key
            if self.credentials.api_secret:
                options['secret'] = self.credentials.api_secret
            if self.credentials.wallet_address:
                # Wallet-signed venues take the private key as the signing secret
                options['walletAddress'] = self.credentials.wallet_address
                options['privateKey'] = self.credentials.api_secret
            self._exchange = exchange_cls(options)
            if self.use_testnet:
                self._exchange.set_sandbox_mode(True)
        return self._exchange

    async def _symbol(self, market: str) -> str:
        return await resolve_symbol(self._client(), self.exchange_id, market, self.quote_currency)

    async def get_orderbook_top(self, market: str) -> OrderbookTop:
        symbol = await self._symbol(market)
        book = await self._client().fetch_order_book(symbol, limit=5)
        if not book.get("bids") or not book.get("asks"):
            raise DataAcquisitionError(f"Empty orderbook for {market}")
        bid = Decimal(str(book["bids"][0][0]))
        ask = Decimal(str(book["asks"][0][0]))
        return OrderbookTop(bid=bid, ask=ask, mid=(bid + ask) / 2)

    async def prepare_order(
        self,
        market: str,
        side: OrderSide,
        size: Decimal,
        limit_price: Decimal,
        reduce_only: bool = False,
        leverage: Optional[Decimal] = None,
    ) -> VenueOrder:
        """Round size and price to venue precision."""
        exchange = self._client()
        symbol = await self._symbol(market)
        amount = Decimal(str(exchange.amount_to_precision(symbol, float(size))))
        price = Decimal(str(exchange.price_to_precision(symbol, float(limit_price))))
        return VenueOrder(
            symbol=symbol,
            side=side,
            amount=amount,
            price=price,
            reduce_only=reduce_only,
            leverage=leverage,
        )

    async def submit(self, order: VenueOrder) -> Dict[str, Any]:
        params: Dict[str, Any] = {'timeInForce': order.time_in_force}
        if order.reduce_only:
            params['reduceOnly'] = True
        exchange = self._client()
        if order.leverage and not order.reduce_only:
            try:
                await exchange.set_leverage(int(order.leverage), order.symbol)
            except ccxt.NotSupported:
                logger.debug("Leverage setting not supported by venue", symbol=order.symbol)
        return await exchange.create_order(
            symbol=order.symbol,
            type='limit',
            side=order.side.value,
            amount=float(order.amount),
            price=float(order.price),
            params=params,
        )

    async def fetch_equity(self) -> Decimal:
        try:
            balance = await self._client().fetch_balance()
        except ccxt.BaseError as e:
            raise DataAcquisitionError(f"Failed to fetch {self.exchange_id} balance: {e}") from e
        total = balance.get("total") or {}
        for currency in (self.quote_currency, "USDC", "USD", "USDT"):
            if total.get(currency) is not None:
                return Decimal(str(total[currency]))
        raise DataAcquisitionError(f"No {self.quote_currency} balance reported by {self.exchange_id}")

    async def fetch_positions(self) -> List[Dict[str, Any]]:
        try:
            return await self._client().fetch_positions()
        except ccxt.BaseError as e:
            raise DataAcquisitionError(f"Failed to fetch {self.exchange_id} positions: {e}") from e

    async def close(self) -> None:
        """Cleanup resources."""
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None


def ccxt_submitter_factory(
    exchange_id: Optional[str] = None,
    *,
    quote_currency: str = "USDC",
    use_testnet: bool = False,
    timeout_ms: int = 30000,
) -> SubmitterFactory:
    def factory(credentials: VenueCredentials) -> OrderSubmitter:
        return CcxtOrderSubmitter(
            credentials,
            exchange_id=exchange_id,
            quote_currency=quote_currency,
            use_testnet=use_testnet,
            timeout_ms=timeout_ms,
        )
    return factory


def _filled_amount(response: Dict[str, Any]) -> Decimal:
    filled = response.get("filled")
    if filled is None and response.get("status") == "closed":
        filled = response.get("amount")
    return Decimal(str(filled or 0))


class ExchangeBroker:
    """Live-only broker. Non-live requests are a no-op ``skipped`` result."""

    def __init__(
        self,
        storage: Storage,
        credentials_provider: CredentialsProvider,
        submitter_factory: SubmitterFactory,
        *,
        default_venue: str = "hyperliquid",
    ):
        self.storage = storage
        self.credentials_provider = credentials_provider
        self.submitter_factory = submitter_factory
        self.default_venue = default_venue

    async def place_order(self, request: OrderRequest) -> OrderResult:
        if request.mode != SessionMode.LIVE:
            logger.warning("EXCHANGE_ORDER_REFUSED_NOT_LIVE", mode=request.mode.value, market=request.market)
            return OrderResult.skipped(f"Exchange broker refuses {request.mode.value} orders")
        if request.close_size is None and request.notional_usd <= 0:
            return OrderResult.skipped("Zero notional")
        if request.close_size is not None and request.close_size <= 0:
            return OrderResult.skipped("Zero close size")

        venue = request.venue or self.default_venue
        credentials = self.credentials_provider(request.user_id, venue)
        if credentials is None or not credentials.is_complete:
            return OrderResult.failed(f"No credentials configured for {venue}")

        submitter = self.submitter_factory(credentials)
        try:
            return await self._submit(request, submitter)
        finally:
            await submitter.close()

    async def _submit(self, request: OrderRequest, submitter: OrderSubmitter) -> OrderResult:
        try:
            top = await submitter.get_orderbook_top(request.market)
        except (ccxt.BaseError, DataAcquisitionError, OrderExecutionError) as e:
            logger.error("EXCHANGE_ORDERBOOK_FAILED", market=request.market, error=str(e))
            return OrderResult.failed(f"Orderbook unavailable: {e}")

        slip = Decimal(str(request.slippage_bps)) / _BPS
        if request.side == OrderSide.BUY:
            limit_price = top.ask * (1 + slip)
        else:
            limit_price = top.bid * (1 - slip)
        if limit_price <= 0:
            return OrderResult.failed(f"Invalid limit price {limit_price}")

        size = request.close_size if request.close_size is not None else request.notional_usd / limit_price
        reduce_only = request.reduce_only or request.close_size is not None

        try:
            order = await submitter.prepare_order(
                request.market, request.side, size, limit_price, reduce_only, request.leverage
            )
            if order.amount <= 0:
                return OrderResult.skipped("Size rounds to zero at venue precision")
            logger.info(
                "EXCHANGE_ORDER_SUBMITTING",
                market=request.market,
                symbol=order.symbol,
                side=order.side.value,
                amount=float(order.amount),
                price=float(order.price),
                reduce_only=order.reduce_only,
            )
            response = await submitter.submit(order)
        except (ccxt.BaseError, DataAcquisitionError, OrderExecutionError) as e:
            venue_code, venue_msg = _extract_venue_error(e)
            logger.error(
                "ORDER_REJECTED_BY_VENUE",
                market=request.market,
                venue_error_code=venue_code,
                venue_error_message=venue_msg,
                payload_summary={"side": request.side.value, "size": float(size), "price": float(limit_price)},
            )
            return OrderResult.failed(
                f"Venue rejected order: {venue_msg}",
                venue_response={"error": venue_msg, "code": venue_code},
            )

        filled = _filled_amount(response)
        if filled <= 0:
            return OrderResult(
                success=False,
                status=OrderStatus.REJECTED,
                venue_order_id=response.get("id"),
                venue_response=response,
                error=f"Order not filled (IOC, status={response.get('status')})",
            )

        fill_price = Decimal(str(response.get("average") or response.get("price") or order.price))
        fee_info = response.get("fee") or {}
        fee = Decimal(str(fee_info.get("cost") or 0))
        trade = self._record_trade(request, filled, fill_price, fee, response.get("id"))

        return OrderResult(
            success=True,
            status=OrderStatus.FILLED,
            fill_price=fill_price,
            fill_size=filled,
            fee=fee,
            realized_pnl=trade.realized_pnl if trade else Decimal("0"),
            action=trade.action if trade else None,
            trade_id=trade.id if trade else None,
            venue_order_id=response.get("id"),
            venue_response=response,
        )

    def _record_trade(
        self,
        request: OrderRequest,
        size: Decimal,
        price: Decimal,
        fee: Decimal,
        venue_order_id: Optional[str],
    ) -> Optional[Trade]:
        """Audit row for a venue fill. Positions are re-synced from the venue each tick."""
        existing = self.storage.get_position(request.account_id, request.market)
        desired = request.side.position_side
        realized = Decimal("0")
        if existing is None:
            action = TradeAction.OPEN
        elif existing.side == desired:
            action = TradeAction.INCREASE
        else:
            closed = min(size, existing.size)
            realized = existing.pnl_at(price) * closed / existing.size
            action = TradeAction.CLOSE if closed >= existing.size else TradeAction.REDUCE

        trade = Trade(
            account_id=request.account_id,
            market=request.market,
            action=action,
            side=request.side,
            size=size,
            price=price,
            fee=fee,
            realized_pnl=realized,
            session_id=request.session_id,
            strategy_id=request.strategy_id,
            leverage=request.leverage,
            venue_order_id=venue_order_id,
        )
        try:
            return self.storage.insert_trade(trade)
        except (SQLAlchemyError, InvariantError) as e:
            # Venue fill stands even when the audit row fails
            logger.error("LIVE_TRADE_RECORD_FAILED", market=request.market, venue_order_id=venue_order_id, error=str(e))
            return None


def _position_from_venue(account_id: str, raw: Dict[str, Any]) -> Optional[Position]:
    contracts = raw.get("contracts")
    if contracts is None:
        contracts = raw.get("contractSize")
    size = Decimal(str(contracts or 0))
    if size == 0:
        return None
    side_raw = raw.get("side")
    if side_raw in ("long", "short"):
        side = Side(side_raw)
    else:
        side = Side.LONG if size > 0 else Side.SHORT
    entry = Decimal(str(raw.get("entryPrice") or 0))
    if entry <= 0:
        return None
    leverage = raw.get("leverage")
    return Position(
        account_id=account_id,
        market=market_for_symbol(raw["symbol"]),
        side=side,
        size=abs(size),
        avg_entry=entry,
        unrealized_pnl=Decimal(str(raw.get("unrealizedPnl") or 0)),
        leverage=Decimal(str(leverage)) if leverage else None,
    )


async def get_or_create_live_account(
    storage: Storage,
    session: TradingSession,
    submitter: OrderSubmitter,
    venue: str,
) -> Account:
    """Live accounts are created lazily with starting equity fetched from the venue."""
    account = storage.find_account(session.user_id, SessionMode.LIVE, venue)
    if account is not None:
        return account
    equity = await submitter.fetch_equity()
    account = storage.save_account(Account(
        id="",
        user_id=session.user_id,
        mode=SessionMode.LIVE,
        starting_equity=equity,
        cash_balance=equity,
        equity=equity,
        venue=venue,
    ))
    logger.info("LIVE_ACCOUNT_CREATED", account_id=account.id, venue=venue, starting_equity=float(equity))
    return account


async def sync_live_account(storage: Storage, account: Account, submitter: OrderSubmitter) -> Account:
    """Replace stored positions and equity with the venue's view."""
    equity = await submitter.fetch_equity()
    raw_positions = await submitter.fetch_positions()

    positions = []
    for raw in raw_positions:
        try:
            position = _position_from_venue(account.id, raw)
        except (KeyError, ValueError, ArithmeticError) as e:
            logger.warning("LIVE_POSITION_PARSE_FAILED", symbol=raw.get("symbol"), error=str(e))
            continue
        if position is not None:
            stored = storage.get_position(account.id, position.market)
            if stored is not None:
                position.id = stored.id
                position.peak_price = stored.peak_price
                position.opened_at = stored.opened_at
            positions.append(position)

    storage.replace_positions(account.id, positions)
    unrealized = sum((p.unrealized_pnl for p in positions), Decimal("0"))
    cash = equity - unrealized
    storage.update_account_balances(account.id, cash_balance=cash, equity=equity)
    account.cash_balance = cash
    account.equity = equity
    account.updated_at = utc_now()
    logger.info(
        "LIVE_ACCOUNT_SYNCED",
        account_id=account.id,
        equity=float(equity),
        positions=len(positions),
    )
    return account

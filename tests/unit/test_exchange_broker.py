"""
Exchange broker: live-only gating, IOC limit pricing, venue errors, account sync.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from tradeloop.domain.models import (
    Account,
    OrderbookTop,
    OrderRequest,
    OrderSide,
    OrderStatus,
    SessionMode,
    Side,
    TradeAction,
)
from tradeloop.domain.protocols import VenueCredentials, VenueOrder
from tradeloop.exceptions import DataAcquisitionError, OrderExecutionError
from tradeloop.execution.broker import BrokerRouter
from tradeloop.execution.exchange_broker import ExchangeBroker, env_credentials, sync_live_account

CREDS = VenueCredentials(venue="hyperliquid", api_secret="0xkey", wallet_address="0xwallet")


def _submitter(fill=None):
    submitter = MagicMock()
    submitter.get_orderbook_top = AsyncMock(
        return_value=OrderbookTop(bid=Decimal("99"), ask=Decimal("101"), mid=Decimal("100"))
    )

    async def prepare(market, side, size, limit_price, reduce_only=False, leverage=None):
        return VenueOrder(
            symbol="BTC/USDC:USDC", side=side, amount=size.quantize(Decimal("0.0001")),
            price=limit_price, reduce_only=reduce_only, leverage=leverage,
        )

    submitter.prepare_order = AsyncMock(side_effect=prepare)
    submitter.submit = AsyncMock(return_value=fill if fill is not None else {
        "id": "oid-1", "status": "closed", "filled": 0.5, "average": 101.2, "fee": {"cost": 0.025},
    })
    submitter.close = AsyncMock()
    return submitter


@pytest.fixture
def live_account(storage):
    return storage.save_account(Account(
        id="", user_id="user-1", mode=SessionMode.LIVE, venue="hyperliquid",
        starting_equity=Decimal("1000"), cash_balance=Decimal("1000"), equity=Decimal("1000"),
    ))


def _request(account, mode=SessionMode.LIVE, **kwargs):
    defaults = dict(
        mode=mode,
        account_id=account.id,
        market="BTC-PERP",
        side=OrderSide.BUY,
        notional_usd=Decimal("50"),
        slippage_bps=100,
        user_id="user-1",
        venue="hyperliquid",
    )
    defaults.update(kwargs)
    return OrderRequest(**defaults)


@pytest.mark.asyncio
async def test_non_live_request_never_reaches_venue(storage, live_account):
    factory = MagicMock()
    broker = ExchangeBroker(storage, lambda u, v: CREDS, factory)

    for mode in (SessionMode.SIMULATED, SessionMode.COMPETITION):
        result = await broker.place_order(_request(live_account, mode=mode))
        assert result.status == OrderStatus.SKIPPED

    factory.assert_not_called()


@pytest.mark.asyncio
async def test_missing_credentials_fail(storage, live_account):
    broker = ExchangeBroker(storage, lambda u, v: None, MagicMock())

    result = await broker.place_order(_request(live_account))

    assert result.status == OrderStatus.FAILED
    assert result.error == "No credentials configured for hyperliquid"


@pytest.mark.asyncio
async def test_buy_priced_above_ask_and_recorded(storage, live_account):
    submitter = _submitter()
    broker = ExchangeBroker(storage, lambda u, v: CREDS, lambda c: submitter)

    result = await broker.place_order(_request(live_account))

    assert result.success
    assert result.fill_price == Decimal("101.2")
    assert result.fee == Decimal("0.025")
    assert result.action == TradeAction.OPEN
    market, side, size, limit_price, reduce_only, _ = submitter.prepare_order.call_args.args
    assert limit_price == Decimal("101") * Decimal("1.01")
    assert not reduce_only
    trades = storage.list_trades(live_account.id)
    assert len(trades) == 1
    assert trades[0].venue_order_id == "oid-1"
    submitter.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_is_reduce_only_below_bid(storage, live_account):
    submitter = _submitter()
    broker = ExchangeBroker(storage, lambda u, v: CREDS, lambda c: submitter)

    await broker.place_order(_request(live_account, side=OrderSide.SELL, close_size=Decimal("0.5")))

    _, side, size, limit_price, reduce_only, _ = submitter.prepare_order.call_args.args
    assert side == OrderSide.SELL
    assert size == Decimal("0.5")
    assert limit_price == Decimal("99") * Decimal("0.99")
    assert reduce_only


@pytest.mark.asyncio
async def test_unfilled_ioc_is_rejected(storage, live_account):
    submitter = _submitter(fill={"id": "oid-2", "status": "canceled", "filled": 0})
    broker = ExchangeBroker(storage, lambda u, v: CREDS, lambda c: submitter)

    result = await broker.place_order(_request(live_account))

    assert result.status == OrderStatus.REJECTED
    assert storage.list_trades(live_account.id) == []


@pytest.mark.asyncio
async def test_venue_error_returned_not_raised(storage, live_account):
    submitter = _submitter()
    submitter.submit.side_effect = ccxt.InvalidOrder('hyperliquid {"error": "Insufficient margin"}')
    broker = ExchangeBroker(storage, lambda u, v: CREDS, lambda c: submitter)

    result = await broker.place_order(_request(live_account))

    assert result.status == OrderStatus.FAILED
    assert result.error == "Venue rejected order: Insufficient margin"
    submitter.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_unusable_venue_client_returned_not_raised(storage, live_account):
    submitter = _submitter()
    submitter.get_orderbook_top.side_effect = OrderExecutionError("Unknown ccxt exchange: nowhere")
    broker = ExchangeBroker(storage, lambda u, v: CREDS, lambda c: submitter)

    result = await broker.place_order(_request(live_account))

    assert result.status == OrderStatus.FAILED
    assert result.error == "Orderbook unavailable: Unknown ccxt exchange: nowhere"
    submitter.prepare_order.assert_not_awaited()
    submitter.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_router_sends_competition_to_simulated():
    simulated, exchange = MagicMock(), MagicMock()
    simulated.place_order = AsyncMock()
    exchange.place_order = AsyncMock()
    router = BrokerRouter(simulated=simulated, exchange=exchange)
    account = Account(
        id="a", user_id="u", mode=SessionMode.COMPETITION,
        starting_equity=Decimal("1"), cash_balance=Decimal("1"), equity=Decimal("1"),
    )

    await router.place_order(_request(account, mode=SessionMode.COMPETITION))
    await router.place_order(_request(account, mode=SessionMode.LIVE))

    simulated.place_order.assert_awaited_once()
    exchange.place_order.assert_awaited_once()


@pytest.mark.asyncio
async def test_sync_replaces_positions_and_equity(storage, live_account):
    submitter = MagicMock()
    submitter.fetch_equity = AsyncMock(return_value=Decimal("1050"))
    submitter.fetch_positions = AsyncMock(return_value=[
        {"symbol": "BTC/USDC:USDC", "contracts": 0.01, "side": "long", "entryPrice": 100000,
         "unrealizedPnl": 30, "leverage": 3},
        {"symbol": "ETH/USDC:USDC", "contracts": 0, "side": "short", "entryPrice": 3000},
    ])

    account = await sync_live_account(storage, live_account, submitter)

    assert account.equity == Decimal("1050")
    assert account.cash_balance == Decimal("1020")
    positions = storage.list_positions(live_account.id)
    assert [(p.market, p.side) for p in positions] == [("BTC-PERP", Side.LONG)]


@pytest.mark.asyncio
async def test_sync_failure_propagates(storage, live_account):
    submitter = MagicMock()
    submitter.fetch_equity = AsyncMock(side_effect=DataAcquisitionError("balance unavailable"))

    with pytest.raises(DataAcquisitionError):
        await sync_live_account(storage, live_account, submitter)


def test_env_credentials(monkeypatch):
    monkeypatch.setenv("HYPERLIQUID_API_SECRET", "0xsecret")
    monkeypatch.setenv("HYPERLIQUID_WALLET_ADDRESS", "0xwallet")
    monkeypatch.delenv("HYPERLIQUID_API_KEY", raising=False)

    creds = env_credentials("user-1", "hyperliquid")

    assert creds.is_complete
    assert env_credentials("user-1", "nowhere") is None

"""
SqlStorage round trips against in-memory SQLite.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from tradeloop.domain.models import (
    Account,
    Decision,
    EquityPoint,
    LedgerUpdate,
    OrderSide,
    Position,
    SessionMode,
    SessionStatus,
    Side,
    Trade,
    TradeAction,
    TradingSession,
    utc_now,
)
from tradeloop.exceptions import InvariantError


def _account(storage, user="u", mode=SessionMode.SIMULATED, venue=None):
    return storage.save_account(Account(
        id="", user_id=user, mode=mode, venue=venue,
        starting_equity=Decimal("1000"), cash_balance=Decimal("1000"), equity=Decimal("1000"),
    ))


def test_session_round_trip_is_utc(storage):
    started = utc_now().replace(microsecond=0)
    storage.save_session(TradingSession(
        id="s1", user_id="u", strategy_id="st", mode=SessionMode.COMPETITION,
        status=SessionStatus.RUNNING, markets=["BTC-PERP", "ETH-PERP"], started_at=started,
    ))

    session = storage.get_session("s1")

    assert session.mode == SessionMode.COMPETITION
    assert session.markets == ["BTC-PERP", "ETH-PERP"]
    assert session.started_at == started
    assert session.started_at.tzinfo is not None
    assert [s.id for s in storage.list_sessions(status="running")] == ["s1"]
    assert storage.list_sessions(status="stopped") == []


def test_mark_tick_started(storage):
    storage.save_session(TradingSession(
        id="s1", user_id="u", strategy_id="st", mode=SessionMode.SIMULATED, status=SessionStatus.RUNNING,
    ))
    at = utc_now().replace(microsecond=0)

    storage.mark_tick_started("s1", at)

    assert storage.get_session("s1").last_tick_at == at


def test_find_account_by_owner_and_venue(storage):
    live = _account(storage, mode=SessionMode.LIVE, venue="hyperliquid")
    _account(storage, mode=SessionMode.SIMULATED)

    assert storage.find_account("u", SessionMode.LIVE, "hyperliquid").id == live.id
    assert storage.find_account("u", SessionMode.LIVE, "binance") is None


def test_ledger_update_is_atomic(storage):
    account = _account(storage)
    trade = Trade(
        account_id=account.id, market="BTC-PERP", action=TradeAction.OPEN, side=OrderSide.BUY,
        size=Decimal("0.01"), price=Decimal("100000"), fee=Decimal("0.5"),
    )
    position = Position(
        account_id=account.id, market="BTC-PERP", side=Side.LONG, size=Decimal("0.01"), avg_entry=Decimal("100000"),
    )

    storage.apply_ledger_update(LedgerUpdate(
        account_id=account.id, cash_balance=Decimal("999.5"), trade=trade, upsert_position=position,
    ))

    assert trade.id is not None
    assert float(storage.get_account(account.id).cash_balance) == pytest.approx(999.5)
    assert storage.get_position(account.id, "BTC-PERP").side == Side.LONG


def test_ledger_update_unknown_account_writes_nothing(storage):
    trade = Trade(
        account_id="missing", market="BTC-PERP", action=TradeAction.OPEN, side=OrderSide.BUY,
        size=Decimal("1"), price=Decimal("1"),
    )

    with pytest.raises(InvariantError):
        storage.apply_ledger_update(LedgerUpdate(account_id="missing", cash_balance=Decimal("0"), trade=trade))

    assert storage.list_trades("missing") == []


def test_trade_windows(storage):
    account = _account(storage)
    now = utc_now()
    for minutes_ago, action in ((120, TradeAction.OPEN), (30, TradeAction.CLOSE), (5, TradeAction.OPEN)):
        storage.insert_trade(Trade(
            account_id=account.id, market="ETH-PERP", action=action, side=OrderSide.BUY,
            size=Decimal("1"), price=Decimal("3000"), session_id="s1",
            created_at=now - timedelta(minutes=minutes_ago),
        ))

    assert storage.count_trades_since("s1", now - timedelta(hours=1)) == 2
    assert storage.last_trade(account.id, "ETH-PERP").action == TradeAction.OPEN
    assert storage.last_trade(account.id, "ETH-PERP", action=TradeAction.CLOSE) is not None
    assert [t.action for t in storage.recent_trades(account.id, 2)] == [TradeAction.OPEN, TradeAction.CLOSE]


def test_replace_positions(storage):
    account = _account(storage, mode=SessionMode.LIVE)
    for market in ("BTC-PERP", "ETH-PERP"):
        storage.save_position(Position(
            account_id=account.id, market=market, side=Side.LONG, size=Decimal("1"), avg_entry=Decimal("10"),
        ))

    storage.replace_positions(account.id, [Position(
        account_id=account.id, market="ETH-PERP", side=Side.SHORT, size=Decimal("2"), avg_entry=Decimal("11"),
    )])

    positions = storage.list_positions(account.id)
    assert [(p.market, p.side) for p in positions] == [("ETH-PERP", Side.SHORT)]


def test_decisions_and_equity_points(storage):
    storage.insert_decision(Decision(
        session_id="s1", market="BTC-PERP", intent={"bias": "long"}, confidence=0.7,
        action_summary="Opened long", risk_result={"passed": True}, executed=True,
    ))
    now = utc_now()
    storage.insert_equity_point(EquityPoint(account_id="a", equity=Decimal("1000"), t=now - timedelta(hours=2)))
    storage.insert_equity_point(EquityPoint(account_id="a", equity=Decimal("990"), t=now - timedelta(minutes=1)))

    decision = storage.recent_decisions("s1", 5)[0]
    assert decision.intent == {"bias": "long"}
    assert decision.executed
    point = storage.first_equity_point_since("a", now - timedelta(hours=1))
    assert float(point.equity) == pytest.approx(990)

"""
Accounting identity: equity - starting == realized + unrealized - fees.
"""
from decimal import Decimal

from tradeloop.accounting.pnl import calc_totals, reconciliation_gap, verify_reconciliation
from tradeloop.domain.models import Account, OrderSide, Position, SessionMode, Side, Trade, TradeAction


def _account(cash="100000", equity="100000", mode=SessionMode.SIMULATED):
    return Account(
        id="acc",
        user_id="u",
        mode=mode,
        starting_equity=Decimal("100000"),
        cash_balance=Decimal(cash),
        equity=Decimal(equity),
    )


def _trade(action, realized="0", fee="0"):
    return Trade(
        account_id="acc",
        market="BTC-PERP",
        action=action,
        side=OrderSide.SELL,
        size=Decimal("1"),
        price=Decimal("100"),
        fee=Decimal(fee),
        realized_pnl=Decimal(realized),
    )


def test_ledger_totals_reconcile():
    # Opened for 10 fee, closed one for +3000 with 5 fee, still long 1 ETH from 3000
    account = _account(cash=str(100000 - 10 + 3000 - 5))
    positions = [Position(account_id="acc", market="ETH-PERP", side=Side.LONG, size=Decimal("1"), avg_entry=Decimal("3000"))]
    trades = [
        _trade(TradeAction.OPEN, fee="10"),
        _trade(TradeAction.CLOSE, realized="3000", fee="5"),
    ]

    totals = calc_totals(account, positions, trades, {"ETH-PERP": Decimal("3100")})

    assert totals.realized_pnl == Decimal("3000")
    assert totals.unrealized_pnl == Decimal("100")
    assert totals.fees_paid == Decimal("15")
    assert totals.equity == Decimal("103085")
    assert totals.total_pnl == Decimal("3085")
    assert verify_reconciliation(totals)
    assert reconciliation_gap(totals) == 0


def test_open_trades_do_not_count_as_realized():
    totals = calc_totals(_account(), [], [_trade(TradeAction.OPEN, realized="999")], {})

    assert totals.realized_pnl == 0


def test_unpriced_position_uses_stored_pnl():
    position = Position(
        account_id="acc", market="SOL-PERP", side=Side.SHORT, size=Decimal("10"),
        avg_entry=Decimal("150"), unrealized_pnl=Decimal("-25"),
    )

    totals = calc_totals(_account(cash="100000"), [position], [], {})

    assert totals.unrealized_pnl == Decimal("-25")
    assert totals.equity == Decimal("99975")


def test_mismatch_detected():
    # Cash drifted by 5 with no trade explaining it
    totals = calc_totals(_account(cash="99995"), [], [], {})

    assert not verify_reconciliation(totals, tolerance=0.01)
    assert reconciliation_gap(totals) == Decimal("-5")


def test_live_uses_venue_equity():
    totals = calc_totals(_account(cash="0", equity="101000", mode=SessionMode.LIVE), [], [], {}, SessionMode.LIVE)

    assert totals.equity == Decimal("101000")
    assert totals.total_pnl == Decimal("1000")
    assert totals.return_pct == 1.0


def test_breakdown_is_numeric():
    totals = calc_totals(_account(), [], [], {})

    breakdown = totals.breakdown()

    assert breakdown["equity"] == 100000.0
    assert breakdown["expected_total_pnl"] == 0.0

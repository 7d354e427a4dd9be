"""
Accounting helper: single source of truth for PnL totals.

Cash-settled margin model:
- cash_balance is collateral
- opening a position moves only the fee out of cash, never notional
- unrealized PnL is pure price movement (no fees)
- realized PnL is added to cash on close/reduce, fees leave cash at execution
- equity = cash_balance + sum(unrealized PnL)

Which guarantees: equity - starting_equity == realized + unrealized - fees.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional

from tradeloop.constants import RECONCILIATION_TOLERANCE
from tradeloop.domain.models import Account, Position, SessionMode, Trade
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class PnLTotals:
    starting_equity: Decimal
    position_value_total: Decimal
    equity: Decimal
    unrealized_pnl: Decimal
    realized_pnl: Decimal
    fees_paid: Decimal
    total_pnl: Decimal
    return_pct: float

    def breakdown(self) -> Dict[str, float]:
        """Numeric breakdown for logs."""
        expected = self.realized_pnl + self.unrealized_pnl - self.fees_paid
        return {
            "starting_equity": float(self.starting_equity),
            "equity": float(self.equity),
            "realized_pnl": float(self.realized_pnl),
            "unrealized_pnl": float(self.unrealized_pnl),
            "fees_paid": float(self.fees_paid),
            "total_pnl": float(self.total_pnl),
            "expected_total_pnl": float(expected),
            "equity_change": float(self.equity - self.starting_equity),
        }


def calc_unrealized_pnl(position: Position, current_price: Optional[Decimal]) -> Decimal:
    """Unrealized PnL for one position; zero without a usable price."""
    if not current_price or current_price <= 0:
        return ZERO
    return position.pnl_at(current_price)


def calc_totals(
    account: Account,
    positions: Iterable[Position],
    trades: Iterable[Trade],
    prices_by_market: Dict[str, Decimal],
    mode: SessionMode = SessionMode.SIMULATED,
) -> PnLTotals:
    """
    Calculate all PnL totals from account, positions and trades.

    Positions without a fresh price contribute their stored unrealized PnL.
    Live accounts report the venue-synced equity; ledger accounts derive it.
    """
    unrealized = ZERO
    position_value = ZERO
    for position in positions:
        price = prices_by_market.get(position.market)
        if price and price > 0:
            position_value += position.size * price
            unrealized += calc_unrealized_pnl(position, price)
        elif position.unrealized_pnl:
            position_value += position.entry_notional
            unrealized += position.unrealized_pnl

    realized = ZERO
    fees = ZERO
    for trade in trades:
        if trade.action.realizes_pnl:
            realized += trade.realized_pnl or ZERO
        fees += trade.fee or ZERO

    if mode == SessionMode.LIVE:
        equity = account.equity
        total_pnl = equity - account.starting_equity
    else:
        equity = account.cash_balance + unrealized
        total_pnl = realized + unrealized - fees

    starting = account.starting_equity
    return_pct = float((equity - starting) / starting * 100) if starting > 0 else 0.0

    if mode != SessionMode.LIVE and total_pnl > 0 and return_pct <= 0:
        logger.error(
            "PNL_SANITY_CHECK_FAILED",
            total_pnl=float(total_pnl),
            return_pct=return_pct,
            equity=float(equity),
            starting_equity=float(starting),
        )

    return PnLTotals(
        starting_equity=starting,
        position_value_total=position_value,
        equity=equity,
        unrealized_pnl=unrealized,
        realized_pnl=realized,
        fees_paid=fees,
        total_pnl=total_pnl,
        return_pct=return_pct,
    )


def reconciliation_gap(totals: PnLTotals) -> Decimal:
    """(equity - starting) minus (realized + unrealized - fees)."""
    expected = totals.realized_pnl + totals.unrealized_pnl - totals.fees_paid
    return (totals.equity - totals.starting_equity) - expected


def verify_reconciliation(totals: PnLTotals, tolerance: float = RECONCILIATION_TOLERANCE) -> bool:
    """True when the accounting identity holds within ``tolerance``."""
    return abs(reconciliation_gap(totals)) < Decimal(str(tolerance))

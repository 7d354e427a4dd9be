"""
Simulated ledger broker.

Cash-settled margin model:
- opening or adding to a position moves only the fee out of cash
- closing/reducing adds realized PnL to cash and subtracts the closing fee
- same-side adds re-average the entry price
- opposite-side orders are clamped to the existing size and never flip;
  within CLOSE_CLAMP_BAND of the full size they close it exactly
- positions smaller than POSITION_EPSILON are deleted, never stored

Each order becomes one LedgerUpdate written atomically by storage.
"""
import asyncio
from dataclasses import replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from tradeloop.constants import (
    CLOSE_CLAMP_BAND,
    FEE_DECIMALS,
    POSITION_EPSILON,
)
from tradeloop.domain.models import (
    LedgerUpdate,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    Position,
    SessionMode,
    Trade,
    TradeAction,
    utc_now,
)
from tradeloop.domain.protocols import MarketDataProvider, Storage
from tradeloop.exceptions import DataAcquisitionError, InvariantError
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")
_BPS = Decimal("10000")
_FEE_QUANTUM = Decimal(1).scaleb(-FEE_DECIMALS)


def calc_fee(notional: Decimal, fee_bps: float) -> Decimal:
    """Fee rounded to FEE_DECIMALS places."""
    fee = notional * Decimal(str(fee_bps)) / _BPS
    return fee.quantize(_FEE_QUANTUM, rounding=ROUND_HALF_UP)


def apply_slippage(mid: Decimal, side: OrderSide, slippage_bps: float) -> Decimal:
    """Buys fill above mid, sells below."""
    direction = 1 if side == OrderSide.BUY else -1
    return mid * (1 + direction * Decimal(str(slippage_bps)) / _BPS)


def mark_to_market(storage: Storage, account_id: str, prices: Dict[str, Decimal]) -> Decimal:
    """
    Recompute unrealized PnL for every open position with a fresh price.

    Positions without a fresh price keep their stored PnL so equity stays
    stable when only a subset of markets was priced.

    Returns:
        Sum of unrealized PnL across all positions
    """
    total = ZERO
    for position in storage.list_positions(account_id):
        price = prices.get(position.market)
        if not price or price <= 0:
            logger.debug("MTM_NO_FRESH_PRICE", market=position.market, stored_pnl=float(position.unrealized_pnl))
            total += position.unrealized_pnl
            continue
        pnl = position.pnl_at(price)
        storage.update_position(position.id, unrealized_pnl=pnl)
        total += pnl
    return total


class SimulatedLedgerBroker:
    """Fills orders against the ledger at mid price +/- slippage."""

    def __init__(self, storage: Storage, market_data: Optional[MarketDataProvider] = None):
        self.storage = storage
        self.market_data = market_data

    async def place_order(self, request: OrderRequest) -> OrderResult:
        if request.mode == SessionMode.LIVE:
            return OrderResult.skipped("Simulated broker does not accept live orders")
        if request.close_size is None and request.notional_usd <= 0:
            return OrderResult.skipped("Zero notional")
        if request.close_size is not None and request.close_size <= 0:
            return OrderResult.skipped("Zero close size")

        account = self.storage.get_account(request.account_id)
        if account is None:
            return OrderResult.failed("Account not found")

        try:
            mid = await self._mid_price(request)
        except DataAcquisitionError as e:
            logger.error("SIM_ORDER_NO_PRICE", market=request.market, error=str(e))
            return OrderResult.failed(f"Price unavailable: {e}")

        fill_price = apply_slippage(mid, request.side, request.slippage_bps)
        if fill_price <= 0:
            return OrderResult.failed(f"Invalid fill price {fill_price}")
        size = request.close_size if request.close_size is not None else request.notional_usd / fill_price
        if size <= 0:
            return OrderResult.skipped("Zero size")

        existing = self.storage.get_position(request.account_id, request.market)
        desired = request.side.position_side

        if existing is None or existing.side == desired:
            if request.reduce_only or request.close_size is not None:
                return OrderResult.skipped("No opposite position to reduce")
            update, realized = self._open_or_add(request, account.cash_balance, existing, fill_price, size)
        else:
            update, realized = self._close_or_reduce(request, account.cash_balance, existing, fill_price, size)

        try:
            trade = await asyncio.to_thread(self.storage.apply_ledger_update, update)
        except (SQLAlchemyError, InvariantError) as e:
            logger.error("SIM_LEDGER_WRITE_FAILED", market=request.market, error=str(e))
            return OrderResult.failed(f"Failed to record trade: {e}")

        logger.info(
            "SIM_ORDER_FILLED",
            market=request.market,
            side=request.side.value,
            action=trade.action.value,
            size=float(trade.size),
            fill_price=float(fill_price),
            fee=float(trade.fee),
            realized_pnl=float(realized),
            cash_balance=float(update.cash_balance),
        )
        return OrderResult(
            success=True,
            status=OrderStatus.FILLED,
            fill_price=fill_price,
            fill_size=trade.size,
            fee=trade.fee,
            realized_pnl=realized,
            action=trade.action,
            trade_id=trade.id,
        )

    async def _mid_price(self, request: OrderRequest) -> Decimal:
        if request.reference_price is not None and request.reference_price > 0:
            return request.reference_price
        if self.market_data is None:
            raise DataAcquisitionError("No reference price and no market data provider")
        prices = await self.market_data.get_mid_prices([request.market])
        mid = prices.get(request.market)
        if not mid or mid <= 0:
            raise DataAcquisitionError(f"No mid price for {request.market}")
        return mid

    def _open_or_add(
        self,
        request: OrderRequest,
        cash: Decimal,
        existing: Optional[Position],
        fill_price: Decimal,
        size: Decimal,
    ):
        fee = calc_fee(request.notional_usd, request.fee_bps)
        now = utc_now()

        if existing is None:
            action = TradeAction.OPEN
            position = Position(
                account_id=request.account_id,
                market=request.market,
                side=request.side.position_side,
                size=size,
                avg_entry=fill_price,
                leverage=request.leverage,
                peak_price=fill_price,
                opened_at=now,
                updated_at=now,
            )
        else:
            action = TradeAction.INCREASE
            total_size = existing.size + size
            avg_entry = (existing.avg_entry * existing.size + fill_price * size) / total_size
            position = replace(
                existing,
                size=total_size,
                avg_entry=avg_entry,
                leverage=request.leverage or existing.leverage,
                updated_at=now,
            )

        new_cash = self._debit(cash, fee, request.market)
        trade = self._trade(request, action, size, fill_price, fee, ZERO, now)
        update = LedgerUpdate(
            account_id=request.account_id,
            cash_balance=new_cash,
            trade=trade,
            upsert_position=position,
        )
        return update, ZERO

    def _close_or_reduce(
        self,
        request: OrderRequest,
        cash: Decimal,
        existing: Position,
        fill_price: Decimal,
        size: Decimal,
    ):
        close_size = min(size, existing.size)
        if abs(close_size - existing.size) / existing.size < CLOSE_CLAMP_BAND:
            if close_size != existing.size:
                logger.debug(
                    "SIM_CLOSE_CLAMPED",
                    market=request.market,
                    requested=float(size),
                    existing=float(existing.size),
                )
            close_size = existing.size

        realized = existing.pnl_at(fill_price) * close_size / existing.size
        fee = calc_fee(close_size * fill_price, request.fee_bps)
        remaining = existing.size - close_size
        now = utc_now()

        upsert = None
        delete_id = None
        if remaining < POSITION_EPSILON:
            action = TradeAction.CLOSE
            delete_id = existing.id
        else:
            action = TradeAction.REDUCE
            upsert = replace(
                existing,
                size=remaining,
                unrealized_pnl=existing.pnl_at(fill_price) * remaining / existing.size,
                updated_at=now,
            )

        new_cash = self._debit(cash + realized, fee, request.market)
        trade = self._trade(request, action, close_size, fill_price, fee, realized, now)
        trade.leverage = trade.leverage or existing.leverage
        update = LedgerUpdate(
            account_id=request.account_id,
            cash_balance=new_cash,
            trade=trade,
            upsert_position=upsert,
            delete_position_id=delete_id,
        )
        return update, realized

    @staticmethod
    def _debit(cash: Decimal, fee: Decimal, market: str) -> Decimal:
        new_cash = cash - fee
        if new_cash < 0:
            logger.warning("SIM_CASH_NEGATIVE", market=market, cash_balance=float(new_cash))
        return new_cash

    @staticmethod
    def _trade(request, action, size, price, fee, realized, now) -> Trade:
        return Trade(
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
            created_at=now,
        )

"""
Exit rule engine.

Evaluates one position against the strategy's exit policy and yields at most
one exit. Pure with respect to its inputs: peak-price movement is reported on
the returned signal and persisted by the caller.

Modes (mutually exclusive):
- signal:   only the emergency guardrails (max loss / max profit) can fire;
            everything else comes from the reasoning model in the orchestrator
- tp_sl:    take profit, then stop loss
- trailing: retrace from the tracked extreme, then optional initial stop loss
- time:     position age reaches max hold minutes

A minimum hold time blocks every exit except emergency and time-based ones.
"""
import math
from decimal import Decimal
from typing import Optional

from tradeloop.config.strategy_config import ExitRules
from tradeloop.domain.models import ExitMode, ExitSignal, Position, Side
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)


def _fmt_pct(value: float) -> str:
    return f"{value:.2f}"


class ExitRuleEngine:
    """Stateless evaluator bound to one strategy's exit rules."""

    def __init__(self, rules: ExitRules, min_hold_minutes: float = 5):
        self.rules = rules
        self.min_hold_minutes = min_hold_minutes

    def evaluate(
        self,
        position: Position,
        current_price: Decimal,
        position_age_minutes: float,
    ) -> ExitSignal:
        """
        Evaluate one position at ``current_price``.

        Args:
            position: Open position (avg entry, side, size, stored peak)
            current_price: Fresh mid price
            position_age_minutes: Minutes since the most recent open trade

        Returns:
            ExitSignal; ``should_exit`` False when nothing fires or the
            minimum hold time blocks the exit
        """
        if current_price is None or current_price <= 0:
            return ExitSignal.hold()

        pnl_pct = position.pnl_pct_at(current_price)
        mode = self.rules.mode

        if mode == ExitMode.SIGNAL:
            signal = self._check_guardrails(pnl_pct)
        elif mode == ExitMode.TP_SL:
            signal = self._check_tp_sl(pnl_pct)
        elif mode == ExitMode.TRAILING:
            signal = self._check_trailing(position, current_price, pnl_pct)
        elif mode == ExitMode.TIME:
            signal = self._check_time(position_age_minutes)
        else:
            signal = ExitSignal.hold()

        if signal.should_exit and not signal.emergency and not signal.time_based:
            if position_age_minutes < self.min_hold_minutes:
                remaining = math.ceil(self.min_hold_minutes - position_age_minutes)
                logger.info(
                    "EXIT_BLOCKED_MIN_HOLD",
                    market=position.market,
                    side=position.side.value,
                    age_minutes=round(position_age_minutes, 1),
                    remaining_minutes=remaining,
                    would_exit_for=signal.reason,
                )
                return ExitSignal(
                    should_exit=False,
                    peak_price=signal.peak_price,
                    blocked_reason=signal.reason,
                )

        return signal

    def _check_guardrails(self, pnl_pct: float) -> ExitSignal:
        max_loss = self.rules.max_loss_protection_pct
        max_profit = self.rules.max_profit_cap_pct
        if max_loss and pnl_pct <= -abs(max_loss):
            return ExitSignal(
                should_exit=True,
                emergency=True,
                reason=f"Max loss protection: {_fmt_pct(pnl_pct)}% <= -{max_loss:g}% (emergency guardrail)",
            )
        if max_profit and pnl_pct >= max_profit:
            return ExitSignal(
                should_exit=True,
                emergency=True,
                reason=f"Max profit cap: {_fmt_pct(pnl_pct)}% >= {max_profit:g}% (emergency guardrail)",
            )
        return ExitSignal.hold()

    def _check_tp_sl(self, pnl_pct: float) -> ExitSignal:
        take_profit = self.rules.take_profit_pct
        stop_loss = self.rules.stop_loss_pct
        if take_profit and pnl_pct >= take_profit:
            return ExitSignal(
                should_exit=True,
                reason=f"Take profit: {_fmt_pct(pnl_pct)}% >= {take_profit:g}%",
            )
        if stop_loss and pnl_pct <= -abs(stop_loss):
            return ExitSignal(
                should_exit=True,
                reason=f"Stop loss: {_fmt_pct(abs(pnl_pct))}% >= {stop_loss:g}%",
            )
        return ExitSignal.hold()

    def _check_trailing(self, position: Position, price: Decimal, pnl_pct: float) -> ExitSignal:
        trailing = self.rules.trailing_stop_pct
        if not trailing:
            return ExitSignal.hold()

        peak = position.peak_price or position.avg_entry
        moved: Optional[Decimal] = None
        if position.side == Side.LONG and price > peak:
            peak = moved = price
        elif position.side == Side.SHORT and price < peak:
            peak = moved = price

        if position.side == Side.LONG:
            retrace_pct = float((peak - price) / peak * 100)
        else:
            retrace_pct = float((price - peak) / peak * 100)

        if retrace_pct >= trailing:
            label = "peak" if position.side == Side.LONG else "trough"
            return ExitSignal(
                should_exit=True,
                peak_price=moved,
                reason=(
                    f"Trailing stop: {_fmt_pct(retrace_pct)}% from {label} "
                    f"${float(peak):.2f} >= {trailing:g}%"
                ),
            )

        initial_stop = self.rules.initial_stop_loss_pct
        if initial_stop and pnl_pct <= -abs(initial_stop):
            return ExitSignal(
                should_exit=True,
                peak_price=moved,
                reason=f"Initial stop loss: {_fmt_pct(abs(pnl_pct))}% >= {initial_stop:g}%",
            )
        return ExitSignal(should_exit=False, peak_price=moved)

    def _check_time(self, age_minutes: float) -> ExitSignal:
        max_hold = self.rules.max_hold_minutes
        if max_hold and age_minutes >= max_hold:
            return ExitSignal(
                should_exit=True,
                time_based=True,
                reason=f"Max hold time: {age_minutes:.1f} minutes >= {max_hold:g} minutes",
            )
        return ExitSignal.hold()

    def describe_mode(self, side: Side) -> str:
        """Human-readable exit policy, used when the model asks to close outside signal mode."""
        mode = self.rules.mode
        if mode == ExitMode.TRAILING:
            label = "peak" if side == Side.LONG else "trough"
            return f"trailing stop ({(self.rules.trailing_stop_pct or 2):g}% from {label})"
        if mode == ExitMode.TP_SL:
            return "TP/SL rules"
        if mode == ExitMode.TIME:
            return "time-based exit"
        return "automated rules"

"""
Risk gate pipeline for new entries.

Gates run in a fixed order and the first failing gate short-circuits the rest;
its message becomes the decision's reason. Gates 1-7 only read state (they may
shrink the order size); gate 8 submits the order through the broker.

    1. confidence          minimum confidence
    2. guardrails          allowed directions, non-entry biases
    3. entry_behavior      trend / breakout / mean-reversion classification
    4. trade_control       frequency, cooldown, stacking, same-direction re-entry
    5. risk_limits         daily loss, sizing, per-market cap, projected leverage
    6. entry_confirmation  extra signals, volatility band
    7. entry_timing        candle-boundary window, estimated slippage
    8. execution           broker submission
"""
import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from tradeloop.config.strategy_config import StrategyFilters
from tradeloop.constants import (
    BREAKOUT_ATR_PCT,
    CONFIDENCE_STEP_PER_SIGNAL,
    DEFAULT_ENTRY_SLIPPAGE_BPS,
    DEFAULT_EQUITY_FRACTION,
    DEFAULT_FEE_BPS,
    ESTIMATED_SLIPPAGE_PCT,
    LEVERAGE_SAFETY_MARGIN,
    MAX_ENTRY_SLIPPAGE_BPS,
    MIN_ORDER_USD,
    RSI_OVERBOUGHT,
    RSI_OVERSOLD,
    TREND_EMA_DIVERGENCE_PCT,
)
from tradeloop.domain.models import (
    Account,
    Bias,
    GateResult,
    Intent,
    OrderRequest,
    OrderResult,
    OrderStatus,
    Position,
    Side,
    TradeAction,
    TradingSession,
)
from tradeloop.domain.protocols import Broker, Storage
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_SLIPPAGE_PCT = 0.15

_ENTRY_TYPE_LABELS = {
    "trend": "Trend",
    "breakout": "Breakout",
    "mean_reversion": "Mean Reversion",
}

_REASONING_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("trend", ("trend", "momentum", "uptrend", "downtrend")),
    ("breakout", ("breakout", "break out", "resistance", "support")),
    ("mean_reversion", ("reversion", "oversold", "overbought", "mean")),
)

_TIMEFRAME_UNITS = {"m": 60, "h": 3600, "d": 86400, "w": 604800}


def timeframe_seconds(timeframe: str) -> int:
    """'5m' -> 300. Raises ValueError for unknown formats."""
    tf = timeframe.strip().lower()
    if len(tf) < 2 or tf[-1] not in _TIMEFRAME_UNITS or not tf[:-1].isdigit():
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    return int(tf[:-1]) * _TIMEFRAME_UNITS[tf[-1]]


def resolve_leverage(intent: Intent, max_leverage: float) -> int:
    """Model-requested leverage, rounded and clamped to [1, max_leverage]."""
    requested = intent.leverage if intent.leverage is not None else 1
    return int(max(1, min(round(requested), math.floor(max_leverage))))


@dataclass
class GateContext:
    """Everything the gates read for one candidate entry."""
    session: TradingSession
    account: Account
    market: str
    intent: Intent
    filters: StrategyFilters
    current_price: Decimal
    positions: List[Position]
    now: datetime
    indicators: Dict[str, Any] = field(default_factory=dict)
    # Sides closed on this market earlier in the same tick
    exited_sides: Set[Side] = field(default_factory=set)

    @property
    def market_position(self) -> Optional[Position]:
        for position in self.positions:
            if position.market == self.market:
                return position
        return None


@dataclass
class GateOutcome:
    """Pipeline result plus the execution details for the decision row."""
    result: GateResult
    summary: str
    executed: bool = False
    order: Optional[OrderResult] = None
    error: Optional[str] = None


@dataclass
class _Sizing:
    notional: Decimal = Decimal("0")
    leverage: int = 1
    slippage_bps: float = DEFAULT_ENTRY_SLIPPAGE_BPS
    entry_type: Optional[str] = None


class RiskGatePipeline:
    """
    Sequential risk gates for one candidate entry.

    Storage is used for trade-history windows and the daily equity anchor;
    the broker only by the execution gate.
    """

    def __init__(
        self,
        storage: Storage,
        broker: Broker,
        *,
        entry_fee_bps: float = DEFAULT_FEE_BPS,
        min_order_usd: Decimal = MIN_ORDER_USD,
    ):
        self.storage = storage
        self.broker = broker
        self.entry_fee_bps = entry_fee_bps
        self.min_order_usd = min_order_usd
        self._gates: List[Tuple[str, Callable[[GateContext, _Sizing], Optional[str]]]] = [
            ("confidence", self._confidence_gate),
            ("guardrails", self._guardrails_gate),
            ("entry_behavior", self._entry_behavior_gate),
            ("trade_control", self._trade_control_gate),
            ("risk_limits", self._risk_limits_gate),
            ("entry_confirmation", self._entry_confirmation_gate),
            ("entry_timing", self._entry_timing_gate),
        ]

    def check(self, ctx: GateContext) -> GateResult:
        """Run gates 1-7. No side effects beyond logging."""
        sizing = _Sizing()
        for name, gate in self._gates:
            reason = gate(ctx, sizing)
            if reason:
                logger.info("GATE_REJECTED", gate=name, market=ctx.market, reason=reason)
                return GateResult(
                    passed=False,
                    reason=reason,
                    gate=name,
                    notional_usd=sizing.notional,
                    leverage=sizing.leverage,
                    slippage_bps=sizing.slippage_bps,
                    entry_type=sizing.entry_type,
                )
        return GateResult(
            passed=True,
            notional_usd=sizing.notional,
            leverage=sizing.leverage,
            slippage_bps=sizing.slippage_bps,
            entry_type=sizing.entry_type,
        )

    async def run(self, ctx: GateContext) -> GateOutcome:
        """Run all gates; submit the order when gates 1-7 pass."""
        # History reads are blocking queries; keep them off the event loop
        result = await asyncio.to_thread(self.check, ctx)
        if not result.passed:
            return GateOutcome(result=result, summary=result.reason or "Rejected")
        return await self._execute(ctx, result)

    # 1. Confidence floor
    def _confidence_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        minimum = ctx.filters.min_confidence
        if ctx.intent.confidence < minimum:
            return (
                f"Confidence {ctx.intent.confidence * 100:.0f}% below minimum "
                f"{minimum * 100:.0f}%"
            )
        return None

    # 2. Directional guardrails
    def _guardrails_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        guardrails = ctx.filters.guardrails
        bias = ctx.intent.bias
        if bias == Bias.LONG and not guardrails.allow_long:
            return "Long positions not allowed by strategy settings"
        if bias == Bias.SHORT and not guardrails.allow_short:
            return "Short positions not allowed by strategy settings"
        if bias == Bias.HOLD:
            return "AI decision: hold (no position to hold)"
        if bias == Bias.NEUTRAL:
            return "AI decision: neutral (no trade)"
        if bias == Bias.CLOSE:
            return "AI decision: close (exit only, no new entry)"
        return None

    # 3. Entry behavior
    def _entry_behavior_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        behaviors = ctx.filters.behaviors
        if not behaviors.any_enabled:
            return "No entry behaviors enabled - all entries blocked by strategy settings"

        entry_type = classify_entry(ctx.indicators, ctx.current_price, ctx.intent.reasoning)
        sizing.entry_type = entry_type
        if entry_type and not behaviors.allows(entry_type):
            return f"Entry type '{_ENTRY_TYPE_LABELS[entry_type]}' not allowed by strategy settings"
        return None

    # 4. Trade control
    def _trade_control_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        control = ctx.filters.trade_control

        last_hour = self.storage.count_trades_since(ctx.session.id, ctx.now - timedelta(hours=1))
        if last_hour >= control.max_trades_per_hour:
            return f"Trade frequency limit reached: {last_hour}/{control.max_trades_per_hour} trades in last hour"
        last_day = self.storage.count_trades_since(ctx.session.id, ctx.now - timedelta(days=1))
        if last_day >= control.max_trades_per_day:
            return f"Trade frequency limit reached: {last_day}/{control.max_trades_per_day} trades in last day"

        last_trade = self.storage.last_trade(ctx.account.id, ctx.market)
        if last_trade is not None:
            remaining = self._remaining_minutes(last_trade.created_at, control.cooldown_minutes, ctx.now)
            if remaining > 0:
                return f"Cooldown: {remaining} minutes remaining"

        desired = ctx.intent.bias.side
        position = ctx.market_position
        allow_stacking = control.allow_reentry_same_direction
        if position is not None:
            if not allow_stacking:
                return (
                    f"Already in {position.side.value} position on {ctx.market} "
                    f"(${float(position.entry_notional):.2f}) - stacking disabled"
                )
            if desired != position.side:
                return (
                    f"Cannot enter {desired.value} while in {position.side.value} position "
                    f"- would flip position"
                )
            opened = self.storage.last_trade(ctx.account.id, ctx.market, action=TradeAction.OPEN)
            opened_at = opened.created_at if opened else position.opened_at
            remaining = self._remaining_minutes(opened_at, control.min_hold_minutes, ctx.now)
            if remaining > 0:
                return f"Min hold time (stacking): {remaining} min remaining before adding to position"
        elif desired in ctx.exited_sides and not allow_stacking:
            return "Re-entry in same direction after exit not allowed"
        return None

    # 5. Risk limits and sizing
    def _risk_limits_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        risk = ctx.filters.risk
        max_position = Decimal(str(risk.max_position_usd))
        max_leverage = Decimal(str(risk.max_leverage))
        equity = ctx.account.equity

        sizing.leverage = resolve_leverage(ctx.intent, risk.max_leverage)

        daily_start = self._daily_start_equity(ctx)
        daily_loss_pct = float((daily_start - equity) / daily_start * 100) if daily_start > 0 else 0.0
        if daily_loss_pct >= risk.max_daily_loss_pct:
            return (
                f"Max daily loss limit reached: {daily_loss_pct:.2f}% >= {risk.max_daily_loss_pct:g}% "
                f"(today's start: ${float(daily_start):.2f}, current: ${float(equity):.2f})"
            )

        notional = min(max_position, equity * DEFAULT_EQUITY_FRACTION)
        control = ctx.filters.entry_exit.confidence_control
        minimum = ctx.filters.min_confidence
        if control.confidence_scaling and ctx.intent.confidence > minimum and minimum < 1:
            multiplier = min(1.0, (ctx.intent.confidence - minimum) / (1.0 - minimum))
            notional = notional + (max_position - notional) * Decimal(str(multiplier))
        notional = min(notional, max_position)
        if notional < self.min_order_usd:
            notional = self.min_order_usd
        sizing.notional = notional

        position = ctx.market_position
        existing = position.entry_notional if position else Decimal("0")
        if existing + notional > max_position:
            allowed = max(Decimal("0"), max_position - existing)
            if allowed < self.min_order_usd:
                return (
                    f"Position would exceed max: existing ${float(existing):.2f} + new "
                    f"${float(notional):.2f} = ${float(existing + notional):.2f} > max ${float(max_position):g}"
                )
            logger.info("ORDER_REDUCED_POSITION_CAP", market=ctx.market, before=float(notional), after=float(allowed))
            notional = allowed
            sizing.notional = notional

        exposure = sum((p.entry_notional for p in ctx.positions), Decimal("0"))
        projected = (exposure + notional) / equity if equity > 0 else None
        if projected is None or projected >= max_leverage:
            room = max(Decimal("0"), max_leverage * equity * LEVERAGE_SAFETY_MARGIN - exposure)
            if room < self.min_order_usd:
                shown = f"{float(projected):.2f}" if projected is not None else "inf"
                return (
                    f"Projected leverage {shown}x would exceed max {float(max_leverage):g}x "
                    f"(current exposure: ${float(exposure):.2f}, proposed: ${float(notional):.2f})"
                )
            logger.info("ORDER_REDUCED_LEVERAGE_CAP", market=ctx.market, before=float(notional), after=float(room))
            sizing.notional = min(notional, room)
        return None

    # 6. Entry confirmation
    def _entry_confirmation_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        confirmation = ctx.filters.entry_exit.entry.confirmation
        if confirmation.min_signals > 1:
            required = ctx.filters.min_confidence + (confirmation.min_signals - 1) * CONFIDENCE_STEP_PER_SIGNAL
            if ctx.intent.confidence < required:
                return f"Entry confirmation: Need {confirmation.min_signals} signals, but only have 1 (confidence too low)"

        if confirmation.require_volatility_condition and (confirmation.volatility_min or confirmation.volatility_max):
            volatility, source = measure_volatility(ctx.indicators, ctx.current_price, ctx.market_position)
            if confirmation.volatility_min and volatility < confirmation.volatility_min:
                return (
                    f"Entry confirmation: Volatility {volatility:.2f}% ({source}) below min "
                    f"{confirmation.volatility_min:g}%"
                )
            if confirmation.volatility_max and volatility > confirmation.volatility_max:
                return (
                    f"Entry confirmation: Volatility {volatility:.2f}% ({source}) exceeds max "
                    f"{confirmation.volatility_max:g}%"
                )
        return None

    # 7. Entry timing
    def _entry_timing_gate(self, ctx: GateContext, sizing: _Sizing) -> Optional[str]:
        timing = ctx.filters.entry_exit.entry.timing

        if timing.wait_for_close:
            timeframe = ctx.filters.ai_inputs.candles.timeframe
            try:
                period = timeframe_seconds(timeframe)
            except ValueError as e:
                logger.warning("ENTRY_TIMING_TIMEFRAME_INVALID", timeframe=timeframe, error=str(e))
            else:
                elapsed = int(ctx.now.timestamp()) % period
                distance = min(elapsed, period - elapsed)
                if distance > timing.boundary_tolerance_seconds:
                    return (
                        f"Entry timing: {elapsed}s into {timeframe} candle, outside "
                        f"{timing.boundary_tolerance_seconds}s of candle boundary"
                    )

        max_slippage = timing.max_slippage_pct if timing.max_slippage_pct is not None else DEFAULT_MAX_SLIPPAGE_PCT
        # Constant estimate, not derived from book depth
        if ESTIMATED_SLIPPAGE_PCT > max_slippage:
            return (
                f"Max slippage exceeded: estimated {ESTIMATED_SLIPPAGE_PCT * 100:.2f}% > "
                f"max {max_slippage * 100:.2f}%"
            )

        if timing.max_slippage_pct:
            sizing.slippage_bps = min(timing.max_slippage_pct * 100, MAX_ENTRY_SLIPPAGE_BPS)
        else:
            sizing.slippage_bps = DEFAULT_ENTRY_SLIPPAGE_BPS
        return None

    # 8. Execution
    async def _execute(self, ctx: GateContext, result: GateResult) -> GateOutcome:
        side = ctx.intent.bias.side
        request = OrderRequest(
            mode=ctx.session.mode,
            account_id=ctx.account.id,
            market=ctx.market,
            side=side.entry_order_side,
            notional_usd=result.notional_usd,
            slippage_bps=result.slippage_bps,
            fee_bps=self.entry_fee_bps,
            session_id=ctx.session.id,
            strategy_id=ctx.session.strategy_id,
            user_id=ctx.session.user_id,
            venue=ctx.session.venue,
            reference_price=ctx.current_price,
            leverage=Decimal(result.leverage),
        )
        logger.info(
            "ENTRY_ORDER_SUBMITTING",
            market=ctx.market,
            side=request.side.value,
            notional_usd=float(request.notional_usd),
            confidence=ctx.intent.confidence,
            leverage=result.leverage,
            slippage_bps=request.slippage_bps,
        )
        order = await self.broker.place_order(request)

        if order.success:
            summary = f"Opened {ctx.intent.bias.value}: ${float(result.notional_usd):.2f} at ${float(ctx.current_price):.2f}"
            return GateOutcome(result=result, summary=summary, executed=True, order=order)

        error = order.error or order.status.value
        if order.status == OrderStatus.SKIPPED:
            error = f"skipped: {error}"
        summary = f"Order failed: {error}"
        failed = GateResult(
            passed=False,
            reason=summary,
            gate="execution",
            notional_usd=result.notional_usd,
            leverage=result.leverage,
            slippage_bps=result.slippage_bps,
            entry_type=result.entry_type,
        )
        logger.warning("ENTRY_ORDER_FAILED", market=ctx.market, error=error)
        return GateOutcome(result=failed, summary=summary, order=order, error=error)

    def _daily_start_equity(self, ctx: GateContext) -> Decimal:
        midnight = ctx.now.replace(hour=0, minute=0, second=0, microsecond=0)
        point = self.storage.first_equity_point_since(ctx.account.id, midnight)
        if point is not None:
            return point.equity
        return ctx.account.equity

    @staticmethod
    def _remaining_minutes(since: datetime, window_minutes: float, now: datetime) -> int:
        elapsed = (now - since).total_seconds()
        window = window_minutes * 60
        if elapsed >= window:
            return 0
        return math.ceil((window - elapsed) / 60)


def classify_entry(indicators: Dict[str, Any], price: Decimal, reasoning: str) -> Optional[str]:
    """
    Classify a setup as trend, breakout or mean_reversion.

    Indicators first (EMA divergence, ATR%, RSI extremes), then keywords in the
    model's reasoning. None when nothing matches.
    """
    indicators = indicators or {}
    price_f = float(price) if price else 0.0

    ema = indicators.get("ema") or {}
    fast = (ema.get("fast") or {}).get("value")
    slow = (ema.get("slow") or {}).get("value")
    if fast is not None and slow:
        if abs((fast - slow) / slow) * 100 > TREND_EMA_DIVERGENCE_PCT:
            return "trend"

    atr = (indicators.get("atr") or {}).get("value")
    if atr is not None and price_f > 0:
        if atr / price_f * 100 > BREAKOUT_ATR_PCT:
            return "breakout"

    rsi = (indicators.get("rsi") or {}).get("value")
    if rsi is not None and (rsi < RSI_OVERSOLD or rsi > RSI_OVERBOUGHT):
        return "mean_reversion"

    text = (reasoning or "").lower()
    for entry_type, keywords in _REASONING_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return entry_type
    return None


def measure_volatility(
    indicators: Dict[str, Any],
    price: Decimal,
    position: Optional[Position],
) -> Tuple[float, str]:
    """Volatility in percent and its source: ATR, StdDev, or Price Change."""
    indicators = indicators or {}
    price_f = float(price)
    atr = (indicators.get("atr") or {}).get("value")
    if atr is not None and price_f > 0:
        return atr / price_f * 100, "ATR"
    volatility = (indicators.get("volatility") or {}).get("value")
    if volatility is not None:
        return float(volatility), "StdDev"
    reference = float(position.avg_entry) if position else price_f
    change = abs((price_f - reference) / price_f) * 100 if price_f > 0 else 0.0
    return change, "Price Change"

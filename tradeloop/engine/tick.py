"""
Tick orchestrator.

One tick for one session:

    0. stamp last_tick_at (before any external call)
    1. load session, strategy and account fresh from storage
    2. select markets (round-robin by default)
    3. fetch mid prices for the selected markets and every open position
    4. mark positions to market
    5. rule-based exits over every open position
    6. per market: decision context -> reasoning model -> AI-driven exit or risk gates
    7. persist one Decision per market
    8. recompute equity, write an equity point, reconcile (ledger modes)

Any TickError leaves state untouched beyond the stamp written in step 0.
"""
import asyncio
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from tradeloop.accounting.pnl import calc_totals, reconciliation_gap, verify_reconciliation
from tradeloop.ai.reasoning_model import build_system_prompt, build_user_context
from tradeloop.config.config import Config
from tradeloop.config.strategy_config import StrategyFilters, normalize_strategy_filters
from tradeloop.constants import LEVERAGE_SAFETY_MARGIN
from tradeloop.domain.models import (
    Account,
    Bias,
    Candle,
    Decision,
    EquityPoint,
    ExitMode,
    GateResult,
    Intent,
    OrderRequest,
    OrderResult,
    Position,
    ProposedOrder,
    SessionMode,
    Side,
    Strategy,
    TradeAction,
    TradingSession,
    utc_now,
)
from tradeloop.domain.protocols import (
    Broker,
    CredentialsProvider,
    MarketDataProvider,
    OrderSubmitter,
    ReasoningModelFactory,
    Storage,
    SubmitterFactory,
)
from tradeloop.exceptions import (
    ConfigurationError,
    DataAcquisitionError,
    MarketDataUnavailableError,
    ProviderError,
    SessionNotFoundError,
    SessionNotRunningError,
    TickInProgressError,
    TickTooSoonError,
    TradingSystemError,
)
from tradeloop.execution.exchange_broker import get_or_create_live_account, sync_live_account
from tradeloop.execution.simulated_broker import mark_to_market
from tradeloop.monitoring.logger import bound_context, get_logger
from tradeloop.risk.exit_rules import ExitRuleEngine
from tradeloop.risk.gates import GateContext, RiskGatePipeline
from tradeloop.strategy.indicators import calculate_indicators

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class TickResult:
    """What one tick did."""
    session_id: str
    tick_id: str
    markets: List[str]
    decisions: List[Dict[str, Any]] = field(default_factory=list)
    exits: int = 0
    equity: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "session_id": self.session_id,
            "tick_id": self.tick_id,
            "markets": list(self.markets),
            "exits": self.exits,
            "equity": float(self.equity) if self.equity is not None else None,
            "decisions": list(self.decisions),
        }


@dataclass
class _MarketOutcome:
    summary: str
    risk_result: Dict[str, Any]
    executed: bool = False
    error: Optional[str] = None
    intent: Optional[Dict[str, Any]] = None
    gate_result: Optional[GateResult] = None


def resolve_cadence(filters: StrategyFilters, session: TradingSession, default_seconds: int) -> int:
    """Strategy cadence, then session cadence, then the configured default."""
    if filters.cadence_seconds is not None:
        cadence = filters.cadence_seconds
    elif session.cadence_seconds is not None:
        cadence = session.cadence_seconds
    else:
        cadence = default_seconds
    if cadence <= 0:
        raise ConfigurationError("Strategy configuration invalid: cadence must be positive")
    return int(cadence)


def select_markets(
    filters: StrategyFilters,
    markets: List[str],
    session: TradingSession,
    cadence_seconds: int,
    now: datetime,
) -> List[str]:
    """
    Markets to evaluate this tick.

    Round-robin picks ``floor((now - start) / cadence) mod len(markets)`` so
    the choice is a pure function of the session clock.
    """
    if filters.market_processing_mode == "all" or len(markets) <= 1:
        return list(markets)
    start = session.started_at or session.created_at
    ticks_since_start = max(0, math.floor((now - start).total_seconds() / cadence_seconds))
    return [markets[ticks_since_start % len(markets)]]


def get_or_create_ledger_account(storage: Storage, session: TradingSession, starting_equity: Decimal) -> Account:
    """Simulated and competition sessions each own one ledger account."""
    if session.account_id:
        account = storage.get_account(session.account_id)
        if account is not None:
            return account
    account = storage.save_account(Account(
        id="",
        user_id=session.user_id,
        mode=session.mode,
        starting_equity=starting_equity,
        cash_balance=starting_equity,
        equity=starting_equity,
        venue=session.venue,
    ))
    session.account_id = account.id
    storage.save_session(session)
    logger.info(
        "LEDGER_ACCOUNT_CREATED",
        account_id=account.id,
        mode=session.mode.value,
        starting_equity=float(starting_equity),
    )
    return account


def _pnl_label(pnl_pct: float) -> str:
    return f"{'+' if pnl_pct >= 0 else ''}{pnl_pct:.2f}%"


class TickOrchestrator:
    """
    Runs ticks for sessions.

    Ticks for one session never overlap inside this process (per-session
    asyncio lock) and are refused when the previous tick started less than
    ``max(floor, cadence - grace)`` seconds ago.
    """

    def __init__(
        self,
        storage: Storage,
        market_data: MarketDataProvider,
        broker: Broker,
        model_factory: ReasoningModelFactory,
        config: Config,
        *,
        credentials_provider: Optional[CredentialsProvider] = None,
        submitter_factory: Optional[SubmitterFactory] = None,
    ):
        self.storage = storage
        self.market_data = market_data
        self.broker = broker
        self.model_factory = model_factory
        self.config = config
        self.credentials_provider = credentials_provider
        self.submitter_factory = submitter_factory
        self.pipeline = RiskGatePipeline(storage, broker, entry_fee_bps=config.broker.entry_fee_bps)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def run_tick(self, session_id: str, *, now: Optional[datetime] = None) -> TickResult:
        """
        Run one tick.

        Raises:
            SessionNotFoundError, SessionNotRunningError: Session cannot tick
            TickInProgressError: A tick for this session is already running
            TickTooSoonError: Previous tick is too recent for the cadence
            MarketDataUnavailableError: No price could be fetched
            ConfigurationError: Strategy or venue configuration is unusable
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            raise TickInProgressError("Tick already in progress", session_id=session_id)
        try:
            async with lock:
                tick_id = uuid.uuid4().hex[:12]
                with bound_context(session_id=session_id, tick_id=tick_id):
                    return await self._run(session_id, tick_id, now or utc_now())
        finally:
            # Nothing queues on the lock; drop it so ended sessions do not linger
            if not lock.locked() and self._locks.get(session_id) is lock:
                del self._locks[session_id]

    async def _run(self, session_id: str, tick_id: str, now: datetime) -> TickResult:
        session = self.storage.get_session(session_id)
        if session is None:
            raise SessionNotFoundError("Session not found", session_id=session_id)
        if not session.is_running:
            raise SessionNotRunningError("Session is not running", session_id=session_id)

        strategy = self.storage.get_strategy(session.strategy_id)
        if strategy is None:
            raise ConfigurationError(f"Strategy {session.strategy_id} not found")
        try:
            filters = normalize_strategy_filters(strategy.filters)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid strategy filters: {e.error_count()} errors") from e

        engine_cfg = self.config.engine
        cadence = resolve_cadence(filters, session, engine_cfg.default_cadence_seconds)
        min_interval = max(engine_cfg.min_tick_interval_floor_seconds, cadence - engine_cfg.cadence_grace_seconds)
        if session.last_tick_at is not None:
            elapsed = (now - session.last_tick_at).total_seconds()
            if elapsed < min_interval:
                raise TickTooSoonError(
                    f"Last tick {elapsed:.1f}s ago, minimum interval is {min_interval}s",
                    session_id=session_id,
                )

        markets = list(filters.markets or session.markets)
        if not markets:
            raise ConfigurationError("No markets configured in strategy")

        self.storage.mark_tick_started(session.id, now)
        session.last_tick_at = now
        selected = select_markets(filters, markets, session, cadence, now)
        logger.info(
            "TICK_STARTED",
            mode=session.mode.value,
            cadence_seconds=cadence,
            markets=selected,
            processing_mode=filters.market_processing_mode,
        )

        submitter: Optional[OrderSubmitter] = None
        try:
            if session.mode == SessionMode.LIVE:
                submitter = self._live_submitter(session)
                account = await self._load_live_account(session, submitter)
            else:
                account = get_or_create_ledger_account(
                    self.storage, session, Decimal(str(engine_cfg.default_starting_equity))
                )
            return await self._process(session, strategy, filters, account, selected, tick_id, now, submitter)
        finally:
            if submitter is not None:
                await submitter.close()

    async def _process(
        self,
        session: TradingSession,
        strategy: Strategy,
        filters: StrategyFilters,
        account: Account,
        selected: List[str],
        tick_id: str,
        now: datetime,
        submitter: Optional[OrderSubmitter],
    ) -> TickResult:
        result = TickResult(session_id=session.id, tick_id=tick_id, markets=selected)

        prices = await self._fetch_prices(session, account, selected)

        if session.mode.uses_ledger:
            mark_to_market(self.storage, account.id, prices)
            account, _ = self._refresh_ledger_equity(account.id, prices)

        exited = await self._run_exits(session, account, filters, prices, now, result)
        if session.mode.uses_ledger:
            account, _ = self._refresh_ledger_equity(account.id, prices)
        else:
            account = self.storage.get_account(account.id) or account

        for market in selected:
            price = prices.get(market)
            if price is None:
                decision = self._record_decision(
                    session,
                    market,
                    {"market": market, "timestamp": now.isoformat()},
                    {},
                    None,
                    _MarketOutcome(
                        summary="No action",
                        risk_result={"passed": False, "reason": f"No price available for {market}"},
                        error=f"No price available for {market}",
                    ),
                    filters,
                    account,
                )
                result.decisions.append(decision)
                continue
            decision = await self._process_market(
                session, strategy, filters, account, market, price, now, exited.get(market, set())
            )
            result.decisions.append(decision)
            if session.mode.uses_ledger:
                account, _ = self._refresh_ledger_equity(account.id, prices)

        result.equity = await self._finalize_equity(session, account, prices, now, submitter, result)
        logger.info(
            "TICK_COMPLETED",
            markets=selected,
            exits=result.exits,
            decisions=len(result.decisions),
            executed=sum(1 for d in result.decisions if d["executed"]),
            equity=float(result.equity),
        )
        return result

    # ------------------------------------------------------------------
    # Accounts and prices
    # ------------------------------------------------------------------

    def _live_submitter(self, session: TradingSession) -> OrderSubmitter:
        if self.credentials_provider is None or self.submitter_factory is None:
            raise ConfigurationError("Live trading is not configured")
        venue = session.venue or self.config.exchange.exchange_id
        credentials = self.credentials_provider(session.user_id, venue)
        if credentials is None or not credentials.is_complete:
            raise ConfigurationError(f"No {venue} exchange credentials found")
        return self.submitter_factory(credentials)

    async def _load_live_account(self, session: TradingSession, submitter: OrderSubmitter) -> Account:
        venue = session.venue or self.config.exchange.exchange_id
        try:
            account = await get_or_create_live_account(self.storage, session, submitter, venue)
            account = await sync_live_account(self.storage, account, submitter)
        except DataAcquisitionError as e:
            logger.error("LIVE_SYNC_FAILED", venue=venue, error=str(e))
            raise
        if session.account_id != account.id:
            session.account_id = account.id
            self.storage.save_session(session)
        return account

    async def _fetch_prices(self, session: TradingSession, account: Account, selected: List[str]) -> Dict[str, Decimal]:
        pricing = set(selected)
        pricing.update(p.market for p in self.storage.list_positions(account.id))
        try:
            prices = await self.market_data.get_mid_prices(sorted(pricing))
        except DataAcquisitionError as e:
            raise MarketDataUnavailableError(
                f"Failed to fetch market prices: {e}", session_id=session.id
            ) from e
        prices = {m: p for m, p in prices.items() if p is not None and p > 0}
        if not prices:
            raise MarketDataUnavailableError("Failed to fetch prices for any market", session_id=session.id)
        missing = sorted(pricing - set(prices))
        if missing:
            logger.warning("PRICES_PARTIAL", missing=missing, priced=len(prices))
        return prices

    def _refresh_ledger_equity(
        self, account_id: str, prices: Dict[str, Decimal]
    ) -> Tuple[Account, List[Position]]:
        """Equity = cash + unrealized PnL at fresh prices (stored PnL where unpriced)."""
        account = self.storage.get_account(account_id)
        positions = self.storage.list_positions(account_id)
        unrealized = ZERO
        for position in positions:
            price = prices.get(position.market)
            unrealized += position.pnl_at(price) if price else position.unrealized_pnl
        equity = account.cash_balance + unrealized
        self.storage.update_account_balances(account_id, equity=equity)
        account.equity = equity
        return account, positions

    def _position_age_minutes(self, account_id: str, position: Position, now: datetime) -> float:
        opened = self.storage.last_trade(account_id, position.market, action=TradeAction.OPEN)
        opened_at = opened.created_at if opened is not None else position.opened_at
        return max(0.0, (now - opened_at).total_seconds() / 60)

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def _close_position(
        self,
        session: TradingSession,
        account: Account,
        position: Position,
        price: Decimal,
        reason: str,
    ) -> OrderResult:
        broker_cfg = self.config.broker
        request = OrderRequest(
            mode=session.mode,
            account_id=account.id,
            market=position.market,
            side=position.side.exit_order_side,
            notional_usd=position.size * position.avg_entry,
            slippage_bps=broker_cfg.exit_slippage_bps,
            fee_bps=broker_cfg.exit_fee_bps,
            session_id=session.id,
            strategy_id=session.strategy_id,
            user_id=session.user_id,
            venue=session.venue,
            reference_price=price,
            close_size=position.size,
            leverage=position.leverage,
            reduce_only=True,
        )
        logger.info(
            "EXIT_ORDER_SUBMITTING",
            market=position.market,
            side=position.side.value,
            size=float(position.size),
            reason=reason,
        )
        order = await self.broker.place_order(request)
        if not order.success:
            logger.warning("EXIT_ORDER_FAILED", market=position.market, error=order.error)
        return order

    async def _run_exits(
        self,
        session: TradingSession,
        account: Account,
        filters: StrategyFilters,
        prices: Dict[str, Decimal],
        now: datetime,
        result: TickResult,
    ) -> Dict[str, Set[Side]]:
        """Evaluate exit rules over every open position; returns sides closed per market."""
        engine = ExitRuleEngine(filters.exit_rules, filters.trade_control.min_hold_minutes)
        exited: Dict[str, Set[Side]] = {}

        for position in self.storage.list_positions(account.id):
            price = prices.get(position.market)
            if price is None:
                continue
            age = self._position_age_minutes(account.id, position, now)
            signal = engine.evaluate(position, price, age)

            if signal.peak_price is not None and position.id is not None:
                self.storage.update_position(position.id, peak_price=signal.peak_price)
                position.peak_price = signal.peak_price
            if not signal.should_exit:
                continue

            pnl_pct = position.pnl_pct_at(price)
            logger.info(
                "EXIT_TRIGGERED",
                market=position.market,
                side=position.side.value,
                reason=signal.reason,
                pnl_pct=round(pnl_pct, 4),
                emergency=signal.emergency,
            )
            order = await self._close_position(session, account, position, price, signal.reason)

            intent = {
                "bias": Bias.CLOSE.value,
                "positionSide": position.side.value,
                "reasoning": signal.reason,
            }
            if order.success:
                exited.setdefault(position.market, set()).add(position.side)
                result.exits += 1
                outcome = _MarketOutcome(
                    summary=f"Closed {position.side.value}: {signal.reason} (P&L: {_pnl_label(pnl_pct)})",
                    risk_result={"passed": True, "executed": True},
                    executed=True,
                    intent=intent,
                )
            else:
                summary = f"Auto-exit failed: {order.error or order.status.value}"
                outcome = _MarketOutcome(
                    summary=summary,
                    risk_result={"passed": False, "reason": summary},
                    error=order.error,
                    intent=intent,
                )
            decision = Decision(
                session_id=session.id,
                market=position.market,
                market_snapshot={"market": position.market, "price": float(price), "timestamp": now.isoformat()},
                intent=outcome.intent,
                confidence=1.0,
                action_summary=outcome.summary,
                risk_result=outcome.risk_result,
                proposed_order=ProposedOrder(
                    market=position.market,
                    bias=Bias.CLOSE.value,
                    side=position.side.exit_order_side.value,
                    notional_usd=position.size * position.avg_entry,
                ).to_dict(),
                executed=outcome.executed,
                error=outcome.error,
            )
            self._insert_decision(decision)
            result.decisions.append(self._decision_summary(decision))

        return exited

    async def _ai_exit(
        self,
        session: TradingSession,
        account: Account,
        filters: StrategyFilters,
        position: Optional[Position],
        intent: Intent,
        price: Decimal,
        now: datetime,
        exited_sides: Set[Side],
    ) -> Optional[_MarketOutcome]:
        """
        Position management from the model's intent.

        Returns an outcome when the intent was handled here (exit, hold or an
        ignored close) and the entry gates must not run; None otherwise.
        """
        rules = filters.exit_rules
        bias = intent.bias

        if rules.mode != ExitMode.SIGNAL:
            if position is not None and bias == Bias.CLOSE:
                engine = ExitRuleEngine(rules, filters.trade_control.min_hold_minutes)
                summary = (
                    f"AI recommends closing (P&L: {_pnl_label(position.pnl_pct_at(price))}) "
                    f"but using {engine.describe_mode(position.side)}"
                )
                return _MarketOutcome(summary=summary, risk_result={"passed": False, "reason": summary})
            return None

        if position is None:
            if bias == Bias.CLOSE:
                summary = "AI said 'close' but no position to close"
                return _MarketOutcome(summary=summary, risk_result={"passed": False, "reason": summary})
            return None

        side = position.side
        pnl = position.pnl_at(price)
        pnl_label = _pnl_label(position.pnl_pct_at(price))
        explicit_close = bias == Bias.CLOSE
        reversal = bias.side is not None and bias.side == side.opposite

        if explicit_close or reversal:
            min_hold = filters.trade_control.min_hold_minutes
            age = self._position_age_minutes(account.id, position, now)
            if age < min_hold:
                remaining = math.ceil(min_hold - age)
                summary = (
                    f"Min hold time: AI wanted to {'close' if explicit_close else 'reverse'} "
                    f"but {remaining} min remaining"
                )
                return _MarketOutcome(summary=summary, risk_result={"passed": False, "reason": summary})

            reason = (
                f"AI requested close (P&L: {pnl_label})"
                if explicit_close
                else f"AI reversal signal: {bias.value} (was {side.value})"
            )
            order = await self._close_position(session, account, position, price, reason)
            if not order.success:
                summary = f"AI-driven exit failed: {order.error or 'Unknown error'}"
                return _MarketOutcome(
                    summary=summary,
                    risk_result={"passed": False, "reason": summary},
                    error=order.error,
                )

            exited_sides.add(side)
            if explicit_close:
                summary = (
                    f"AI closed {side.value} position to "
                    f"{'lock in profit' if pnl >= 0 else 'cut loss'} ({pnl_label})"
                )
            else:
                summary = f"AI reversal: Closed {side.value} position (new bias: {bias.value})"
            logged_intent = intent.to_dict()
            logged_intent["bias"] = Bias.CLOSE.value
            logged_intent["positionSide"] = side.value
            # Gates are skipped; the exit itself is what executed
            return _MarketOutcome(
                summary=summary,
                risk_result={"passed": False, "executed": True},
                executed=True,
                intent=logged_intent,
            )

        if bias == Bias.HOLD:
            summary = f"Hold: keeping {side.value} position (P&L: {pnl_label})"
        elif bias == Bias.NEUTRAL:
            summary = f"Hold: AI neutral, keeping {side.value} position (P&L: {pnl_label})"
        elif bias.side == side:
            summary = f"Hold: AI confirms {side.value} position (P&L: {pnl_label})"
        else:
            return None
        return _MarketOutcome(summary=summary, risk_result={"passed": False, "reason": summary})

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def _process_market(
        self,
        session: TradingSession,
        strategy: Strategy,
        filters: StrategyFilters,
        account: Account,
        market: str,
        price: Decimal,
        now: datetime,
        exited_sides: Set[Side],
    ) -> Dict[str, Any]:
        positions = self.storage.list_positions(account.id)
        position = next((p for p in positions if p.market == market), None)
        context, snapshot, indicators = await self._build_context(
            session, filters, account, positions, position, market, price, now
        )

        intent: Optional[Intent] = None
        try:
            model = self.model_factory(strategy)
            intent = await model.call(
                build_system_prompt(strategy.prompt, self._constraints(filters)),
                build_user_context(context),
            )
        except (ProviderError, ConfigurationError) as e:
            logger.error(
                "MODEL_CALL_FAILED",
                market=market,
                provider=strategy.model_provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome = _MarketOutcome(
                summary="No action",
                risk_result={"passed": False, "reason": str(e)},
                error=str(e),
            )
            return self._record_decision(session, market, snapshot, indicators, None, outcome, filters, account)

        logger.info(
            "INTENT_RECEIVED",
            market=market,
            bias=intent.bias.value,
            confidence=intent.confidence,
            leverage=intent.leverage,
        )

        outcome = await self._ai_exit(session, account, filters, position, intent, price, now, exited_sides)
        if outcome is None:
            gate_ctx = GateContext(
                session=session,
                account=account,
                market=market,
                intent=intent,
                filters=filters,
                current_price=price,
                positions=positions,
                now=now,
                indicators=indicators,
                exited_sides=exited_sides,
            )
            gated = await self.pipeline.run(gate_ctx)
            risk_result = gated.result.to_risk_result()
            if gated.executed:
                risk_result["executed"] = True
            outcome = _MarketOutcome(
                summary=gated.summary,
                risk_result=risk_result,
                executed=gated.executed,
                error=gated.error,
                gate_result=gated.result,
            )

        return self._record_decision(session, market, snapshot, indicators, intent, outcome, filters, account)

    def _constraints(self, filters: StrategyFilters) -> Dict[str, Any]:
        behaviors = filters.behaviors
        return {
            "allow_long": filters.guardrails.allow_long,
            "allow_short": filters.guardrails.allow_short,
            "entry_behaviors": [
                name
                for name, enabled in (
                    ("trend", behaviors.trend),
                    ("breakout", behaviors.breakout),
                    ("mean reversion", behaviors.mean_reversion),
                )
                if enabled
            ],
            "min_confidence": filters.min_confidence,
            "max_leverage": filters.risk.max_leverage,
            "max_position_usd": filters.risk.max_position_usd,
        }

    async def _build_context(
        self,
        session: TradingSession,
        filters: StrategyFilters,
        account: Account,
        positions: List[Position],
        position: Optional[Position],
        market: str,
        price: Decimal,
        now: datetime,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        """Decision context for the model, the market snapshot and the indicators snapshot."""
        inputs = filters.ai_inputs
        market_data: Dict[str, Any] = {"price": float(price)}
        snapshot: Dict[str, Any] = {"market": market, "price": float(price), "timestamp": now.isoformat()}

        candles: List[Candle] = []
        if inputs.candles.enabled or inputs.indicators.any_enabled:
            try:
                candles = await self.market_data.get_candles(market, inputs.candles.timeframe, inputs.candles.count)
            except TradingSystemError as e:
                logger.warning("CANDLES_UNAVAILABLE", market=market, error=str(e))
        if candles and inputs.candles.enabled:
            market_data["candles"] = {
                "timeframe": inputs.candles.timeframe,
                "ohlcv": [
                    [c.timestamp.isoformat(), float(c.open), float(c.high), float(c.low), float(c.close), float(c.volume)]
                    for c in candles
                ],
            }
            snapshot["candles"] = {
                "timeframe": inputs.candles.timeframe,
                "count": len(candles),
                "last_close": float(candles[-1].close),
            }

        if inputs.orderbook.enabled:
            try:
                top = await self.market_data.get_orderbook_top(market)
            except TradingSystemError as e:
                logger.warning("ORDERBOOK_UNAVAILABLE", market=market, error=str(e))
            else:
                book = {
                    "bid": float(top.bid),
                    "ask": float(top.ask),
                    "mid": float(top.mid),
                    "spread_pct": round(top.spread_pct, 4),
                }
                market_data["orderbook"] = book
                snapshot["orderbook"] = book

        indicators = calculate_indicators(candles, inputs.indicators)

        context: Dict[str, Any] = {
            "market": market,
            "market_data": market_data,
            "indicators": indicators,
            "account": {
                "equity": float(account.equity),
                "cash_balance": float(account.cash_balance),
                "starting_equity": float(account.starting_equity),
                "total_return_pct": (
                    float((account.equity - account.starting_equity) / account.starting_equity * 100)
                    if account.starting_equity > 0 else 0.0
                ),
            },
            "positions": [
                {
                    "market": p.market,
                    "side": p.side.value,
                    "size": float(p.size),
                    "avg_entry": float(p.avg_entry),
                    "unrealized_pnl": float(p.unrealized_pnl),
                    "position_value": float(p.entry_notional + p.unrealized_pnl),
                }
                for p in positions
            ],
        }
        if position is not None and inputs.include_position_state:
            context["current_position"] = {
                "side": position.side.value,
                "size": float(position.size),
                "avg_entry": float(position.avg_entry),
                "unrealized_pnl": float(position.pnl_at(price)),
            }

        if inputs.include_recent_decisions and inputs.recent_decisions_count > 0:
            try:
                recent = self.storage.recent_decisions(session.id, inputs.recent_decisions_count)
            except SQLAlchemyError as e:
                logger.warning("RECENT_DECISIONS_UNAVAILABLE", error=str(e))
            else:
                context["recent_decisions"] = [
                    {
                        "timestamp": d.created_at.isoformat(),
                        "bias": d.intent.get("bias", "neutral"),
                        "confidence": d.confidence,
                        "reasoning": d.intent.get("reasoning"),
                        "action_summary": d.action_summary,
                    }
                    for d in recent
                ]

        if inputs.include_recent_trades and inputs.recent_trades_count > 0:
            try:
                trades = self.storage.recent_trades(account.id, inputs.recent_trades_count)
            except SQLAlchemyError as e:
                logger.warning("RECENT_TRADES_UNAVAILABLE", error=str(e))
            else:
                context["recent_trades"] = [
                    {
                        "timestamp": t.created_at.isoformat(),
                        "market": t.market,
                        "side": t.side.value,
                        "action": t.action.value,
                        "price": float(t.price),
                        "size": float(t.size),
                        "realized_pnl": float(t.realized_pnl) if t.action.realizes_pnl else None,
                    }
                    for t in trades
                ]

        return context, snapshot, indicators

    # ------------------------------------------------------------------
    # Decisions and equity
    # ------------------------------------------------------------------

    def _proposed_order(
        self,
        market: str,
        intent: Optional[Intent],
        outcome: _MarketOutcome,
        filters: StrategyFilters,
        account: Account,
    ) -> ProposedOrder:
        bias = intent.bias if intent is not None else Bias.NEUTRAL
        side = bias.side.entry_order_side.value if bias.side is not None else None
        proposed = ProposedOrder(market=market, bias=bias.value, side=side)

        gate_result = outcome.gate_result
        if gate_result is not None and gate_result.notional_usd > 0:
            proposed.notional_usd = gate_result.notional_usd
        elif bias.side is not None and not outcome.risk_result.get("passed"):
            # Rejected before sizing: show what the risk limits would allow
            risk = filters.risk
            exposure = sum((p.entry_notional for p in self.storage.list_positions(account.id)), ZERO)
            ceiling = account.equity * Decimal(str(risk.max_leverage)) * LEVERAGE_SAFETY_MARGIN
            room = max(ZERO, ceiling - exposure)
            proposed.notional_usd = min(Decimal(str(risk.max_position_usd)), room)
        return proposed

    def _record_decision(
        self,
        session: TradingSession,
        market: str,
        snapshot: Dict[str, Any],
        indicators: Dict[str, Any],
        intent: Optional[Intent],
        outcome: _MarketOutcome,
        filters: StrategyFilters,
        account: Account,
    ) -> Dict[str, Any]:
        decision = Decision(
            session_id=session.id,
            market=market,
            market_snapshot=snapshot,
            indicators_snapshot=indicators,
            intent=outcome.intent if outcome.intent is not None else (intent.to_dict() if intent else {}),
            confidence=intent.confidence if intent is not None else 0.0,
            action_summary=outcome.summary,
            risk_result=outcome.risk_result,
            proposed_order=self._proposed_order(market, intent, outcome, filters, account).to_dict(),
            executed=outcome.executed,
            error=outcome.error,
        )
        self._insert_decision(decision)
        return self._decision_summary(decision)

    def _insert_decision(self, decision: Decision) -> None:
        self.storage.insert_decision(decision)
        logger.info(
            "DECISION_RECORDED",
            market=decision.market,
            action_summary=decision.action_summary,
            executed=decision.executed,
            error=decision.error,
        )

    @staticmethod
    def _decision_summary(decision: Decision) -> Dict[str, Any]:
        return {
            "market": decision.market,
            "confidence": decision.confidence,
            "action_summary": decision.action_summary,
            "executed": decision.executed,
            "error": decision.error,
        }

    async def _finalize_equity(
        self,
        session: TradingSession,
        account: Account,
        prices: Dict[str, Decimal],
        now: datetime,
        submitter: Optional[OrderSubmitter],
        result: TickResult,
    ) -> Decimal:
        """Authoritative equity, equity point and (ledger modes) reconciliation."""
        if session.mode.uses_ledger:
            account, positions = self._refresh_ledger_equity(account.id, prices)
        else:
            if submitter is not None and (result.exits or any(d["executed"] for d in result.decisions)):
                try:
                    account = await sync_live_account(self.storage, account, submitter)
                except DataAcquisitionError as e:
                    logger.warning("LIVE_RESYNC_FAILED", error=str(e))
            account = self.storage.get_account(account.id) or account
            positions = self.storage.list_positions(account.id)

        equity = account.equity
        self.storage.insert_equity_point(EquityPoint(
            account_id=account.id,
            equity=equity,
            t=now,
            session_id=session.id,
        ))

        if session.mode.uses_ledger:
            totals = calc_totals(account, positions, self.storage.list_trades(account.id), prices, session.mode)
            tolerance = self.config.engine.reconciliation_tolerance
            if verify_reconciliation(totals, tolerance):
                logger.debug("RECONCILIATION_OK", equity=float(totals.equity))
            else:
                logger.warning(
                    "RECONCILIATION_MISMATCH",
                    gap=float(reconciliation_gap(totals)),
                    tolerance=tolerance,
                    **totals.breakdown(),
                )
        return equity

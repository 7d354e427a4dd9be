"""
Persistence for sessions, strategies, ledger state and the decision trail.

ORM models plus ``SqlStorage``, the SQLAlchemy implementation of the
``Storage`` protocol. Every public method opens its own transaction;
``apply_ledger_update`` writes cash, position and trade atomically.
"""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional
import json
import uuid

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
    Strategy,
    Trade,
    TradeAction,
    TradingSession,
    utc_now,
)
from tradeloop.exceptions import InvariantError
from tradeloop.monitoring.logger import get_logger
from tradeloop.storage.db import Base, Database, get_db

logger = get_logger(__name__)

_PRICE = Numeric(precision=28, scale=10)
_MONEY = Numeric(precision=28, scale=10)


# ORM Models
class SessionModel(Base):
    """ORM model for strategy sessions."""
    __tablename__ = "sessions"
    __table_args__ = (
        Index("idx_session_status", "status"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    strategy_id = Column(String, nullable=False)
    account_id = Column(String, nullable=True)
    mode = Column(String, nullable=False)
    status = Column(String, nullable=False)
    markets = Column(Text, nullable=False, default="[]")  # JSON list
    cadence_seconds = Column(Integer, nullable=False, default=30)
    venue = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    last_tick_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class StrategyModel(Base):
    """ORM model for strategies (filters stored as JSON)."""
    __tablename__ = "strategies"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    model_provider = Column(String, nullable=False)
    model_name = Column(String, nullable=False)
    prompt = Column(Text, nullable=False, default="")
    filters = Column(Text, nullable=False, default="{}")


class AccountModel(Base):
    """ORM model for simulated and live accounts."""
    __tablename__ = "accounts"
    __table_args__ = (
        Index("idx_account_owner", "user_id", "mode", "venue"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    mode = Column(String, nullable=False)
    venue = Column(String, nullable=True)
    starting_equity = Column(_MONEY, nullable=False)
    cash_balance = Column(_MONEY, nullable=False)
    equity = Column(_MONEY, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class PositionModel(Base):
    """ORM model for open positions. One row per (account, market)."""
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("account_id", "market", name="uq_position_account_market"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    market = Column(String, nullable=False)
    side = Column(String, nullable=False)
    size = Column(_PRICE, nullable=False)
    avg_entry = Column(_PRICE, nullable=False)
    unrealized_pnl = Column(_MONEY, nullable=False, default=0)
    leverage = Column(Numeric(precision=10, scale=2), nullable=True)
    peak_price = Column(_PRICE, nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class TradeModel(Base):
    """ORM model for executions - indexed for the frequency/cooldown windows."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trade_account_market_time", "account_id", "market", "created_at"),
        Index("idx_trade_session_time", "session_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    session_id = Column(String, nullable=True)
    strategy_id = Column(String, nullable=True)
    market = Column(String, nullable=False)
    action = Column(String, nullable=False)
    side = Column(String, nullable=False)
    size = Column(_PRICE, nullable=False)
    price = Column(_PRICE, nullable=False)
    fee = Column(_MONEY, nullable=False, default=0)
    realized_pnl = Column(_MONEY, nullable=False, default=0)
    leverage = Column(Numeric(precision=10, scale=2), nullable=True)
    venue_order_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DecisionModel(Base):
    """ORM model for the per-tick decision audit trail."""
    __tablename__ = "decisions"
    __table_args__ = (
        Index("idx_decision_session_time", "session_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False)
    market = Column(String, nullable=False)
    market_snapshot = Column(Text, nullable=False, default="{}")
    indicators_snapshot = Column(Text, nullable=False, default="{}")
    intent = Column(Text, nullable=False, default="{}")
    confidence = Column(Float, nullable=False, default=0.0)
    action_summary = Column(Text, nullable=False, default="")
    risk_result = Column(Text, nullable=False, default="{}")
    proposed_order = Column(Text, nullable=False, default="{}")
    executed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class EquityPointModel(Base):
    """ORM model for equity samples (append-only)."""
    __tablename__ = "equity_points"
    __table_args__ = (
        Index("idx_equity_account_time", "account_id", "t"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    session_id = Column(String, nullable=True)
    equity = Column(_MONEY, nullable=False)
    t = Column(DateTime(timezone=True), nullable=False)


# Conversion helpers
def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every datetime leaving storage is UTC-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Corrupt JSON column value", preview=value[:80])
        return default


def _session_from_model(m: SessionModel) -> TradingSession:
    return TradingSession(
        id=m.id,
        user_id=m.user_id,
        strategy_id=m.strategy_id,
        account_id=m.account_id,
        mode=SessionMode.parse(m.mode),
        status=SessionStatus(m.status),
        markets=_loads(m.markets, []),
        cadence_seconds=m.cadence_seconds,
        venue=m.venue,
        started_at=_utc(m.started_at),
        last_tick_at=_utc(m.last_tick_at),
        created_at=_utc(m.created_at),
    )


def _strategy_from_model(m: StrategyModel) -> Strategy:
    return Strategy(
        id=m.id,
        user_id=m.user_id,
        name=m.name,
        model_provider=m.model_provider,
        model_name=m.model_name,
        prompt=m.prompt or "",
        filters=_loads(m.filters, {}),
    )


def _account_from_model(m: AccountModel) -> Account:
    return Account(
        id=m.id,
        user_id=m.user_id,
        mode=SessionMode.parse(m.mode),
        venue=m.venue,
        starting_equity=_dec(m.starting_equity),
        cash_balance=_dec(m.cash_balance),
        equity=_dec(m.equity),
        updated_at=_utc(m.updated_at),
    )


def _position_from_model(m: PositionModel) -> Position:
    return Position(
        id=m.id,
        account_id=m.account_id,
        market=m.market,
        side=Side(m.side),
        size=_dec(m.size),
        avg_entry=_dec(m.avg_entry),
        unrealized_pnl=_dec(m.unrealized_pnl) or Decimal("0"),
        leverage=_dec(m.leverage),
        peak_price=_dec(m.peak_price),
        opened_at=_utc(m.opened_at),
        updated_at=_utc(m.updated_at),
    )


def _trade_from_model(m: TradeModel) -> Trade:
    return Trade(
        id=m.id,
        account_id=m.account_id,
        session_id=m.session_id,
        strategy_id=m.strategy_id,
        market=m.market,
        action=TradeAction(m.action),
        side=OrderSide(m.side),
        size=_dec(m.size),
        price=_dec(m.price),
        fee=_dec(m.fee) or Decimal("0"),
        realized_pnl=_dec(m.realized_pnl) or Decimal("0"),
        leverage=_dec(m.leverage),
        venue_order_id=m.venue_order_id,
        created_at=_utc(m.created_at),
    )


def _trade_to_model(trade: Trade) -> TradeModel:
    return TradeModel(
        account_id=trade.account_id,
        session_id=trade.session_id,
        strategy_id=trade.strategy_id,
        market=trade.market,
        action=trade.action.value,
        side=trade.side.value,
        size=trade.size,
        price=trade.price,
        fee=trade.fee,
        realized_pnl=trade.realized_pnl,
        leverage=trade.leverage,
        venue_order_id=trade.venue_order_id,
        created_at=trade.created_at,
    )


def _decision_from_model(m: DecisionModel) -> Decision:
    return Decision(
        id=m.id,
        session_id=m.session_id,
        market=m.market,
        market_snapshot=_loads(m.market_snapshot, {}),
        indicators_snapshot=_loads(m.indicators_snapshot, {}),
        intent=_loads(m.intent, {}),
        confidence=m.confidence,
        action_summary=m.action_summary,
        risk_result=_loads(m.risk_result, {}),
        proposed_order=_loads(m.proposed_order, {}),
        executed=bool(m.executed),
        error=m.error,
        created_at=_utc(m.created_at),
    )


def _apply_position_fields(m: PositionModel, position: Position) -> None:
    m.side = position.side.value
    m.size = position.size
    m.avg_entry = position.avg_entry
    m.unrealized_pnl = position.unrealized_pnl
    m.leverage = position.leverage
    m.peak_price = position.peak_price
    m.updated_at = utc_now()


class SqlStorage:
    """SQLAlchemy-backed ``Storage``."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    # ------------------------------------------------------------------
    # Sessions / strategies
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[TradingSession]:
        with self.db.get_session() as s:
            m = s.get(SessionModel, session_id)
            return _session_from_model(m) if m else None

    def list_sessions(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[TradingSession]:
        with self.db.get_session() as s:
            q = s.query(SessionModel)
            if status:
                q = q.filter(SessionModel.status == status)
            q = q.order_by(SessionModel.created_at.asc())
            if limit:
                q = q.limit(limit)
            return [_session_from_model(m) for m in q.all()]

    def save_session(self, session: TradingSession) -> TradingSession:
        with self.db.get_session() as s:
            m = s.get(SessionModel, session.id)
            if m is None:
                m = SessionModel(id=session.id, created_at=session.created_at)
                s.add(m)
            m.user_id = session.user_id
            m.strategy_id = session.strategy_id
            m.account_id = session.account_id
            m.mode = session.mode.value
            m.status = session.status.value
            m.markets = json.dumps(list(session.markets))
            m.cadence_seconds = session.cadence_seconds
            m.venue = session.venue
            m.started_at = session.started_at
            m.last_tick_at = session.last_tick_at
        return session

    def mark_tick_started(self, session_id: str, at: datetime) -> None:
        with self.db.get_session() as s:
            m = s.get(SessionModel, session_id)
            if m is not None:
                m.last_tick_at = at

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        with self.db.get_session() as s:
            m = s.get(StrategyModel, strategy_id)
            return _strategy_from_model(m) if m else None

    def save_strategy(self, strategy: Strategy) -> Strategy:
        with self.db.get_session() as s:
            m = s.get(StrategyModel, strategy.id)
            if m is None:
                m = StrategyModel(id=strategy.id)
                s.add(m)
            m.user_id = strategy.user_id
            m.name = strategy.name
            m.model_provider = strategy.model_provider
            m.model_name = strategy.model_name
            m.prompt = strategy.prompt
            m.filters = _dumps(strategy.filters)
        return strategy

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.db.get_session() as s:
            m = s.get(AccountModel, account_id)
            return _account_from_model(m) if m else None

    def find_account(self, user_id: str, mode: SessionMode, venue: Optional[str] = None) -> Optional[Account]:
        with self.db.get_session() as s:
            q = s.query(AccountModel).filter(
                AccountModel.user_id == user_id,
                AccountModel.mode == mode.value,
            )
            if venue is not None:
                q = q.filter(AccountModel.venue == venue)
            m = q.order_by(AccountModel.updated_at.asc()).first()
            return _account_from_model(m) if m else None

    def save_account(self, account: Account) -> Account:
        if not account.id:
            account.id = str(uuid.uuid4())
        with self.db.get_session() as s:
            m = s.get(AccountModel, account.id)
            if m is None:
                m = AccountModel(id=account.id)
                s.add(m)
            m.user_id = account.user_id
            m.mode = account.mode.value
            m.venue = account.venue
            m.starting_equity = account.starting_equity
            m.cash_balance = account.cash_balance
            m.equity = account.equity
            m.updated_at = utc_now()
        return account

    def update_account_balances(
        self, account_id: str, cash_balance: Optional[Decimal] = None, equity: Optional[Decimal] = None
    ) -> None:
        with self.db.get_session() as s:
            m = s.get(AccountModel, account_id)
            if m is None:
                raise InvariantError(f"Account {account_id} not found")
            if cash_balance is not None:
                m.cash_balance = cash_balance
            if equity is not None:
                m.equity = equity
            m.updated_at = utc_now()

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def list_positions(self, account_id: str) -> List[Position]:
        with self.db.get_session() as s:
            rows = (
                s.query(PositionModel)
                .filter(PositionModel.account_id == account_id)
                .order_by(PositionModel.id.asc())
                .all()
            )
            return [_position_from_model(m) for m in rows]

    def get_position(self, account_id: str, market: str) -> Optional[Position]:
        with self.db.get_session() as s:
            m = (
                s.query(PositionModel)
                .filter(PositionModel.account_id == account_id, PositionModel.market == market)
                .first()
            )
            return _position_from_model(m) if m else None

    def save_position(self, position: Position) -> Position:
        with self.db.get_session() as s:
            m = self._upsert_position(s, position)
            s.flush()
            position.id = m.id
        return position

    def update_position(self, position_id: int, **fields: Any) -> None:
        with self.db.get_session() as s:
            m = s.get(PositionModel, position_id)
            if m is None:
                return
            for key, value in fields.items():
                if isinstance(value, Side):
                    value = value.value
                setattr(m, key, value)
            m.updated_at = utc_now()

    def delete_position(self, position_id: int) -> None:
        with self.db.get_session() as s:
            m = s.get(PositionModel, position_id)
            if m is not None:
                s.delete(m)

    def replace_positions(self, account_id: str, positions: List[Position]) -> None:
        """Upsert the given positions and delete the rest, in one transaction."""
        keep = {p.market for p in positions}
        with self.db.get_session() as s:
            for position in positions:
                self._upsert_position(s, position)
            stale = s.query(PositionModel).filter(PositionModel.account_id == account_id)
            for m in stale.all():
                if m.market not in keep:
                    s.delete(m)

    def _upsert_position(self, s, position: Position) -> PositionModel:
        m = None
        if position.id is not None:
            m = s.get(PositionModel, position.id)
        if m is None:
            m = (
                s.query(PositionModel)
                .filter(
                    PositionModel.account_id == position.account_id,
                    PositionModel.market == position.market,
                )
                .first()
            )
        if m is None:
            m = PositionModel(
                account_id=position.account_id,
                market=position.market,
                opened_at=position.opened_at,
            )
            s.add(m)
        _apply_position_fields(m, position)
        return m

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def apply_ledger_update(self, update: LedgerUpdate) -> Trade:
        with self.db.get_session() as s:
            account = s.get(AccountModel, update.account_id)
            if account is None:
                raise InvariantError(f"Account {update.account_id} not found")
            if update.delete_position_id is not None:
                m = s.get(PositionModel, update.delete_position_id)
                if m is not None:
                    s.delete(m)
            if update.upsert_position is not None:
                self._upsert_position(s, update.upsert_position)
            account.cash_balance = update.cash_balance
            account.updated_at = utc_now()
            trade_row = _trade_to_model(update.trade)
            s.add(trade_row)
            s.flush()
            update.trade.id = trade_row.id
        return update.trade

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def insert_trade(self, trade: Trade) -> Trade:
        with self.db.get_session() as s:
            row = _trade_to_model(trade)
            s.add(row)
            s.flush()
            trade.id = row.id
        return trade

    def list_trades(self, account_id: str) -> List[Trade]:
        with self.db.get_session() as s:
            rows = (
                s.query(TradeModel)
                .filter(TradeModel.account_id == account_id)
                .order_by(TradeModel.created_at.asc(), TradeModel.id.asc())
                .all()
            )
            return [_trade_from_model(m) for m in rows]

    def recent_trades(self, account_id: str, limit: int) -> List[Trade]:
        with self.db.get_session() as s:
            rows = (
                s.query(TradeModel)
                .filter(TradeModel.account_id == account_id)
                .order_by(TradeModel.created_at.desc(), TradeModel.id.desc())
                .limit(limit)
                .all()
            )
            return [_trade_from_model(m) for m in rows]

    def last_trade(self, account_id: str, market: str, action: Optional[TradeAction] = None) -> Optional[Trade]:
        with self.db.get_session() as s:
            q = s.query(TradeModel).filter(
                TradeModel.account_id == account_id,
                TradeModel.market == market,
            )
            if action is not None:
                q = q.filter(TradeModel.action == action.value)
            m = q.order_by(TradeModel.created_at.desc(), TradeModel.id.desc()).first()
            return _trade_from_model(m) if m else None

    def count_trades_since(self, session_id: str, since: datetime) -> int:
        with self.db.get_session() as s:
            return (
                s.query(func.count(TradeModel.id))
                .filter(TradeModel.session_id == session_id, TradeModel.created_at >= since)
                .scalar()
                or 0
            )

    # ------------------------------------------------------------------
    # Decisions / equity
    # ------------------------------------------------------------------

    def insert_decision(self, decision: Decision) -> Decision:
        with self.db.get_session() as s:
            row = DecisionModel(
                session_id=decision.session_id,
                market=decision.market,
                market_snapshot=_dumps(decision.market_snapshot),
                indicators_snapshot=_dumps(decision.indicators_snapshot),
                intent=_dumps(decision.intent),
                confidence=float(decision.confidence or 0.0),
                action_summary=decision.action_summary,
                risk_result=_dumps(decision.risk_result),
                proposed_order=_dumps(decision.proposed_order),
                executed=decision.executed,
                error=decision.error,
                created_at=decision.created_at,
            )
            s.add(row)
            s.flush()
            decision.id = row.id
        return decision

    def recent_decisions(self, session_id: str, limit: int) -> List[Decision]:
        with self.db.get_session() as s:
            rows = (
                s.query(DecisionModel)
                .filter(DecisionModel.session_id == session_id)
                .order_by(DecisionModel.created_at.desc(), DecisionModel.id.desc())
                .limit(limit)
                .all()
            )
            return [_decision_from_model(m) for m in rows]

    def list_decisions(self, session_id: str) -> List[Decision]:
        with self.db.get_session() as s:
            rows = (
                s.query(DecisionModel)
                .filter(DecisionModel.session_id == session_id)
                .order_by(DecisionModel.created_at.asc(), DecisionModel.id.asc())
                .all()
            )
            return [_decision_from_model(m) for m in rows]

    def insert_equity_point(self, point: EquityPoint) -> None:
        with self.db.get_session() as s:
            s.add(EquityPointModel(
                account_id=point.account_id,
                session_id=point.session_id,
                equity=point.equity,
                t=point.t,
            ))

    def first_equity_point_since(self, account_id: str, since: datetime) -> Optional[EquityPoint]:
        with self.db.get_session() as s:
            m = (
                s.query(EquityPointModel)
                .filter(EquityPointModel.account_id == account_id, EquityPointModel.t >= since)
                .order_by(EquityPointModel.t.asc(), EquityPointModel.id.asc())
                .first()
            )
            if m is None:
                return None
            return EquityPoint(account_id=m.account_id, equity=_dec(m.equity), t=_utc(m.t), session_id=m.session_id)

    def list_equity_points(self, account_id: str) -> List[EquityPoint]:
        with self.db.get_session() as s:
            rows = (
                s.query(EquityPointModel)
                .filter(EquityPointModel.account_id == account_id)
                .order_by(EquityPointModel.t.asc(), EquityPointModel.id.asc())
                .all()
            )
            return [
                EquityPoint(account_id=m.account_id, equity=_dec(m.equity), t=_utc(m.t), session_id=m.session_id)
                for m in rows
            ]

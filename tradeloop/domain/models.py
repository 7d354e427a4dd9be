"""
Domain models for the tick engine.

These are the core business objects passed between the orchestrator, the
risk gates, the brokers and storage. All timestamps are UTC timezone-aware.
Money, prices and sizes are Decimal; confidences and indicator values are float.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionMode(str, Enum):
    """Execution mode of a session."""
    SIMULATED = "simulated"
    LIVE = "live"
    COMPETITION = "competition"

    @classmethod
    def parse(cls, value: str) -> "SessionMode":
        """Accept the legacy names ``virtual`` and ``arena``."""
        legacy = {"virtual": cls.SIMULATED, "arena": cls.COMPETITION}
        key = str(value).strip().lower()
        if key in legacy:
            return legacy[key]
        return cls(key)

    @property
    def uses_ledger(self) -> bool:
        """True when orders settle against the simulated ledger."""
        return self is not SessionMode.LIVE


class SessionStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG

    @property
    def entry_order_side(self) -> "OrderSide":
        return OrderSide.BUY if self is Side.LONG else OrderSide.SELL

    @property
    def exit_order_side(self) -> "OrderSide":
        return OrderSide.SELL if self is Side.LONG else OrderSide.BUY


class OrderSide(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def position_side(self) -> Side:
        return Side.LONG if self is OrderSide.BUY else Side.SHORT


class TradeAction(str, Enum):
    OPEN = "open"
    INCREASE = "increase"
    REDUCE = "reduce"
    CLOSE = "close"
    FLIP = "flip"

    @property
    def realizes_pnl(self) -> bool:
        return self in (TradeAction.REDUCE, TradeAction.CLOSE, TradeAction.FLIP)


class Bias(str, Enum):
    """Directional bias returned by the reasoning model."""
    LONG = "long"
    SHORT = "short"
    HOLD = "hold"
    NEUTRAL = "neutral"
    CLOSE = "close"

    @property
    def side(self) -> Optional[Side]:
        if self is Bias.LONG:
            return Side.LONG
        if self is Bias.SHORT:
            return Side.SHORT
        return None


class ExitMode(str, Enum):
    SIGNAL = "signal"
    TP_SL = "tp_sl"
    TRAILING = "trailing"
    TIME = "time"


class OrderStatus(str, Enum):
    FILLED = "filled"
    REJECTED = "rejected"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TradingSession:
    """A running (or stopped) strategy instance."""
    id: str
    user_id: str
    strategy_id: str
    mode: SessionMode
    status: SessionStatus
    markets: List[str] = field(default_factory=list)
    cadence_seconds: int = 30
    account_id: Optional[str] = None
    venue: Optional[str] = None
    started_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING


@dataclass
class Strategy:
    """Configuration snapshot, read fresh every tick."""
    id: str
    user_id: str
    name: str
    model_provider: str
    model_name: str
    prompt: str
    filters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Account:
    id: str
    user_id: str
    mode: SessionMode
    starting_equity: Decimal
    cash_balance: Decimal
    equity: Decimal
    venue: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class Position:
    """
    Open position keyed by (account, market).

    Size is always positive; direction lives in ``side``.
    """
    account_id: str
    market: str
    side: Side
    size: Decimal
    avg_entry: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    leverage: Optional[Decimal] = None
    peak_price: Optional[Decimal] = None
    id: Optional[int] = None
    opened_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.size <= 0:
            raise ValueError(f"Position size must be positive, got {self.size}")

    @property
    def entry_notional(self) -> Decimal:
        return self.avg_entry * self.size

    def pnl_at(self, price: Decimal) -> Decimal:
        """Unrealized PnL at ``price`` (pure price movement, no fees)."""
        if self.side == Side.LONG:
            return (price - self.avg_entry) * self.size
        return (self.avg_entry - price) * self.size

    def pnl_pct_at(self, price: Decimal) -> float:
        notional = self.entry_notional
        if notional <= 0:
            return 0.0
        return float(self.pnl_at(price) / notional * 100)


@dataclass
class Trade:
    """Immutable execution record."""
    account_id: str
    market: str
    action: TradeAction
    side: OrderSide
    size: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    session_id: Optional[str] = None
    strategy_id: Optional[str] = None
    leverage: Optional[Decimal] = None
    venue_order_id: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Decision:
    """One per market per tick, written regardless of outcome."""
    session_id: str
    market: str
    market_snapshot: Dict[str, Any] = field(default_factory=dict)
    indicators_snapshot: Dict[str, Any] = field(default_factory=dict)
    intent: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    action_summary: str = ""
    risk_result: Dict[str, Any] = field(default_factory=dict)
    proposed_order: Dict[str, Any] = field(default_factory=dict)
    executed: bool = False
    error: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class EquityPoint:
    account_id: str
    equity: Decimal
    t: datetime = field(default_factory=utc_now)
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Candle:
    """OHLCV candle."""
    timestamp: datetime
    market: str
    timeframe: str
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def __post_init__(self):
        if self.timestamp.tzinfo is None:
            raise ValueError("Candle timestamp must be timezone-aware (UTC)")
        if self.high < self.low:
            raise ValueError(f"Invalid candle: high ({self.high}) < low ({self.low})")


@dataclass(frozen=True)
class OrderbookTop:
    bid: Decimal
    ask: Decimal
    mid: Decimal

    @property
    def spread_pct(self) -> float:
        if self.mid <= 0:
            return 0.0
        return float((self.ask - self.bid) / self.mid * 100)


@dataclass
class Intent:
    """Structured output of the reasoning model."""
    bias: Bias
    confidence: float
    reasoning: str = ""
    leverage: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.raw)
        data.update({
            "bias": self.bias.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        })
        if self.leverage is not None:
            data["leverage"] = self.leverage
        return data


@dataclass
class OrderRequest:
    """Input to the broker contract."""
    mode: SessionMode
    account_id: str
    market: str
    side: OrderSide
    notional_usd: Decimal
    slippage_bps: float = 5
    fee_bps: float = 5
    session_id: Optional[str] = None
    strategy_id: Optional[str] = None
    user_id: Optional[str] = None
    venue: Optional[str] = None
    # Pre-fetched mid price; brokers fetch their own when absent.
    reference_price: Optional[Decimal] = None
    # Exact size for closing orders.
    close_size: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    reduce_only: bool = False


@dataclass
class OrderResult:
    """Normalized broker response."""
    success: bool
    status: OrderStatus
    fill_price: Optional[Decimal] = None
    fill_size: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    action: Optional[TradeAction] = None
    trade_id: Optional[int] = None
    venue_order_id: Optional[str] = None
    venue_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def skipped(cls, reason: str) -> "OrderResult":
        return cls(success=False, status=OrderStatus.SKIPPED, error=reason)

    @classmethod
    def failed(cls, error: str, venue_response: Optional[Dict[str, Any]] = None) -> "OrderResult":
        return cls(success=False, status=OrderStatus.FAILED, error=error, venue_response=venue_response)


@dataclass
class ExitSignal:
    should_exit: bool
    reason: str = ""
    emergency: bool = False
    time_based: bool = False
    # Trailing-stop extreme after this evaluation; set only when it moved
    peak_price: Optional[Decimal] = None
    # Reason an exit would have fired but the minimum hold time blocked it
    blocked_reason: Optional[str] = None

    @classmethod
    def hold(cls) -> "ExitSignal":
        return cls(should_exit=False)


@dataclass
class ProposedOrder:
    market: str
    bias: str
    side: Optional[str]
    notional_usd: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market": self.market,
            "bias": self.bias,
            "side": self.side,
            "notionalUsd": float(self.notional_usd),
        }


@dataclass
class GateResult:
    """Outcome of the risk gate pipeline."""
    passed: bool
    reason: Optional[str] = None
    gate: Optional[str] = None
    notional_usd: Decimal = Decimal("0")
    leverage: int = 1
    slippage_bps: float = 0
    entry_type: Optional[str] = None

    def to_risk_result(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"passed": self.passed}
        if self.reason:
            data["reason"] = self.reason
        if self.gate:
            data["gate"] = self.gate
        return data


@dataclass
class LedgerUpdate:
    """
    One atomic ledger mutation: new cash balance, at most one position
    change and the trade row that caused it.
    """
    account_id: str
    cash_balance: Decimal
    trade: Trade
    upsert_position: Optional[Position] = None
    delete_position_id: Optional[int] = None

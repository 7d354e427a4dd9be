"""
Domain protocols (interfaces) for dependency inversion.

The orchestrator, gates and brokers depend on these contracts rather than on
concrete storage, market-data, model or venue implementations, so tests can
swap in fakes.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from tradeloop.domain.models import (
    Account,
    Candle,
    Decision,
    EquityPoint,
    Intent,
    LedgerUpdate,
    OrderbookTop,
    OrderRequest,
    OrderResult,
    OrderSide,
    Position,
    SessionMode,
    Strategy,
    Trade,
    TradeAction,
    TradingSession,
)


@runtime_checkable
class MarketDataProvider(Protocol):
    """Price, candle and orderbook reads."""

    async def get_mid_prices(self, markets: Iterable[str]) -> Dict[str, Decimal]: ...

    async def get_candles(self, market: str, interval: str, count: int) -> List[Candle]: ...

    async def get_orderbook_top(self, market: str) -> OrderbookTop: ...


@runtime_checkable
class ReasoningModel(Protocol):
    """
    Black-box intent source.

    Must raise RetryableProviderError for rate-limit/overload conditions and
    NonRetryableProviderError for everything else.
    """

    async def call(self, system_prompt: str, user_context: str) -> Intent: ...


class ReasoningModelFactory(Protocol):
    """Builds the model client for a strategy's provider/model pair."""

    def __call__(self, strategy: Strategy) -> ReasoningModel: ...


@runtime_checkable
class Broker(Protocol):
    """Order placement contract shared by the simulated and exchange brokers."""

    async def place_order(self, request: OrderRequest) -> OrderResult: ...


@dataclass(frozen=True)
class VenueOrder:
    """Aggressive IOC limit order ready for signing."""
    symbol: str
    side: OrderSide
    amount: Decimal
    price: Decimal
    reduce_only: bool = False
    time_in_force: str = "IOC"
    leverage: Optional[Decimal] = None


@dataclass(frozen=True)
class VenueCredentials:
    venue: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    wallet_address: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        if self.wallet_address and self.api_secret:
            return True
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))


class CredentialsProvider(Protocol):
    def __call__(self, user_id: Optional[str], venue: str) -> Optional[VenueCredentials]: ...


@runtime_checkable
class OrderSubmitter(Protocol):
    """Signs and submits orders on one venue; reads the account back."""

    async def get_orderbook_top(self, market: str) -> OrderbookTop: ...

    async def prepare_order(
        self,
        market: str,
        side: OrderSide,
        size: Decimal,
        limit_price: Decimal,
        reduce_only: bool = False,
        leverage: Optional[Decimal] = None,
    ) -> VenueOrder: ...

    async def submit(self, order: VenueOrder) -> Dict[str, Any]: ...

    async def fetch_equity(self) -> Decimal: ...

    async def fetch_positions(self) -> List[Dict[str, Any]]: ...

    async def close(self) -> None: ...


class SubmitterFactory(Protocol):
    def __call__(self, credentials: VenueCredentials) -> OrderSubmitter: ...


@runtime_checkable
class Storage(Protocol):
    """
    Record-oriented persistence for sessions, strategies, accounts, positions,
    trades, decisions and equity points.
    """

    # Sessions / strategies
    def get_session(self, session_id: str) -> Optional[TradingSession]: ...

    def list_sessions(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[TradingSession]: ...

    def save_session(self, session: TradingSession) -> TradingSession: ...

    def mark_tick_started(self, session_id: str, at: datetime) -> None: ...

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]: ...

    def save_strategy(self, strategy: Strategy) -> Strategy: ...

    # Accounts
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def find_account(self, user_id: str, mode: SessionMode, venue: Optional[str] = None) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def update_account_balances(
        self, account_id: str, cash_balance: Optional[Decimal] = None, equity: Optional[Decimal] = None
    ) -> None: ...

    # Positions
    def list_positions(self, account_id: str) -> List[Position]: ...

    def get_position(self, account_id: str, market: str) -> Optional[Position]: ...

    def save_position(self, position: Position) -> Position: ...

    def update_position(self, position_id: int, **fields: Any) -> None: ...

    def delete_position(self, position_id: int) -> None: ...

    def replace_positions(self, account_id: str, positions: List[Position]) -> None: ...

    # Ledger
    def apply_ledger_update(self, update: LedgerUpdate) -> Trade: ...

    # Trades
    def insert_trade(self, trade: Trade) -> Trade: ...

    def list_trades(self, account_id: str) -> List[Trade]: ...

    def recent_trades(self, account_id: str, limit: int) -> List[Trade]: ...

    def last_trade(self, account_id: str, market: str, action: Optional[TradeAction] = None) -> Optional[Trade]: ...

    def count_trades_since(self, session_id: str, since: datetime) -> int: ...

    # Decisions / equity
    def insert_decision(self, decision: Decision) -> Decision: ...

    def recent_decisions(self, session_id: str, limit: int) -> List[Decision]: ...

    def insert_equity_point(self, point: EquityPoint) -> None: ...

    def first_equity_point_since(self, account_id: str, since: datetime) -> Optional[EquityPoint]: ...

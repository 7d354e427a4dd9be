"""
Pytest configuration and shared fixtures.

Storage is a real SqlStorage over an in-memory SQLite database; market data
and the reasoning model are fakes so ticks run without network access.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import pytest

from tradeloop.config.config import BrokerConfig, Config, EngineConfig
from tradeloop.domain.models import (
    Account,
    Bias,
    Candle,
    Intent,
    OrderbookTop,
    Position,
    SessionMode,
    SessionStatus,
    Side,
    Strategy,
    TradingSession,
    utc_now,
)
from tradeloop.exceptions import DataAcquisitionError
from tradeloop.execution.broker import BrokerRouter
from tradeloop.execution.exchange_broker import ExchangeBroker
from tradeloop.execution.simulated_broker import SimulatedLedgerBroker
from tradeloop.engine.tick import TickOrchestrator
from tradeloop.storage.db import Database
from tradeloop.storage.repository import SqlStorage


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeMarketData:
    """MarketDataProvider with fixed prices. Markets missing from ``prices`` are unpriced."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None, candles: Optional[List[Candle]] = None):
        self.prices = dict(prices or {})
        self.candles = list(candles or [])
        self.fail = False
        self.price_calls: List[List[str]] = []

    async def get_mid_prices(self, markets: Iterable[str]) -> Dict[str, Decimal]:
        wanted = list(markets)
        self.price_calls.append(wanted)
        if self.fail:
            raise DataAcquisitionError("venue down")
        return {m: self.prices[m] for m in wanted if m in self.prices}

    async def get_candles(self, market: str, interval: str, count: int) -> List[Candle]:
        return self.candles[-count:]

    async def get_orderbook_top(self, market: str) -> OrderbookTop:
        mid = self.prices[market]
        return OrderbookTop(bid=mid - 1, ask=mid + 1, mid=mid)

    async def close(self) -> None:
        pass


class FakeModel:
    """ReasoningModel returning queued intents (or raising queued errors)."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: List[Dict[str, str]] = []

    async def call(self, system_prompt: str, user_context: str) -> Intent:
        self.calls.append({"system": system_prompt, "user": user_context})
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def make_intent(bias: str, confidence: float = 0.8, reasoning: str = "momentum building", leverage=None) -> Intent:
    return Intent(bias=Bias(bias), confidence=confidence, reasoning=reasoning, leverage=leverage)


def make_candles(count: int = 50, base_price: float = 100.0, step: float = 1.0, market: str = "BTC-PERP") -> List[Candle]:
    """Candles with a steady trend; high/low are +/- 1 around close."""
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    candles = []
    for i in range(count):
        close = base_price + i * step
        candles.append(Candle(
            timestamp=base_time + timedelta(minutes=5 * i),
            market=market,
            timeframe="5m",
            open=Decimal(str(close - step / 2)),
            high=Decimal(str(close + 1)),
            low=Decimal(str(close - 1)),
            close=Decimal(str(close)),
            volume=Decimal("10"),
        ))
    return candles


@pytest.fixture
def storage():
    db = Database("sqlite://")
    db.create_all()
    yield SqlStorage(db)
    db.drop_all()


@pytest.fixture
def config():
    """Zero fees and exit slippage so ledger numbers are exact."""
    return Config(
        environment="dev",
        engine=EngineConfig(default_starting_equity=100000.0),
        broker=BrokerConfig(entry_fee_bps=0.0, exit_slippage_bps=0.0, exit_fee_bps=0.0),
    )


@pytest.fixture
def market_data():
    return FakeMarketData({"BTC-PERP": Decimal("100000"), "ETH-PERP": Decimal("3000"), "SOL-PERP": Decimal("150")})


@pytest.fixture
def model():
    return FakeModel(make_intent("neutral", 0.5, "nothing to do"))


@pytest.fixture
def broker(storage, market_data):
    exchange = ExchangeBroker(storage, lambda user_id, venue: None, lambda credentials: None)
    return BrokerRouter(simulated=SimulatedLedgerBroker(storage, market_data), exchange=exchange)


@pytest.fixture
def orchestrator(storage, market_data, broker, model, config):
    return TickOrchestrator(storage, market_data, broker, lambda strategy: model, config)


@pytest.fixture
def make_session(storage):
    """Create a running session with its strategy and a funded ledger account."""

    def _make(
        filters: Optional[dict] = None,
        markets: Optional[List[str]] = None,
        mode: SessionMode = SessionMode.SIMULATED,
        equity: Decimal = Decimal("100000"),
        started_at: Optional[datetime] = None,
        session_id: str = "sess-1",
    ) -> TradingSession:
        strategy = storage.save_strategy(Strategy(
            id=f"strat-{session_id}",
            user_id="user-1",
            name="Test strategy",
            model_provider="openai",
            model_name="gpt-test",
            prompt="Trade the trend.",
            filters=filters if filters is not None else {},
        ))
        account = storage.save_account(Account(
            id="",
            user_id="user-1",
            mode=mode,
            starting_equity=equity,
            cash_balance=equity,
            equity=equity,
        ))
        session = TradingSession(
            id=session_id,
            user_id="user-1",
            strategy_id=strategy.id,
            mode=mode,
            status=SessionStatus.RUNNING,
            markets=markets if markets is not None else ["BTC-PERP"],
            cadence_seconds=30,
            account_id=account.id,
            started_at=started_at or utc_now() - timedelta(hours=1),
        )
        return storage.save_session(session)

    return _make


@pytest.fixture
def open_position(storage):
    """Insert an open position aged ``age_minutes``."""

    def _open(
        account_id: str,
        market: str = "BTC-PERP",
        side: Side = Side.LONG,
        size: Decimal = Decimal("1"),
        avg_entry: Decimal = Decimal("100000"),
        age_minutes: float = 60,
    ) -> Position:
        opened = utc_now() - timedelta(minutes=age_minutes)
        return storage.save_position(Position(
            account_id=account_id,
            market=market,
            side=side,
            size=size,
            avg_entry=avg_entry,
            peak_price=avg_entry,
            opened_at=opened,
            updated_at=opened,
        ))

    return _open

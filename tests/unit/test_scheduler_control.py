"""
Scheduler due-checks, failure isolation and session start/stop.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradeloop.config.config import EngineConfig
from tradeloop.domain.models import SessionMode, SessionStatus, TradingSession, utc_now
from tradeloop.engine.control import start_session, stop_session
from tradeloop.engine.scheduler import TickScheduler
from tradeloop.exceptions import SessionNotFoundError, TickTooSoonError


def _scheduler(storage, orchestrator=None):
    return TickScheduler(storage, orchestrator or MagicMock(), EngineConfig())


def _session(**kwargs):
    defaults = dict(
        id="s", user_id="u", strategy_id="st", mode=SessionMode.SIMULATED, status=SessionStatus.RUNNING,
    )
    defaults.update(kwargs)
    return TradingSession(**defaults)


class TestIsDue:

    def test_never_ticked_or_started(self, storage):
        assert _scheduler(storage).is_due(_session(), 30, utc_now())

    def test_grace_shortens_wait(self, storage):
        now = utc_now()
        session = _session(last_tick_at=now - timedelta(seconds=26))

        assert _scheduler(storage).is_due(session, 30, now)
        assert not _scheduler(storage).is_due(session, 60, now)

    def test_anchors_on_start_before_first_tick(self, storage):
        now = utc_now()
        session = _session(started_at=now - timedelta(seconds=10))

        assert not _scheduler(storage).is_due(session, 30, now)

    def test_short_cadence_is_always_due(self, storage):
        now = utc_now()
        assert _scheduler(storage).is_due(_session(last_tick_at=now), 3, now)


def test_cadence_prefers_strategy(storage, make_session):
    session = make_session(filters={"cadenceSeconds": 120})

    assert _scheduler(storage).cadence_for(session) == 120


@pytest.mark.asyncio
async def test_run_once_isolates_failures(storage, make_session):
    make_session(session_id="ok")
    make_session(session_id="busy")
    make_session(session_id="broken")
    make_session(session_id="recent")
    storage.mark_tick_started("recent", utc_now())

    async def run_tick(session_id, now=None):
        if session_id == "busy":
            raise TickTooSoonError("Last tick 2.0s ago", session_id=session_id)
        if session_id == "broken":
            raise RuntimeError("boom")

    orchestrator = MagicMock()
    orchestrator.run_tick = AsyncMock(side_effect=run_tick)

    run = await _scheduler(storage, orchestrator).run_once()

    assert run.running == 4
    assert run.processed == ["ok"]
    assert run.skipped == ["recent"]
    assert set(run.failed) == {"busy", "broken"}
    assert run.failed["broken"] == "boom"


@pytest.mark.asyncio
async def test_missing_strategy_is_reported(storage):
    storage.save_session(_session(id="orphan", strategy_id="gone"))
    orchestrator = MagicMock()
    orchestrator.run_tick = AsyncMock()

    run = await _scheduler(storage, orchestrator).run_once()

    assert run.failed == {"orphan": "Strategy gone not found"}
    orchestrator.run_tick.assert_not_awaited()


def test_start_session_stamps_start_and_creates_ledger(storage):
    storage.save_session(_session(id="new", status=SessionStatus.STOPPED))

    response = start_session(storage, "new", Decimal("5000"))

    assert response == {"ok": True, "session_id": "new", "status": "running"}
    session = storage.get_session("new")
    assert session.started_at is not None
    account = storage.get_account(session.account_id)
    assert float(account.cash_balance) == pytest.approx(5000)


def test_restart_keeps_original_start(storage):
    started = utc_now().replace(microsecond=0) - timedelta(days=1)
    storage.save_session(_session(id="again", status=SessionStatus.STOPPED, started_at=started))

    start_session(storage, "again", Decimal("5000"))

    assert storage.get_session("again").started_at == started


def test_stop_session(storage, make_session):
    make_session()

    assert stop_session(storage, "sess-1")["status"] == "stopped"
    assert storage.get_session("sess-1").status == SessionStatus.STOPPED


def test_unknown_session(storage):
    with pytest.raises(SessionNotFoundError):
        start_session(storage, "nope", Decimal("1"))
    with pytest.raises(SessionNotFoundError):
        stop_session(storage, "nope")

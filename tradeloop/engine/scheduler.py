"""
Tick scheduler.

Polls running sessions and ticks the ones whose cadence has elapsed. Sessions
tick concurrently and independently; one session failing never affects the
others.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from tradeloop.config.config import EngineConfig
from tradeloop.config.strategy_config import normalize_strategy_filters
from tradeloop.domain.models import SessionStatus, TradingSession, utc_now
from tradeloop.domain.protocols import Storage
from tradeloop.engine.tick import TickOrchestrator, resolve_cadence
from tradeloop.exceptions import ConfigurationError, TickError, TradingSystemError
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class SchedulerRun:
    """Summary of one scheduler pass."""
    started_at: datetime
    running: int = 0
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "running": self.running,
            "processed": len(self.processed),
            "skipped": len(self.skipped),
            "failed": dict(self.failed),
        }


class TickScheduler:
    """Drives ``TickOrchestrator`` for every running session."""

    def __init__(self, storage: Storage, orchestrator: TickOrchestrator, config: EngineConfig):
        self.storage = storage
        self.orchestrator = orchestrator
        self.config = config
        self.active = False

    def cadence_for(self, session: TradingSession) -> int:
        strategy = self.storage.get_strategy(session.strategy_id)
        if strategy is None:
            raise ConfigurationError(f"Strategy {session.strategy_id} not found")
        try:
            filters = normalize_strategy_filters(strategy.filters)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid strategy filters: {e.error_count()} errors") from e
        return resolve_cadence(filters, session, self.config.default_cadence_seconds)

    def is_due(self, session: TradingSession, cadence_seconds: int, now: datetime) -> bool:
        """Due once ``cadence - grace`` seconds have passed since the last tick (or start)."""
        anchor = session.last_tick_at or session.started_at
        if anchor is None:
            return True
        threshold = max(0, cadence_seconds - self.config.cadence_grace_seconds)
        return (now - anchor).total_seconds() >= threshold

    async def run_once(self, now: Optional[datetime] = None) -> SchedulerRun:
        now = now or utc_now()
        run = SchedulerRun(started_at=now)
        sessions = self.storage.list_sessions(status=SessionStatus.RUNNING.value)
        run.running = len(sessions)

        due: List[TradingSession] = []
        for session in sessions:
            try:
                cadence = self.cadence_for(session)
            except ConfigurationError as e:
                logger.warning("SESSION_CONFIG_INVALID", session_id=session.id, error=str(e))
                run.failed[session.id] = str(e)
                continue
            if self.is_due(session, cadence, now):
                due.append(session)
            else:
                run.skipped.append(session.id)

        sem = asyncio.Semaphore(self.config.scheduler_max_concurrency)

        async def tick_session(session: TradingSession) -> None:
            async with sem:
                try:
                    await self.orchestrator.run_tick(session.id)
                    run.processed.append(session.id)
                except TickError as e:
                    logger.warning("SESSION_TICK_REFUSED", session_id=session.id, code=e.code, error=str(e))
                    run.failed[session.id] = str(e)
                except TradingSystemError as e:
                    logger.error("SESSION_TICK_FAILED", session_id=session.id, error=str(e))
                    run.failed[session.id] = str(e)
                except Exception as e:
                    logger.exception("SESSION_TICK_CRASHED", session_id=session.id, error=str(e))
                    run.failed[session.id] = str(e)

        batch_size = self.config.scheduler_batch_size
        for start in range(0, len(due), batch_size):
            batch = due[start:start + batch_size]
            await asyncio.gather(*(tick_session(s) for s in batch))

        logger.info("SCHEDULER_PASS_COMPLETED", **run.to_dict())
        return run

    async def run_forever(self) -> None:
        """Poll until ``stop()`` or cancellation."""
        self.active = True
        logger.info("Tick scheduler started", poll_seconds=self.config.scheduler_poll_seconds)
        try:
            while self.active:
                loop_start = utc_now()
                await self.run_once(loop_start)
                elapsed = (utc_now() - loop_start).total_seconds()
                await asyncio.sleep(max(0.0, self.config.scheduler_poll_seconds - elapsed))
        except asyncio.CancelledError:
            logger.info("Tick scheduler cancelled")
            raise
        finally:
            self.active = False

    def stop(self) -> None:
        self.active = False

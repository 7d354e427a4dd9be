"""
Session control surface: start and stop.

Starting a session for the first time stamps ``started_at``, which anchors
round-robin market selection and the cadence clock.
"""
from decimal import Decimal
from typing import Any, Dict

from tradeloop.domain.models import SessionStatus, utc_now
from tradeloop.domain.protocols import Storage
from tradeloop.engine.tick import get_or_create_ledger_account
from tradeloop.exceptions import SessionNotFoundError
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)


def _response(session_id: str, status: SessionStatus) -> Dict[str, Any]:
    return {"ok": True, "session_id": session_id, "status": status.value}


def start_session(storage: Storage, session_id: str, starting_equity: Decimal) -> Dict[str, Any]:
    """
    Mark a session running.

    Ledger sessions get their account here so the first tick already has one.

    Raises:
        SessionNotFoundError: Unknown session id
    """
    session = storage.get_session(session_id)
    if session is None:
        raise SessionNotFoundError("Session not found", session_id=session_id)

    if session.started_at is None:
        session.started_at = utc_now()
    session.status = SessionStatus.RUNNING
    storage.save_session(session)

    if session.mode.uses_ledger:
        get_or_create_ledger_account(storage, session, starting_equity)

    logger.info("SESSION_STARTED", session_id=session_id, mode=session.mode.value, started_at=session.started_at.isoformat())
    return _response(session_id, session.status)


def stop_session(storage: Storage, session_id: str) -> Dict[str, Any]:
    """
    Mark a session stopped. Positions stay open.

    Raises:
        SessionNotFoundError: Unknown session id
    """
    session = storage.get_session(session_id)
    if session is None:
        raise SessionNotFoundError("Session not found", session_id=session_id)

    session.status = SessionStatus.STOPPED
    storage.save_session(session)
    logger.info("SESSION_STOPPED", session_id=session_id)
    return _response(session_id, session.status)

"""
Database engine and session management.

PostgreSQL in production; SQLite is accepted for local runs and tests. Every
storage call opens its own short transaction through ``Database.get_session``.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from contextlib import contextmanager
from typing import Generator, Dict, Any
import os
import time

from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

# Base class for ORM models
Base = declarative_base()

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

# A connection held longer than this inside one storage call is worth a warning
SLOW_HOLD_MS = 2000.0


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in _IN_MEMORY_URLS:
            # One shared connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    engine = create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_timeout=30,
    )
    _watch_pool(engine.pool)
    return engine


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = _build_engine(database_url)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_all(self):
        """Create all tables."""
        # Models must be imported so Base.metadata knows every table
        import tradeloop.storage.repository  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        One transaction: commits on success, rolls back on any exception.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Process-wide instance used by the CLI and the scheduler
_db_instance: Database | None = None


def get_db() -> Database:
    """Get or create the process-wide database from DATABASE_URL."""
    global _db_instance
    if _db_instance is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set; call init_db() or export DATABASE_URL")
        _db_instance = init_db(database_url)
    return _db_instance


def init_db(database_url: str) -> Database:
    """Connect to ``database_url``, create missing tables and make it the process-wide database."""
    global _db_instance
    _db_instance = Database(database_url)
    _db_instance.create_all()
    logger.info("DATABASE_READY", dialect=_db_instance.engine.dialect.name)
    return _db_instance


def _watch_pool(pool: Pool) -> None:
    """Warn about connections held too long and about invalidated connections."""

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        started = connection_record.info.pop("checkout_time", None)
        if started is None:
            return
        held_ms = round((time.monotonic() - started) * 1000, 1)
        if held_ms > SLOW_HOLD_MS:
            logger.warning("DB_CONNECTION_HELD_LONG", held_ms=held_ms, checked_out=pool.checkedout())

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        logger.warning("DB_CONNECTION_INVALIDATED", error=str(exception) if exception else None)

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from time import perf_counter
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from deployctl.config import Settings, get_settings
from deployctl.logger import get_logger

_logger = get_logger("db")

_STARTED_KEY = "deployctl_statement_started"


def _one_line(statement: Any, max_length: int) -> str:
    text = " ".join(str(statement or "").split())
    if 0 < max_length < len(text):
        return f"{text[: max(max_length - 3, 0)]}..."
    return text


class _StatementTimer:
    """Times cursor executions; logs them when enabled and always logs slow ones."""

    def __init__(self, settings: Settings) -> None:
        self.trace = settings.log_db_queries
        self.slow_ms = settings.db_slow_query_ms
        self.max_length = settings.log_sql_max_length

    def attach(self, engine: AsyncEngine) -> None:
        sync_engine = engine.sync_engine
        event.listen(sync_engine, "before_cursor_execute", self.before)
        event.listen(sync_engine, "after_cursor_execute", self.after)
        event.listen(sync_engine, "handle_error", self.failed)

    def before(self, conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: bool) -> None:
        conn.info.setdefault(_STARTED_KEY, []).append(perf_counter())

    def _elapsed_ms(self, conn: Any) -> float:
        started = conn.info.get(_STARTED_KEY) or [perf_counter()]
        return (perf_counter() - started.pop()) * 1000

    def after(self, conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: bool) -> None:
        duration_ms = self._elapsed_ms(conn)
        if self.slow_ms and duration_ms >= self.slow_ms:
            _logger.warning(
                "query.slow",
                "Slow state-store statement",
                duration_ms=round(duration_ms, 1),
                sql=_one_line(statement, self.max_length),
            )
        elif self.trace:
            _logger.debug(
                "query.execute",
                "Executed state-store statement",
                duration_ms=round(duration_ms, 1),
                rowcount=getattr(cursor, "rowcount", None),
                sql=_one_line(statement, self.max_length),
            )

    def failed(self, exception_context: Any) -> None:
        if exception_context.connection is not None:
            self._elapsed_ms(exception_context.connection)
        _logger.error(
            "query.error",
            "State-store statement failed",
            error_type=type(exception_context.original_exception).__name__,
            error=str(exception_context.original_exception),
            sql=_one_line(exception_context.statement, self.max_length),
        )


def _enable_sqlite_wal(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_state_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Engine for the SQL state backend, with statement timing attached.

    In-memory SQLite shares one connection so every session sees the same
    database.
    """
    settings = settings or get_settings()
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        engine = create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(database_url, pool_pre_ping=True)
        if database_url.startswith("sqlite"):
            event.listen(engine.sync_engine, "connect", _enable_sqlite_wal)
    _StatementTimer(settings).attach(engine)
    return engine


@lru_cache
def get_engine(database_url: str) -> AsyncEngine:
    return create_state_engine(database_url)


@lru_cache
def get_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(database_url), expire_on_commit=False)


@asynccontextmanager
async def session_scope(sessionmaker: async_sessionmaker[AsyncSession], purpose: str) -> AsyncIterator[AsyncSession]:
    """Open a session for one backend call; roll back and log if it fails.

    Callers commit explicitly. Exceptions propagate unchanged.
    """
    session_id = uuid4().hex[:8]
    started = perf_counter()
    async with sessionmaker() as session:
        try:
            yield session
        except Exception as exc:
            if session.in_transaction():
                await session.rollback()
            _logger.warning(
                "session.rollback",
                "Rolled back state-store session",
                purpose=purpose,
                session_id=session_id,
                error_type=type(exc).__name__,
            )
            raise
        finally:
            _logger.debug(
                "session.close",
                "Closed state-store session",
                purpose=purpose,
                session_id=session_id,
                duration_ms=round((perf_counter() - started) * 1000, 1),
            )

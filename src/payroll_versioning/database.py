"""Database connection, session management and row locking."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncGenerator, TypeVar

from sqlalchemy import event, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payroll_versioning.config import get_settings
from payroll_versioning.exceptions import ConcurrentModificationError, LockTimeoutError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

# PostgreSQL SQLSTATEs
LOCK_NOT_AVAILABLE = "55P03"
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
UNIQUE_VIOLATION = "23505"


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def configure_sqlite_locking(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN is deferred, which lets two writers read the
    same current version before either upgrades its lock. Emitting
    ``BEGIN IMMEDIATE`` serializes writers at transaction start, the
    busy timeout bounds how long the second one waits.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(url: str, lock_timeout_ms: int | None = None) -> AsyncEngine:
    """Create an async engine with locking configured for the dialect."""
    timeout_ms = lock_timeout_ms if lock_timeout_ms is not None else get_settings().lock_timeout_ms
    if is_sqlite(url):
        engine = create_async_engine(
            url,
            echo=False,
            connect_args={"timeout": timeout_ms / 1000},
        )
        configure_sqlite_locking(engine)
        return engine
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def get_engine() -> AsyncEngine:
    """Create async database engine."""
    return create_engine_for_url(get_settings().database_url)


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = make_session_factory(_engine)
    return _engine, _session_factory


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def dispose_db() -> None:
    """Dispose the global engine (application shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ===== Row locking =====


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def translate_db_error(exc: DBAPIError, context: str) -> Exception:
    """Map a driver error onto the retryable error taxonomy.

    Returns the original exception when it is not a locking or
    serialization failure, so callers can ``raise translate_db_error(...)``.
    """
    state = _sqlstate(exc)
    message = str(exc.orig).lower()
    if state == LOCK_NOT_AVAILABLE or "database is locked" in message:
        return LockTimeoutError(f"Timed out waiting for lock on {context}")
    if state in (SERIALIZATION_FAILURE, DEADLOCK_DETECTED):
        return ConcurrentModificationError(f"Concurrent update of {context}, retry")
    if isinstance(exc, IntegrityError) and (
        state == UNIQUE_VIOLATION or "unique" in message
    ):
        return ConcurrentModificationError(f"Concurrent write to {context}, retry")
    return exc


async def set_lock_timeout(session: AsyncSession, lock_timeout_ms: int | None = None) -> None:
    """Bound how long row locks may block in the current transaction.

    SQLite has no row locks; its busy timeout is set on connect.
    """
    if session.bind.dialect.name != "postgresql":
        return
    timeout = lock_timeout_ms if lock_timeout_ms is not None else get_settings().lock_timeout_ms
    await session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout)}ms'"))


async def lock_row(
    session: AsyncSession,
    model: type[ModelT],
    *criteria: Any,
    context: str,
    shared: bool = False,
) -> ModelT | None:
    """Load a row with a lock held until the transaction ends.

    ``shared`` takes ``FOR SHARE`` instead of ``FOR UPDATE``: concurrent
    readers proceed, writers of the row wait.
    """
    try:
        await set_lock_timeout(session)
        result = await session.execute(
            select(model).where(*criteria).with_for_update(read=shared).execution_options(
                populate_existing=True
            )
        )
    except (OperationalError, DBAPIError) as exc:
        raise translate_db_error(exc, context) from exc
    return result.scalar_one_or_none()


async def flush_or_raise(session: AsyncSession, context: str) -> None:
    """Flush pending writes, translating lock/uniqueness failures."""
    try:
        await session.flush()
    except DBAPIError as exc:
        translated = translate_db_error(exc, context)
        if translated is exc:
            raise
        logger.warning("Flush of %s failed: %s", context, translated)
        raise translated from exc

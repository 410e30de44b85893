from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker

from interview_credits.core.config import settings


def _to_async_url(url: str) -> str:
    """Convert a sync SQLAlchemy URL to an async one for Postgres/SQLite.

    - postgresql[+psycopg2]:// -> postgresql+asyncpg://
    - sqlite:/// -> sqlite+aiosqlite:///
    - otherwise: returned unchanged (caller must ensure compatibility)
    """
    if not url:
        return url
    if url.startswith("postgresql+psycopg2://"):
        return "postgresql+asyncpg://" + url[len("postgresql+psycopg2://") :]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://") :]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///") :]
    return url


def build_engine(url: str) -> AsyncEngine:
    async_url = _to_async_url(url)
    if async_url.startswith("postgresql+asyncpg://"):
        # PgBouncer (transaction/statement mode) breaks server-side prepared statements.
        # Disable asyncpg prepared statement cache to avoid InvalidSQLStatementNameError.
        return create_async_engine(
            async_url,
            pool_pre_ping=True,
            connect_args={"prepared_statement_cache_size": 0, "statement_cache_size": 0},
        )
    # aiosqlite: wait on the file lock instead of failing immediately
    engine = create_async_engine(async_url, connect_args={"timeout": 30})
    if async_url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT/ROLLBACK behave on sqlite.

    sqlite has no row locks, so every transaction takes the database write
    lock up front (BEGIN IMMEDIATE) and waits on the busy timeout instead of
    failing a read-to-write upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine: AsyncEngine = build_engine(settings.database_url)
AsyncSessionLocal = build_session_factory(async_engine)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the session factory services open units of work from.

    Tests override this to point the app at a throwaway database.
    """
    return AsyncSessionLocal

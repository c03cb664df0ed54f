import asyncio
from collections.abc import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from grc_api.config import settings

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    **({} if _is_sqlite else {"pool_size": 5, "max_overflow": 10}),
)


def install_sqlite_listeners(target: AsyncEngine) -> None:
    """Foreign keys on; driver autocommit with an explicit BEGIN so SAVEPOINTs nest."""
    @event.listens_for(target.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    @event.listens_for(target.sync_engine, "begin")
    def _begin_sqlite(conn):
        conn.exec_driver_sql("BEGIN")


if _is_sqlite:
    install_sqlite_listeners(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


async def check_db_connection(timeout: float | None = None) -> bool:
    """Ping the database, bounded by ``timeout`` seconds. Returns True if OK."""
    async def _ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    await asyncio.wait_for(_ping(), timeout=timeout or settings.READINESS_TIMEOUT_SECONDS)
    return True

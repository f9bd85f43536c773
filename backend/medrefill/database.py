import logging
from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from medrefill.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _engine_kwargs(url: str) -> dict:
    """Pool and driver options for the configured backend.

    Postgres gets a tuned queue pool and statement timeouts.  SQLite (local
    development, tests) keeps the defaults, except that an in-memory database
    is pinned to a single shared connection.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database in (None, "", ":memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {}
    if parsed.get_backend_name() != "postgresql":
        return {}
    # pool_size:     persistent connections kept open
    # max_overflow:  extra connections allowed when the pool is exhausted
    # pool_recycle:  recycle connections after N seconds to avoid stale TCP
    # pool_pre_ping: "SELECT 1" before handing out a connection
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
        "connect_args": {
            "command_timeout": 30,
            "server_settings": {"statement_timeout": "30000"},
        },
    }


_SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg2",
    "postgresql": "postgresql+psycopg2",
    "sqlite+aiosqlite": "sqlite",
}


def sync_database_url(url: str) -> str:
    """The blocking-driver URL Alembic migrates with, for an application URL."""
    parsed = make_url(url)
    driver = _SYNC_DRIVERS.get(parsed.drivername, parsed.drivername)
    return parsed.set(drivername=driver).render_as_string(hide_password=False)


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
    **_engine_kwargs(settings.DATABASE_URL),
)

_sync_engine = engine.sync_engine


@event.listens_for(_sync_engine, "checkin")
def _on_checkin(dbapi_conn, connection_rec):
    pool = _sync_engine.pool
    if not hasattr(pool, "overflow"):
        return
    if pool.overflow() > pool.size() * 0.5:
        logger.warning(
            "db_pool: high overflow: size=%s, checkedin=%s, overflow=%s (>50%% of pool_size)",
            pool.size(), pool.checkedin(), pool.overflow(),
        )


AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


def is_postgres(db: AsyncSession) -> bool:
    """True when the session is bound to PostgreSQL (advisory locks, FOR UPDATE)."""
    return db.get_bind().dialect.name == "postgresql"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session scoped to the request lifecycle.

    Services commit their own unit of work (a refill transition, a fill, a
    reminder send) so that post-commit side effects run only after the data
    is durable.  On exception the session is rolled back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

import os
import asyncio
from typing import Callable, NamedTuple
from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
)
from sqlalchemy.pool import NullPool
from contextlib import asynccontextmanager

# plain scheme -> async driver scheme
ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# FK enforcement is off by default in SQLite; ON DELETE / ON UPDATE
# rules in model.db rely on it
SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
    "foreign_keys=ON",
)


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Callable


def _normalize_async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


def make_async_engine(database_url: str) -> Database:
    """Engine, session factory and the request gate for one database.

    Postgres gets a sized pool and an optional statement timeout
    (DB_STATEMENT_TIMEOUT_MS) so a stuck webhook cannot hold a connection
    forever. SQLite gets a fresh connection per checkout.
    """
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)
    sqlite = db_url.startswith("sqlite+aiosqlite://")

    pool_size = 10
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        timeout_ms = os.getenv("DB_STATEMENT_TIMEOUT_MS")
        if timeout_ms:
            kw["connect_args"] = {
                "server_settings": {"statement_timeout": timeout_ms},
            }
    elif sqlite:
        # aiosqlite connections are bound to the loop that opened them
        kw.update(poolclass=NullPool)

    engine = create_async_engine(db_url, **kw)
    if sqlite:
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # no more concurrent sessions than the pool can serve
    gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return Database(engine, SessionAsync, db_gate, gated)


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

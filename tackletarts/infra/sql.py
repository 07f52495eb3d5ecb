import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, NamedTuple, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    # instant_wins and tickets reference competitions
    "PRAGMA foreign_keys=ON;",
)


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Gated


def normalize_async_url(url: str) -> str:
    for plain, driver in _DRIVERS:
        if url.startswith(plain):
            return url.replace(plain, driver, 1)
    return url


# DB gate: no more concurrent units of work than the pool has connections
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore) -> AsyncIterator[None]:
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_async_engine(
    database_url: str, gate_limit: Optional[int] = None
) -> Database:
    """
    Engine, session factory and DB gate for `database_url`.

    Pool sizing comes from DB_POOL_SIZE / DB_MAX_OVERFLOW / DB_POOL_TIMEOUT
    (postgres only); the gate defaults to DB_GATE_LIMIT, else the pool size.
    """
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if gate_limit is None:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size or 10))
    gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(gate)

    return Database(engine, SessionAsync, gate, gated)


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

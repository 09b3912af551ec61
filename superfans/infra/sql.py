import os
import asyncio
from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    """A session plus the gate every transaction on it must pass."""
    session: AsyncSession
    gated: Gated


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def is_postgres(url: str) -> bool:
    return _normalize_async_url(url).startswith("postgresql+asyncpg://")


# DB gate: never more in-flight DB work than the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gate: asyncio.Semaphore

    def gated(self) -> AsyncContextManager[None]:
        return _gated(self.gate)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.sessionmaker() as s:
            yield GatedAsyncSession(session=s, gated=self.gated)

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def _sqlite_setup(engine: AsyncEngine) -> None:
    # concurrent writers wait for the lock instead of failing at once
    busy_ms = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute(f"PRAGMA busy_timeout={busy_ms};")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


def make_database(database_url: str) -> Database:
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    if is_postgres(db_url):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
        )
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _sqlite_setup(engine)

    return Database(
        engine=engine,
        sessionmaker=async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        ),
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )

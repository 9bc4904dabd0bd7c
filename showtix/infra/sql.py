from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from ..applog import get_logger

logger = get_logger(__name__)

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}

SQLITE_GATE_LIMIT = 10


def async_url(url: str) -> str:
    """sqlite:// and postgres(ql):// URLs -> their async driver variants."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ValueError(f"not a database URL: {url!r}")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


@dataclass(frozen=True)
class PoolConfig:
    pool_size: int = 10
    max_overflow: int = 10
    pool_timeout: int = 30
    # None: pool_size on postgres, SQLITE_GATE_LIMIT on sqlite
    gate_limit: Optional[int] = None
    sqlite_busy_timeout_ms: int = 5000


class Gate:
    """
    DB-GATE: never have more requests waiting on a connection than the pool
    can serve. Excess callers queue on the semaphore instead of timing out
    inside the pool.
    """

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._sem = asyncio.Semaphore(self.limit)

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[None]:
        async with self._sem:
            yield


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    gated: Gate

    async def dispose(self) -> None:
        await self.engine.dispose()


def _install_sqlite_pragmas(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    # competing conditional UPDATEs wait out busy_timeout for the write lock
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


def open_database(database_url: str,
                  pool: Optional[PoolConfig] = None) -> Database:
    pool = pool or PoolConfig()
    url = async_url(database_url)
    sqlite = url.startswith("sqlite+")

    kw: Dict[str, Any] = dict(pool_pre_ping=True)
    if not sqlite:
        kw.update(
            pool_size=pool.pool_size,
            max_overflow=pool.max_overflow,
            pool_timeout=pool.pool_timeout,
        )
    engine = create_async_engine(url, **kw)

    if sqlite:
        _install_sqlite_pragmas(engine, pool.sqlite_busy_timeout_ms)
        gate_limit = pool.gate_limit or SQLITE_GATE_LIMIT
    else:
        gate_limit = pool.gate_limit or pool.pool_size

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("database %s, gate limit %d",
                engine.url.render_as_string(hide_password=True), gate_limit)
    return Database(engine=engine, sessions=sessions, gated=Gate(gate_limit))

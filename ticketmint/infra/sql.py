from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .. import config

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _engine_options(url: str) -> Dict[str, Any]:
    opts: Dict[str, Any] = {"pool_pre_ping": True}
    if not is_sqlite(url):
        opts.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )
    return opts


def _use_wal(dbapi_connection, _record):
    cur = dbapi_connection.cursor()
    for pragma in ("journal_mode=WAL", "busy_timeout=5000", "synchronous=NORMAL"):
        cur.execute(f"PRAGMA {pragma};")
    cur.close()


class SqlHandle:
    """
    Engine plus the DB gate. Every store call goes through `session()` or
    `transaction()`, so no more work is queued than the pool can serve.
    """

    def __init__(self, engine: AsyncEngine, gate_limit: int):
        self.engine = engine
        self.gate_limit = max(1, gate_limit)
        self._sessions = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
        )
        self._gate = asyncio.Semaphore(self.gate_limit)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._gate:
            async with self._sessions() as db:
                yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.session() as db:
            async with db.begin():
                yield db

    async def ping(self) -> None:
        async with self.session() as db:
            await db.execute(text("SELECT 1"))


def make_async_engine(database_url: str, *,
                      gate_limit: Optional[int] = None) -> SqlHandle:
    url = normalize_async_url(database_url)
    engine = create_async_engine(url, **_engine_options(url))

    if is_sqlite(url):
        event.listen(engine.sync_engine, "connect", _use_wal)
        # one writer at a time anyway
        default_gate = 1
    else:
        default_gate = config.DB_POOL_SIZE

    if gate_limit is None:
        gate_limit = config.DB_GATE_LIMIT or default_gate
    return SqlHandle(engine, gate_limit)
